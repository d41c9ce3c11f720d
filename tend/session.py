# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Tmux session control for the worker process.

The worker runs detached inside a tmux session with a reserved name on a
dedicated tmux socket, so its output can be captured without attaching.
Every operation returns a value; failures are logged and reported through
:class:`SessionResult`, never raised.
"""

import logging
import os
import signal
import stat
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

SESSION_NAME = "miner-session"
SOCKET_NAME = "rigtender"
TMUX_TIMEOUT = 5
SNAPSHOT_LINES = 200


class SessionError(str, Enum):
    """Why a session operation failed."""

    MISSING_EXECUTABLE = "missing_executable"
    MISSING_PARAMS = "missing_params"
    CLEANUP_FAILED = "cleanup_failed"
    SPAWN_FAILED = "spawn_failed"
    TERMINATE_FAILED = "terminate_failed"


@dataclass(frozen=True)
class SessionResult:
    """Outcome of a start or stop."""

    ok: bool
    error: SessionError | None = None
    detail: str = ""

    def __bool__(self) -> bool:
        return self.ok


OK = SessionResult(True)


def _fail(error: SessionError, detail: str) -> SessionResult:
    return SessionResult(False, error, detail)


def run_tmux_command(args: list[str], socket_name: str = SOCKET_NAME) -> str | None:
    """Run a tmux command and return stdout, or None on error."""
    try:
        result = subprocess.run(
            ["tmux", "-L", socket_name] + args,
            capture_output=True,
            text=True,
            timeout=TMUX_TIMEOUT,
        )
        if result.returncode != 0:
            logger.debug(
                f"tmux {args[0]} exited {result.returncode}: {result.stderr.strip()}"
            )
            return None
        return result.stdout
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"tmux command failed: {e}")
        return None


class SessionRunner:
    """Start, stop and inspect the worker's tmux session."""

    def __init__(
        self,
        name: str = SESSION_NAME,
        *,
        socket_name: str = SOCKET_NAME,
        state_dir: Path | None = None,
    ):
        self.name = name
        self.socket_name = socket_name
        self.state_dir = state_dir

    @property
    def pid_path(self) -> Path | None:
        """Bookkeeping file holding the worker pane's pid."""
        if self.state_dir is None:
            return None
        return self.state_dir / f"{self.name}.pid"

    def _tmux(self, args: list[str]) -> str | None:
        return run_tmux_command(args, self.socket_name)

    def _session_names(self) -> list[str]:
        output = self._tmux(["list-sessions", "-F", "#{session_name}"])
        if not output:
            return []
        return [line for line in output.strip().split("\n") if line == self.name]

    def session_count(self) -> int:
        """Number of sessions carrying the reserved name."""
        count = len(self._session_names())
        if count > 1:
            logger.warning(
                "Found %d sessions named %s, expected at most one", count, self.name
            )
        return count

    def _pane_pids(self) -> list[int]:
        """Pids of live panes in the session."""
        output = self._tmux(
            ["list-panes", "-s", "-t", f"={self.name}", "-F", "#{pane_dead} #{pane_pid}"]
        )
        if not output:
            return []
        pids = []
        for line in output.strip().split("\n"):
            parts = line.split(" ")
            if len(parts) != 2 or parts[0] != "0":
                continue
            try:
                pids.append(int(parts[1]))
            except ValueError:
                continue
        return pids

    def is_running(self) -> bool:
        """True iff exactly one session exists and its worker pane is alive."""
        if self.session_count() != 1:
            return False
        return bool(self._pane_pids())

    def start(self, executable: Path, params: Path) -> SessionResult:
        """Spawn ``executable -c params`` in a fresh detached session."""
        executable = Path(executable)
        params = Path(params)
        if not executable.is_file():
            logger.error(f"Cannot start worker: missing executable {executable}")
            return _fail(SessionError.MISSING_EXECUTABLE, str(executable))
        if not params.is_file():
            logger.error(f"Cannot start worker: missing parameter file {params}")
            return _fail(SessionError.MISSING_PARAMS, str(params))

        if self.session_count() > 0:
            logger.info("Removing existing %s session before start", self.name)
            cleanup = self.stop()
            if not cleanup:
                return _fail(SessionError.CLEANUP_FAILED, cleanup.detail)

        try:
            mode = executable.stat().st_mode
            executable.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            logger.warning(f"Could not mark {executable} executable: {e}")

        output = self._tmux(
            [
                "new-session",
                "-d",
                "-s",
                self.name,
                "-c",
                str(executable.parent.resolve()),
                "-P",
                "-F",
                "#{pane_pid}",
                str(executable.resolve()),
                "-c",
                str(params.resolve()),
            ]
        )
        if output is None:
            logger.error(f"Failed to spawn {executable.name} in session {self.name}")
            return _fail(SessionError.SPAWN_FAILED, str(executable))

        self._write_pid(output.strip())
        logger.info(f"Started {executable.name} with {params} in session {self.name}")
        return OK

    def stop(self) -> SessionResult:
        """Terminate every session with the reserved name.

        Succeeds without touching tmux further when no session exists. If a
        terminate fails, the recorded worker pid is killed directly and the
        bookkeeping file removed, best-effort.
        """
        count = self.session_count()
        if count == 0:
            if self._has_pid_file():
                logger.debug("Removing stale pid file for %s", self.name)
                self._remove_pid_file()
            else:
                logger.debug("No %s session found to stop", self.name)
            return OK

        for _ in range(count):
            if self._tmux(["kill-session", "-t", f"={self.name}"]) is None:
                logger.warning("tmux kill-session failed for %s", self.name)
                break

        remaining = self.session_count()
        if remaining:
            self._kill_recorded_pid()
            for pid in self._pane_pids():
                self._kill(pid)
            self._tmux(["kill-session", "-t", f"={self.name}"])
            remaining = self.session_count()

        self._remove_pid_file()

        if remaining:
            logger.warning(
                "%d %s session(s) survived termination", remaining, self.name
            )
            return _fail(
                SessionError.TERMINATE_FAILED, f"{remaining} session(s) remain"
            )
        logger.info("Stopped session %s", self.name)
        return OK

    def snapshot_output(self, lines: int = SNAPSHOT_LINES) -> str | None:
        """Capture recent pane output, or None when unavailable."""
        output = self._tmux(
            ["capture-pane", "-p", "-J", "-t", f"={self.name}:", "-S", f"-{lines}"]
        )
        if not output or not output.strip():
            return None
        return output

    # ------------------------------------------------------------------
    # pid bookkeeping
    # ------------------------------------------------------------------

    def _has_pid_file(self) -> bool:
        path = self.pid_path
        return path is not None and path.exists()

    def _write_pid(self, raw: str) -> None:
        path = self.pid_path
        if path is None or not raw.isdigit():
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(raw + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not record worker pid in {path}: {e}")

    def _kill_recorded_pid(self) -> None:
        path = self.pid_path
        if path is None or not path.exists():
            return
        try:
            pid = int(path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return
        self._kill(pid)

    def _kill(self, pid: int) -> None:
        try:
            os.kill(pid, signal.SIGKILL)
            logger.info("Killed orphaned worker pid %d", pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to kill pid {pid}: {e}")

    def _remove_pid_file(self) -> None:
        path = self.pid_path
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
