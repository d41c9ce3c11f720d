# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Crash detection, bounded retries, restart cooldown and manual override.

:class:`RecoveryMachine` owns the single :class:`SupervisorState` and is the
only caller of the session runner's ``start``/``stop``. Every public method
takes the machine's lock for its whole decide-and-act step, so the periodic
triggers and control operations never interleave their transitions.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

from tend.flightsheet import WorkerIdentity
from tend.health import HealthVerdict
from tend.schedule import ScheduleConfig, due_restarts, should_be_running
from tend.session import SessionResult

logger = logging.getLogger(__name__)

MAX_CRASHES = 3
MANUAL_STOP_TIMEOUT = timedelta(minutes=10)
RESTART_COOLDOWN = timedelta(minutes=5)


class Phase(str, Enum):
    IDLE = "idle"
    MANUALLY_STOPPED = "manually_stopped"
    RUNNING = "running"
    CRASH_SUSPECTED = "crash_suspected"
    HALTED = "halted"


class TickAction(str, Enum):
    """What a tick or control call did."""

    NONE = "none"
    SKIPPED = "skipped"
    STARTED = "started"
    STOPPED = "stopped"
    RESTARTED = "restarted"
    COOLDOWN = "cooldown"
    HALTED = "halted"
    FAILED = "failed"


@dataclass
class SupervisorState:
    """In-memory recovery bookkeeping. Never persisted."""

    crash_count: int = 0
    max_crashes: int = MAX_CRASHES
    last_crash_at: datetime | None = None
    manually_stopped: bool = False
    manual_stop_at: datetime | None = None
    last_restart_at: datetime | None = None
    last_schedule_check_at: datetime | None = None
    phase: Phase = Phase.IDLE

    def to_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "crash_count": self.crash_count,
            "max_crashes": self.max_crashes,
            "last_crash_at": iso(self.last_crash_at),
            "manually_stopped": self.manually_stopped,
            "manual_stop_at": iso(self.manual_stop_at),
            "last_restart_at": iso(self.last_restart_at),
            "phase": self.phase.value,
        }


@runtime_checkable
class WorkerRunner(Protocol):
    def is_running(self) -> bool: ...

    def start(self, executable, params) -> SessionResult: ...

    def stop(self) -> SessionResult: ...


@runtime_checkable
class IncidentSink(Protocol):
    def report_incident(
        self, message: str, stack: str = "", metadata: dict | None = None
    ) -> Any: ...


class RecoveryMachine:
    """Applies start/stop/restart decisions to the worker session."""

    def __init__(
        self,
        runner: WorkerRunner,
        incidents: IncidentSink | None = None,
        *,
        max_crashes: int = MAX_CRASHES,
        manual_stop_timeout: timedelta = MANUAL_STOP_TIMEOUT,
        restart_cooldown: timedelta = RESTART_COOLDOWN,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.runner = runner
        self.incidents = incidents
        self.manual_stop_timeout = manual_stop_timeout
        self.restart_cooldown = restart_cooldown
        self.clock = clock
        self.state = SupervisorState(max_crashes=max_crashes)
        self.closed = False
        self._lock = threading.RLock()
        self._worker_name: str | None = None

    # ------------------------------------------------------------------
    # Helpers, called with the lock held
    # ------------------------------------------------------------------

    def _start(self, identity: WorkerIdentity | None) -> bool:
        if identity is None:
            logger.warning("No worker selected, cannot start")
            return False
        self._worker_name = identity.name
        result = self.runner.start(identity.executable, identity.params)
        if not result:
            logger.error(f"Failed to start {identity.name}: {result.error} {result.detail}")
            return False
        self.state.phase = Phase.RUNNING
        return True

    def _stop(self) -> bool:
        result = self.runner.stop()
        if not result:
            logger.warning(f"Failed to stop worker: {result.error} {result.detail}")
        return bool(result)

    def _restart(self, identity: WorkerIdentity | None, reason: str, now: datetime) -> bool:
        logger.info(f"Restarting worker: {reason}")
        self._stop()
        self.state.last_restart_at = now
        return self._start(identity)

    def _in_cooldown(self, now: datetime) -> bool:
        last = self.state.last_restart_at
        return last is not None and now - last < self.restart_cooldown

    def _manual_stop_active(self, now: datetime) -> bool:
        """True while a manual stop suppresses automatic actions.

        Clears the flag once the timeout has elapsed.
        """
        state = self.state
        if not state.manually_stopped:
            return False
        if state.manual_stop_at and now - state.manual_stop_at >= self.manual_stop_timeout:
            logger.info("Manual stop timeout expired, resuming automatic control")
            self._clear_manual_stop()
            if state.phase is Phase.MANUALLY_STOPPED:
                state.phase = Phase.IDLE
            return False
        return True

    def _clear_manual_stop(self) -> None:
        self.state.manually_stopped = False
        self.state.manual_stop_at = None

    def _report(self, message: str, was_running: bool, now: datetime) -> None:
        if self.incidents is None:
            return
        state = self.state
        metadata = {
            "minerSoftware": self._worker_name,
            "wasRunning": was_running,
            "crashCount": state.crash_count,
            "lastCrashTime": state.last_crash_at.isoformat() if state.last_crash_at else None,
            "timestamp": now.isoformat(),
        }
        try:
            self.incidents.report_incident(message, "", metadata)
        except Exception as e:
            logger.warning(f"Incident sink failed: {e}")

    # ------------------------------------------------------------------
    # Periodic triggers
    # ------------------------------------------------------------------

    def on_health_tick(
        self,
        now: datetime,
        should_run: bool,
        identity: WorkerIdentity | None,
        verdict: HealthVerdict,
    ) -> TickAction:
        """Crash and health evaluation, in fixed order."""
        with self._lock:
            if self.closed:
                return TickAction.NONE
            state = self.state

            if self._manual_stop_active(now):
                logger.debug("Worker manually stopped, skipping health check")
                return TickAction.SKIPPED

            running = self.runner.is_running()

            if not should_run:
                if state.phase is not Phase.HALTED:
                    state.phase = Phase.IDLE
                if running:
                    logger.info("Worker running outside mining window, stopping")
                    self._stop()
                    return TickAction.STOPPED
                return TickAction.NONE

            if state.phase is Phase.HALTED:
                logger.debug("Worker halted after repeated crashes, not restarting")
                return TickAction.SKIPPED

            if identity is None:
                logger.debug("No worker selected, skipping crash check")
                return TickAction.NONE
            self._worker_name = identity.name

            if not running:
                state.crash_count += 1
                state.last_crash_at = now
                state.phase = Phase.CRASH_SUSPECTED
                logger.warning(
                    "Worker not running during mining window (crash %d/%d)",
                    state.crash_count,
                    state.max_crashes,
                )
                if state.crash_count >= state.max_crashes:
                    state.phase = Phase.HALTED
                    logger.critical(
                        f"{identity.name} crashed {state.crash_count} times, "
                        "giving up until manual restart"
                    )
                    self._report(
                        f"Maximum crash count ({state.max_crashes}) reached, "
                        "mining halted",
                        False,
                        now,
                    )
                    return TickAction.HALTED

                self._report(
                    f"{identity.name} crashed during mining window", False, now
                )
                if self._restart(identity, "crash detected", now):
                    return TickAction.RESTARTED
                return TickAction.FAILED

            if verdict is HealthVerdict.UNHEALTHY:
                if self._in_cooldown(now):
                    logger.info(
                        "Worker unhealthy but last restart at %s is within cooldown",
                        state.last_restart_at,
                    )
                    return TickAction.COOLDOWN
                self._report(f"{identity.name} reported errors", True, now)
                if self._restart(identity, "health check failed", now):
                    return TickAction.RESTARTED
                return TickAction.FAILED

            if verdict is HealthVerdict.HEALTHY and state.crash_count:
                logger.info(f"Worker healthy, resetting crash count from {state.crash_count}")
                state.crash_count = 0
            state.phase = Phase.RUNNING
            return TickAction.NONE

    def on_schedule_tick(
        self,
        now: datetime,
        config: ScheduleConfig,
        identity: WorkerIdentity | None,
    ) -> TickAction:
        """Window-driven start/stop and scheduled restart rules.

        Evaluated at most once per wall-clock minute.
        """
        with self._lock:
            if self.closed:
                return TickAction.NONE
            state = self.state

            minute = now.replace(second=0, microsecond=0)
            if state.last_schedule_check_at == minute:
                return TickAction.SKIPPED
            state.last_schedule_check_at = minute

            if self._manual_stop_active(now):
                logger.debug("Worker manually stopped, skipping schedule check")
                return TickAction.SKIPPED
            if state.phase is Phase.HALTED:
                return TickAction.SKIPPED

            should_run = should_be_running(config, now)
            running = self.runner.is_running()

            if not should_run:
                state.phase = Phase.IDLE
                if running:
                    logger.info("Mining window closed, stopping worker")
                    self._stop()
                    return TickAction.STOPPED
                return TickAction.NONE

            if not running:
                # Disappearances while running are the crash tick's business
                if state.phase is not Phase.IDLE:
                    return TickAction.NONE
                if identity is None:
                    return TickAction.NONE
                logger.info("Mining window open, starting worker")
                return TickAction.STARTED if self._start(identity) else TickAction.FAILED

            due = due_restarts(config, now)
            if not due:
                return TickAction.NONE
            if self._in_cooldown(now):
                logger.info(
                    "Scheduled restart at %s skipped, within cooldown", due[0].label()
                )
                return TickAction.COOLDOWN
            if self._restart(identity, f"scheduled restart at {due[0].label()}", now):
                return TickAction.RESTARTED
            return TickAction.FAILED

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_worker(self, identity: WorkerIdentity | None) -> bool:
        """Start the worker if it is not already running."""
        with self._lock:
            if self.closed:
                return False
            if self.runner.is_running():
                self.state.phase = Phase.RUNNING
                return True
            return self._start(identity)

    def stop_worker(self, manual: bool = False) -> bool:
        """Stop the worker. A manual stop suppresses automatic restarts."""
        with self._lock:
            if self.closed:
                return False
            if manual:
                now = self.clock()
                self.state.manually_stopped = True
                self.state.manual_stop_at = now
                self.state.phase = Phase.MANUALLY_STOPPED
                logger.info(
                    f"Manual stop, automatic restarts suspended until "
                    f"{now + self.manual_stop_timeout:%H:%M:%S}"
                )
            elif self.state.phase is not Phase.HALTED:
                self.state.phase = Phase.IDLE
            return self._stop()

    def manual_start(self, identity: WorkerIdentity | None) -> bool:
        """Operator start. Clears manual stop and halt on success."""
        with self._lock:
            if self.closed:
                return False
            if not (self.runner.is_running() or self._start(identity)):
                return False
            self._clear_manual_stop()
            self.state.crash_count = 0
            self.state.phase = Phase.RUNNING
            logger.info("Worker started manually")
            return True

    def force_restart(self, identity: WorkerIdentity | None, reason: str = "forced restart") -> bool:
        """Restart now, ignoring cooldown, manual stop and halt."""
        with self._lock:
            if self.closed:
                return False
            now = self.clock()
            self._clear_manual_stop()
            self.state.crash_count = 0
            if not self._restart(identity, reason, now):
                self.state.phase = Phase.IDLE
                return False
            return True

    def restart_for_workload(self, identity: WorkerIdentity | None) -> TickAction:
        """Restart a running worker so it picks up new parameters.

        A stopped worker gets the new parameters on its next start.
        """
        with self._lock:
            if self.closed:
                return TickAction.NONE
            now = self.clock()
            if self._manual_stop_active(now) or self.state.phase is Phase.HALTED:
                logger.info("Workload changed, worker stays stopped")
                return TickAction.SKIPPED
            if not self.runner.is_running():
                return TickAction.NONE
            if self._restart(identity, "workload changed", now):
                return TickAction.RESTARTED
            return TickAction.FAILED

    def close(self) -> bool:
        """Refuse further actions and stop the worker, best-effort."""
        with self._lock:
            self.closed = True
            return self._stop()

    def status(self) -> dict[str, Any]:
        with self._lock:
            now = self.clock()
            self._manual_stop_active(now)
            return self.state.to_dict()
