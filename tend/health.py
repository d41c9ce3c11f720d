# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Worker output health assessment.

Scans the tail of a terminal snapshot for worker-specific error signatures
and recent activity. Only explicit errors are actionable: a quiet worker is
``INCONCLUSIVE``, never ``UNHEALTHY``, because pools legitimately go silent.

Worker kinds are registered once in :data:`WORKER_KINDS` and looked up by
name; unknown names fall back to the generic kind.
"""

from __future__ import annotations

import argparse
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

logger = logging.getLogger(__name__)

TAIL_LINES = 50
STALE_AFTER = timedelta(minutes=20)

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

# Bracketed xmrig format (optionally with milliseconds), then bare ccminer format
TIMESTAMP_PATTERNS = (
    re.compile(r"\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})(?:\.\d{1,3})?\]"),
    re.compile(r"(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})"),
)

COMMON_ERROR_PATTERNS = (
    r"stratum connection interrupted",
    r"connection failed",
    r"pool timeout",
    r"failed to connect",
    r"socket error",
    r"network error",
    r"disconnected from pool",
    r"authentication failed",
    r"pool rejected",
    r"no response from pool",
)


class HealthVerdict(str, Enum):
    """Result of :func:`check_health`."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INCONCLUSIVE = "inconclusive"


def _compile(patterns) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class WorkerKind:
    """Output signatures for one kind of worker."""

    name: str
    error_patterns: tuple[re.Pattern, ...]
    activity_patterns: tuple[re.Pattern, ...]
    connected_patterns: tuple[re.Pattern, ...] = ()
    disconnected_patterns: tuple[re.Pattern, ...] = field(
        default_factory=lambda: _compile(
            [r"connection interrupted", r"disconnected"]
        )
    )


@dataclass
class HealthReport:
    """Verdict plus the evidence it was derived from."""

    verdict: HealthVerdict
    message: str
    last_activity: datetime | None = None
    connection_status: str = "unknown"
    matched_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "healthy": self.verdict is HealthVerdict.HEALTHY,
            "message": self.message,
            "lastActivity": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
            "connectionStatus": self.connection_status,
            "matchedError": self.matched_error,
        }


WORKER_KINDS: dict[str, WorkerKind] = {}


def register_worker_kind(kind: WorkerKind) -> WorkerKind:
    """Add ``kind`` to the registry, replacing any kind with the same name."""
    WORKER_KINDS[kind.name] = kind
    return kind


def get_worker_kind(name: str | None) -> WorkerKind:
    """Look up a worker kind by name, falling back to ``generic``."""
    if name and name.lower() in WORKER_KINDS:
        return WORKER_KINDS[name.lower()]
    return WORKER_KINDS["generic"]


register_worker_kind(
    WorkerKind(
        name="generic",
        error_patterns=_compile(COMMON_ERROR_PATTERNS),
        activity_patterns=_compile(
            [r"accepted.*yes!", r"new job from", r"\bspeed\b", r"H/s"]
        ),
        connected_patterns=_compile([r"Starting on stratum", r"use pool"]),
    )
)

register_worker_kind(
    WorkerKind(
        name="xmrig",
        error_patterns=_compile(
            COMMON_ERROR_PATTERNS
            + (
                # Huge-page and slow-mode fallbacks are normal and not listed
                r"randomx init failed",
                r"pool connection error",
                r"tls handshake failed",
                r"job timeout",
                r"backend error",
                r"bind failed",
                r"login failed",
                r"connect error",
                r"compilation failed",
                r"cuda init failed",
                r"opencl init failed",
            )
        ),
        activity_patterns=_compile(
            [r"accepted \(\d+/\d+\)", r"new job from", r"\bspeed\b", r"H/s"]
        ),
        connected_patterns=_compile([r"use pool"]),
    )
)

register_worker_kind(
    WorkerKind(
        name="ccminer",
        error_patterns=_compile(
            COMMON_ERROR_PATTERNS
            + (
                r"cuda error",
                r"opencl error",
                r"gpu error",
                r"device error",
                r"stratum authentication failed",
            )
        ),
        activity_patterns=_compile(
            [r"accepted.*yes!", r"stratum detected new block", r"[kMG]?H/s"]
        ),
        connected_patterns=_compile([r"Starting on stratum"]),
    )
)


def detect_worker_kind(output: str) -> str | None:
    """Guess the worker kind from characteristic output."""
    if any(s in output for s in ("XMRig/", "randomx", "new job from", "algo rx/")):
        return "xmrig"
    if any(s in output for s in ("ccminer", "stratum+tcp", "yes!", "kH/s")):
        return "ccminer"
    return None


def _line_timestamp(line: str) -> datetime | None:
    for pattern in TIMESTAMP_PATTERNS:
        match = pattern.search(line)
        if not match:
            continue
        try:
            return datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S")
        except ValueError:
            continue
    return None


def _connection_status(line: str, kind: WorkerKind, current: str) -> str:
    if any(p.search(line) for p in kind.connected_patterns):
        return "connected"
    if any(p.search(line) for p in kind.activity_patterns):
        return "mining"
    if any(p.search(line) for p in kind.disconnected_patterns):
        return "disconnected"
    return current


def assess_health(
    snapshot: str | None,
    worker: str | None = None,
    now: datetime | None = None,
    *,
    tail_lines: int = TAIL_LINES,
    stale_after: timedelta = STALE_AFTER,
) -> HealthReport:
    """Assess ``snapshot`` for ``worker`` and return a :class:`HealthReport`."""
    if not snapshot or not snapshot.strip():
        return HealthReport(HealthVerdict.INCONCLUSIVE, "No output captured")

    now = now or datetime.now()
    text = ANSI_RE.sub("", snapshot)
    if worker and worker.lower() in WORKER_KINDS:
        kind = WORKER_KINDS[worker.lower()]
    else:
        kind = get_worker_kind(detect_worker_kind(text))
    label = worker or kind.name

    lines = [line for line in text.splitlines() if line.strip()][-tail_lines:]

    # Errors first; the earliest matching line wins
    for line in lines:
        for pattern in kind.error_patterns:
            if pattern.search(line):
                logger.debug("Error signature %r in: %s", pattern.pattern, line)
                return HealthReport(
                    HealthVerdict.UNHEALTHY,
                    f"{label} has connection or error issues",
                    connection_status="disconnected",
                    matched_error=line.strip(),
                )

    last_seen: datetime | None = None
    last_activity: datetime | None = None
    status = "unknown"
    for line in lines:
        stamp = _line_timestamp(line)
        if stamp is not None:
            last_seen = stamp
        status = _connection_status(line, kind, status)
        if last_seen and any(p.search(line) for p in kind.activity_patterns):
            if last_activity is None or last_seen > last_activity:
                last_activity = last_seen

    if last_activity is None:
        return HealthReport(
            HealthVerdict.INCONCLUSIVE,
            f"No recent {label} activity detected",
            connection_status=status,
        )

    if now - last_activity > stale_after:
        return HealthReport(
            HealthVerdict.INCONCLUSIVE,
            f"Last {label} activity at {last_activity:%H:%M:%S} is stale",
            last_activity=last_activity,
            connection_status=status,
        )

    return HealthReport(
        HealthVerdict.HEALTHY,
        f"{label} appears to be running normally",
        last_activity=last_activity,
        connection_status=status,
    )


def check_health(
    snapshot: str | None, worker: str | None = None, now: datetime | None = None
) -> HealthVerdict:
    """Binary-plus-unknown health verdict for a worker output snapshot."""
    return assess_health(snapshot, worker, now).verdict


def main() -> None:
    """Capture the worker session and print its health (``rig health``)."""
    import json

    from tend.config import ConfigStore
    from tend.session import SessionRunner
    from tend.utils import get_home, setup_cli

    parser = argparse.ArgumentParser(description="Check worker output health")
    setup_cli(parser)

    home = get_home()
    identity = ConfigStore(home).get_worker_identity()
    runner = SessionRunner(state_dir=home / "health")
    report = assess_health(
        runner.snapshot_output(), identity.name if identity else None
    )
    print(json.dumps(report.to_dict(), indent=2))


if __name__ == "__main__":
    main()
