# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Mining windows and scheduled restarts.

Parses the backend's ``schedules`` block into an immutable
:class:`ScheduleConfig` and answers two questions for a point in time:
should the worker be running, and which restart rules are due.

Evaluation is a pure function of ``(config, now)``. Malformed entries are
dropped with a warning while parsing, so they never contribute to a
decision. An enabled schedule without periods denies mining entirely.

The main() function provides the ``rig schedule`` CLI.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any

from tend.utils import WEEKDAYS, parse_hhmm, weekday_name

logger = logging.getLogger(__name__)


def _minute_of(now: datetime) -> time:
    """Time of day truncated to the minute."""
    return now.time().replace(second=0, microsecond=0)


def _parse_days(raw: Any) -> frozenset[str] | None:
    """Normalize a list of weekday names. None if any entry is invalid."""
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    days = set()
    for day in raw:
        if not isinstance(day, str) or day.strip().lower() not in WEEKDAYS:
            return None
        days.add(day.strip().lower())
    return frozenset(days)


@dataclass(frozen=True)
class MiningPeriod:
    """Recurring weekly window in which the worker may run."""

    days: frozenset[str]
    start: time
    end: time

    @classmethod
    def from_dict(cls, raw: Any) -> MiningPeriod | None:
        if not isinstance(raw, dict):
            return None
        days = _parse_days(raw.get("days"))
        start = parse_hhmm(raw.get("startTime"))
        end = parse_hhmm(raw.get("endTime"))
        if days is None or start is None or end is None:
            return None
        return cls(days=days, start=start, end=end)

    @property
    def overnight(self) -> bool:
        return self.start > self.end

    def in_time_range(self, t: time) -> bool:
        """Inclusive range check; overnight windows wrap midnight."""
        if not self.overnight:
            return self.start <= t <= self.end
        return t >= self.start or t <= self.end

    def in_day(self, now: datetime) -> bool:
        return weekday_name(now) in self.days

    def is_active(self, now: datetime) -> bool:
        return self.in_day(now) and self.in_time_range(_minute_of(now))

    def label(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "startTime": f"{self.start:%H:%M}",
            "endTime": f"{self.end:%H:%M}",
            "days": [d for d in WEEKDAYS if d in self.days],
        }


@dataclass(frozen=True)
class RestartRule:
    """Restart at ``time`` on ``days`` (every day when ``days`` is None)."""

    time: time
    days: frozenset[str] | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> RestartRule | None:
        # Older backends sent bare "HH:MM" strings
        if isinstance(raw, str):
            parsed = parse_hhmm(raw)
            return cls(time=parsed) if parsed else None
        if not isinstance(raw, dict):
            return None
        parsed = parse_hhmm(raw.get("time"))
        if parsed is None:
            return None
        raw_days = raw.get("days")
        if raw_days is None or raw_days == []:
            return cls(time=parsed)
        days = _parse_days(raw_days)
        if days is None:
            return None
        return cls(time=parsed, days=days)

    def applies_on(self, day: str) -> bool:
        return self.days is None or day in self.days

    def matches(self, now: datetime) -> bool:
        """Exact-minute match on time of day and weekday."""
        return _minute_of(now) == self.time and self.applies_on(weekday_name(now))

    def label(self) -> str:
        return f"{self.time:%H:%M}"


def _entries(value: Any, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("%s must be a list, ignoring: %r", name, value)
        return []
    return value


@dataclass(frozen=True)
class ScheduleConfig:
    """Declarative schedule. Replaced wholesale on every config refresh."""

    mining_enabled: bool = False
    periods: tuple[MiningPeriod, ...] = ()
    restarts: tuple[RestartRule, ...] = ()

    @classmethod
    def from_dict(cls, schedules: Any) -> ScheduleConfig:
        """Build from the backend ``schedules`` block, skipping bad entries."""
        if not isinstance(schedules, dict):
            return cls()

        mining = schedules.get("scheduledMining") or {}
        if not isinstance(mining, dict):
            logger.warning("scheduledMining must be an object, ignoring")
            mining = {}

        periods: list[MiningPeriod] = []
        for raw in _entries(mining.get("periods"), "periods"):
            period = MiningPeriod.from_dict(raw)
            if period is None:
                logger.warning("Invalid period configuration, skipping: %s", raw)
                continue
            periods.append(period)

        restarts: list[RestartRule] = []
        for raw in _entries(schedules.get("scheduledRestarts"), "scheduledRestarts"):
            rule = RestartRule.from_raw(raw)
            if rule is None:
                logger.warning("Invalid restart rule, skipping: %s", raw)
                continue
            restarts.append(rule)

        return cls(
            mining_enabled=bool(mining.get("enabled", False)),
            periods=tuple(periods),
            restarts=tuple(restarts),
        )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def should_be_running(config: ScheduleConfig, now: datetime) -> bool:
    """Return True when the worker is allowed to run at ``now``."""
    if not config.mining_enabled:
        logger.debug("Scheduled mining disabled, mining allowed at any time")
        return True

    if not config.periods:
        logger.debug("No mining periods configured, mining not allowed")
        return False

    for period in config.periods:
        if period.is_active(now):
            logger.debug(
                "%s %s is within schedule %s",
                weekday_name(now),
                f"{now:%H:%M}",
                period.label(),
            )
            return True

    logger.debug(
        "%s %s is outside of all scheduled mining periods",
        weekday_name(now),
        f"{now:%H:%M}",
    )
    return False


def due_restarts(config: ScheduleConfig, now: datetime) -> list[RestartRule]:
    """Restart rules whose time of day equals ``now`` to the minute."""
    return [rule for rule in config.restarts if rule.matches(now)]


def next_restart(config: ScheduleConfig, now: datetime) -> dict[str, Any] | None:
    """Find the next restart strictly after the current minute.

    Looks up to seven days ahead so that day-restricted rules are found.
    """
    base = now.replace(second=0, microsecond=0)
    best: tuple[datetime, RestartRule] | None = None
    for rule in config.restarts:
        for offset in range(8):
            candidate = datetime.combine(
                base.date() + timedelta(days=offset), rule.time
            )
            if candidate <= base:
                continue
            if not rule.applies_on(weekday_name(candidate)):
                continue
            if best is None or candidate < best[0]:
                best = (candidate, rule)
            break

    if best is None:
        return None
    when, rule = best
    return {
        "time": rule.label(),
        "day": weekday_name(when),
        "minutes_until": int((when - base).total_seconds() // 60),
    }


def schedule_status(config: ScheduleConfig, now: datetime) -> dict[str, Any]:
    """Summarize the schedule at ``now`` for status displays."""
    minute = _minute_of(now)
    all_periods = []
    for index, period in enumerate(config.periods):
        in_day = period.in_day(now)
        in_range = period.in_time_range(minute)
        all_periods.append(
            {
                "id": index + 1,
                **period.to_dict(),
                "in_day": in_day,
                "in_time_range": in_range,
                "is_active": in_day and in_range,
            }
        )

    active = next((p for p in all_periods if p["is_active"]), None)
    return {
        "current_day": weekday_name(now),
        "current_time": f"{now:%H:%M}",
        "scheduling_enabled": config.mining_enabled,
        "active_period": active,
        "all_periods": all_periods,
        "next_restart": next_restart(config, now),
        "restart_times": [rule.label() for rule in config.restarts],
        "should_be_mining": should_be_running(config, now),
    }


def log_schedule_status(config: ScheduleConfig, now: datetime) -> None:
    """Log a one-shot schedule summary at INFO."""
    status = schedule_status(config, now)
    logger.info(
        "Schedule status - Day: %s, Time: %s, Enabled: %s, Periods: %d, Restarts: %d",
        status["current_day"],
        status["current_time"],
        status["scheduling_enabled"],
        len(status["all_periods"]),
        len(status["restart_times"]),
    )
    for period in status["all_periods"]:
        logger.info(
            "Period #%d: %s-%s, Days: %s, Active: %s",
            period["id"],
            period["startTime"],
            period["endTime"],
            ",".join(period["days"]),
            period["is_active"],
        )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main() -> None:
    """Print schedule status as JSON (``rig schedule``)."""
    from tend.config import ConfigStore
    from tend.utils import get_home, setup_cli

    parser = argparse.ArgumentParser(description="Show mining schedule status")
    parser.add_argument(
        "--at",
        metavar="'YYYY-MM-DD HH:MM'",
        help="Evaluate at this local time instead of now",
    )
    args = setup_cli(parser)

    now = datetime.now()
    if args.at:
        try:
            now = datetime.strptime(args.at, "%Y-%m-%d %H:%M")
        except ValueError:
            parser.error(f"Invalid --at value: {args.at}")

    store = ConfigStore(get_home())
    print(json.dumps(schedule_status(store.get_schedule_config(), now), indent=2))


if __name__ == "__main__":
    main()
