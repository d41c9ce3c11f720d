# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

import json
import logging
import sys
from datetime import datetime, time

import pytest

from tend.schedule import (
    MiningPeriod,
    RestartRule,
    ScheduleConfig,
    due_restarts,
    next_restart,
    schedule_status,
    should_be_running,
)


def at(day: int, hh: int, mm: int, ss: int = 0) -> datetime:
    """2026-03-02 is a Monday; ``day`` 0 is Monday."""
    return datetime(2026, 3, 2 + day, hh, mm, ss)


def schedules(enabled=True, periods=(), restarts=()):
    return ScheduleConfig.from_dict(
        {
            "scheduledMining": {"enabled": enabled, "periods": list(periods)},
            "scheduledRestarts": list(restarts),
        }
    )


OVERNIGHT = {"days": ["monday"], "startTime": "22:00", "endTime": "06:00"}
WORKDAY = {
    "days": ["monday", "tuesday", "wednesday", "thursday", "friday"],
    "startTime": "09:00",
    "endTime": "17:00",
}


@pytest.mark.parametrize("moment", [at(0, 0, 0), at(3, 12, 30), at(6, 23, 59, 59)])
def test_disabled_schedule_always_runs(moment):
    config = schedules(enabled=False, periods=[WORKDAY])
    assert should_be_running(config, moment) is True


@pytest.mark.parametrize("moment", [at(0, 0, 0), at(2, 10, 0), at(5, 23, 59)])
def test_enabled_without_periods_never_runs(moment):
    assert should_be_running(schedules(enabled=True), moment) is False


def test_default_config_allows_mining():
    assert should_be_running(ScheduleConfig(), at(0, 12, 0)) is True
    assert should_be_running(ScheduleConfig.from_dict(None), at(0, 12, 0)) is True


def test_overnight_period():
    config = schedules(periods=[OVERNIGHT])
    assert should_be_running(config, at(0, 23, 30))
    assert should_be_running(config, at(0, 5, 30))
    assert not should_be_running(config, at(0, 12, 0))
    # Matched against the weekday of now, so Tuesday morning is outside
    assert not should_be_running(config, at(1, 5, 30))


def test_overnight_endpoints_inclusive():
    config = schedules(periods=[OVERNIGHT])
    assert should_be_running(config, at(0, 22, 0))
    assert should_be_running(config, at(0, 6, 0))
    assert should_be_running(config, at(0, 6, 0, 59))
    assert not should_be_running(config, at(0, 6, 1))
    assert not should_be_running(config, at(0, 21, 59))


def test_daytime_endpoints_inclusive():
    config = schedules(periods=[WORKDAY])
    assert should_be_running(config, at(2, 9, 0))
    assert should_be_running(config, at(2, 17, 0))
    assert not should_be_running(config, at(2, 17, 1))
    assert not should_be_running(config, at(2, 8, 59))
    assert not should_be_running(config, at(5, 12, 0))  # saturday


def test_day_names_case_insensitive():
    config = schedules(
        periods=[{"days": ["Monday"], "startTime": "08:00", "endTime": "09:00"}]
    )
    assert should_be_running(config, at(0, 8, 30))


def test_malformed_period_skipped(caplog):
    bad = {"startTime": "08:00", "endTime": "10:00"}  # missing days
    with caplog.at_level(logging.WARNING):
        config = schedules(periods=[bad, WORKDAY])
    assert "Invalid period configuration" in caplog.text
    assert len(config.periods) == 1
    assert should_be_running(config, at(1, 12, 0))
    assert not should_be_running(config, at(1, 8, 30))


@pytest.mark.parametrize(
    "bad",
    [
        {"days": ["monday"], "startTime": "8am", "endTime": "10:00"},
        {"days": ["monday"], "startTime": "08:00", "endTime": "24:00"},
        {"days": "monday", "startTime": "08:00", "endTime": "10:00"},
        {"days": ["mon"], "startTime": "08:00", "endTime": "10:00"},
        {"days": [], "startTime": "08:00", "endTime": "10:00"},
        "08:00-10:00",
    ],
)
def test_malformed_period_contributes_nothing(bad):
    config = schedules(periods=[bad])
    assert config.periods == ()
    # Enabled with only malformed periods is a deny-all
    assert not should_be_running(config, at(0, 9, 0))


@pytest.mark.parametrize("value", [5, "22:00-06:00", {"days": ["monday"]}])
def test_non_list_sections_ignored(value, caplog):
    with caplog.at_level(logging.WARNING):
        config = ScheduleConfig.from_dict(
            {
                "scheduledMining": {"enabled": True, "periods": value},
                "scheduledRestarts": value,
            }
        )
    assert config.mining_enabled is True
    assert config.periods == ()
    assert config.restarts == ()
    assert "periods must be a list" in caplog.text
    assert "scheduledRestarts must be a list" in caplog.text


def test_due_restarts_exact_minute():
    config = schedules(enabled=False, restarts=[{"time": "04:00"}])
    assert due_restarts(config, at(2, 4, 0)) == [RestartRule(time(4, 0))]
    assert due_restarts(config, at(2, 4, 0, 45)) == [RestartRule(time(4, 0))]
    assert due_restarts(config, at(2, 4, 1)) == []
    assert due_restarts(config, at(2, 3, 59)) == []


def test_due_restarts_respects_days():
    config = schedules(
        enabled=False, restarts=[{"time": "16:00", "days": ["monday"]}]
    )
    assert len(due_restarts(config, at(0, 16, 0))) == 1
    assert due_restarts(config, at(1, 16, 0)) == []


def test_legacy_string_restart_rules():
    config = schedules(enabled=False, restarts=["03:30", "bogus"])
    assert config.restarts == (RestartRule(time(3, 30)),)
    assert len(due_restarts(config, at(6, 3, 30))) == 1


def test_period_from_dict_roundtrip_fields():
    period = MiningPeriod.from_dict(WORKDAY)
    assert period is not None
    assert period.label() == "09:00-17:00"
    assert period.to_dict()["days"] == WORKDAY["days"]
    assert not period.overnight


def test_next_restart_same_day():
    config = schedules(enabled=False, restarts=[{"time": "04:00"}, {"time": "16:00"}])
    result = next_restart(config, at(2, 10, 0))
    assert result == {"time": "16:00", "day": "wednesday", "minutes_until": 360}


def test_next_restart_wraps_to_tomorrow():
    config = schedules(enabled=False, restarts=[{"time": "04:00"}])
    result = next_restart(config, at(2, 4, 0))
    assert result["day"] == "thursday"
    assert result["minutes_until"] == 24 * 60


def test_next_restart_honours_days():
    config = schedules(
        enabled=False, restarts=[{"time": "04:00", "days": ["sunday"]}]
    )
    result = next_restart(config, at(0, 12, 0))
    assert result["day"] == "sunday"
    assert result["minutes_until"] == 5 * 24 * 60 + 16 * 60


def test_next_restart_none():
    assert next_restart(schedules(enabled=False), at(0, 12, 0)) is None


def test_schedule_status():
    config = schedules(periods=[WORKDAY, OVERNIGHT], restarts=[{"time": "04:00"}])
    status = schedule_status(config, at(0, 23, 15))
    assert status["current_day"] == "monday"
    assert status["current_time"] == "23:15"
    assert status["scheduling_enabled"] is True
    assert status["should_be_mining"] is True
    assert status["active_period"]["id"] == 2
    assert status["restart_times"] == ["04:00"]
    assert [p["is_active"] for p in status["all_periods"]] == [False, True]
    assert status["all_periods"][0]["in_day"] is True
    assert status["all_periods"][0]["in_time_range"] is False
    assert status["next_restart"]["day"] == "tuesday"


def test_main_prints_status(rig_home, write_config, monkeypatch, capsys):
    from tend import schedule

    write_config(
        {"schedules": {"scheduledMining": {"enabled": True, "periods": [WORKDAY]}}}
    )
    monkeypatch.setattr(
        sys, "argv", ["rig schedule", "--at", "2026-03-07 10:00"]
    )
    schedule.main()
    out = json.loads(capsys.readouterr().out)
    assert out["current_day"] == "saturday"
    assert out["should_be_mining"] is False
