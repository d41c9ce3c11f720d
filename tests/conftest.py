# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

import json
from pathlib import Path

import pytest

from tend.flightsheet import WorkerIdentity
from tend.session import OK, SessionError, SessionResult


@pytest.fixture(autouse=True)
def set_test_rig_home(tmp_path, monkeypatch):
    """Point RIG_HOME at a temp directory and clear backend settings."""
    home = tmp_path / "rig"
    home.mkdir()
    monkeypatch.setenv("RIG_HOME", str(home))
    monkeypatch.delenv("RIG_TOKEN", raising=False)
    monkeypatch.delenv("API_URL", raising=False)
    # Keep is_termux() deterministic
    for var in ("PREFIX", "TERMUX_VERSION", "ANDROID_DATA", "ANDROID_ROOT"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def rig_home(set_test_rig_home) -> Path:
    return set_test_rig_home


class FakeRunner:
    """In-memory stand-in for SessionRunner."""

    def __init__(self, running: bool = False, output: str | None = None):
        self.running = running
        self.output = output
        self.start_calls: list[tuple] = []
        self.stop_calls = 0
        self.fail_start = False

    def is_running(self) -> bool:
        return self.running

    def start(self, executable, params) -> SessionResult:
        self.start_calls.append((executable, params))
        if self.fail_start:
            return SessionResult(False, SessionError.SPAWN_FAILED, "boom")
        self.running = True
        return OK

    def stop(self) -> SessionResult:
        self.stop_calls += 1
        self.running = False
        return OK

    def snapshot_output(self, lines: int = 200) -> str | None:
        return self.output


class FakeIncidents:
    def __init__(self):
        self.reported: list[tuple] = []

    def report_incident(self, message, stack="", metadata=None):
        self.reported.append((message, stack, metadata))
        return True


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_incidents():
    return FakeIncidents()


@pytest.fixture
def identity(tmp_path):
    app_dir = tmp_path / "apps" / "xmrig"
    app_dir.mkdir(parents=True)
    (app_dir / "xmrig").write_text("#!/bin/sh\n")
    (app_dir / "config.json").write_text("{}")
    return WorkerIdentity.for_miner(tmp_path, "xmrig")


@pytest.fixture
def write_config(rig_home):
    """Write ``config/config.json`` under RIG_HOME."""

    def _write(data: dict) -> Path:
        path = rig_home / "config" / "config.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return path

    return _write
