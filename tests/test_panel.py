# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

from datetime import datetime

import pytest

from panel import create_app
from tend.schedule import ScheduleConfig
from tend.supervisor import Supervisor

NOW = datetime(2026, 3, 2, 12, 0, 0)


class StaticConfig:
    def __init__(self, identity):
        self.identity = identity

    def get_schedule_config(self):
        return ScheduleConfig()

    def get_worker_identity(self):
        return self.identity

    def refresh(self):
        return False


@pytest.fixture
def supervisor(identity, fake_runner):
    return Supervisor(StaticConfig(identity), fake_runner, clock=lambda: NOW)


@pytest.fixture
def client(supervisor):
    return create_app(supervisor).test_client()


def test_status_uses_camel_case(client, supervisor):
    supervisor.initialize()
    resp = client.get("/api/miner/status")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    for key in (
        "currentDay",
        "currentTime",
        "schedulingEnabled",
        "activePeriod",
        "nextRestart",
        "isRunning",
        "shouldBeMining",
    ):
        assert key in data
    assert data["currentDay"] == "monday"
    assert data["isRunning"] is True
    assert data["crashCount"] == 0
    assert data["phase"] == "running"


def test_stop_and_start(client, fake_runner, supervisor):
    supervisor.initialize()
    resp = client.post("/api/miner/stop")
    assert resp.get_json() == {"success": True, "message": "Miner stopped"}
    assert not fake_runner.running
    assert supervisor.machine.state.manually_stopped

    resp = client.post("/api/miner/start")
    assert resp.get_json()["success"] is True
    assert fake_runner.running


def test_start_failure_returns_409(client, fake_runner):
    fake_runner.fail_start = True
    resp = client.post("/api/miner/start")
    assert resp.status_code == 409
    assert resp.get_json()["success"] is False


def test_restart(client, fake_runner):
    resp = client.post("/api/miner/restart")
    assert resp.status_code == 200
    assert len(fake_runner.start_calls) == 1


def test_health_and_output(client, fake_runner):
    fake_runner.output = "[2026-03-02 11:59:00] accepted (1/0) diff 1\n"
    health = client.get("/api/miner/health").get_json()
    assert health["success"] is True
    assert health["verdict"] in ("healthy", "inconclusive")
    assert "connectionStatus" in health

    output = client.get("/api/miner/output").get_json()
    assert output["output"] == fake_runner.output


def test_stop_requires_post(client):
    assert client.get("/api/miner/stop").status_code == 405


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/miner/status"),
        ("post", "/api/miner/stop"),
        ("post", "/api/miner/start"),
        ("post", "/api/miner/restart"),
        ("get", "/api/miner/health"),
        ("get", "/api/miner/output"),
    ],
)
def test_unbound_app_returns_503(method, path):
    client = create_app().test_client()
    resp = getattr(client, method)(path)
    assert resp.status_code == 503
    assert resp.get_json()["success"] is False
