# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify

bp = Blueprint("miner", __name__, url_prefix="/api/miner")

# Status keys exposed under their camelCase names
STATUS_KEYS = {
    "current_day": "currentDay",
    "current_time": "currentTime",
    "scheduling_enabled": "schedulingEnabled",
    "active_period": "activePeriod",
    "all_periods": "allPeriods",
    "next_restart": "nextRestart",
    "restart_times": "restartTimes",
    "is_running": "isRunning",
    "should_be_mining": "shouldBeMining",
    "worker": "worker",
    "crash_count": "crashCount",
    "max_crashes": "maxCrashes",
    "last_crash_at": "lastCrashAt",
    "manually_stopped": "manuallyStopped",
    "manual_stop_at": "manualStopAt",
    "last_restart_at": "lastRestartAt",
    "phase": "phase",
}


def _supervisor():
    return current_app.config.get("SUPERVISOR")


def _unavailable():
    return jsonify({"success": False, "error": "Supervisor not running"}), 503


def _camel(status: dict[str, Any]) -> dict[str, Any]:
    return {STATUS_KEYS.get(k, k): v for k, v in status.items()}


def _action(ok: bool, message: str, error: str):
    if ok:
        return jsonify({"success": True, "message": message})
    return jsonify({"success": False, "error": error}), 409


@bp.route("/status")
def status() -> Any:
    supervisor = _supervisor()
    if supervisor is None:
        return _unavailable()
    return jsonify({"success": True, **_camel(supervisor.get_status())})


@bp.route("/stop", methods=["POST"])
def stop() -> Any:
    supervisor = _supervisor()
    if supervisor is None:
        return _unavailable()
    return _action(
        supervisor.trigger_manual_stop(),
        "Miner stopped",
        "Failed to stop miner",
    )


@bp.route("/start", methods=["POST"])
def start() -> Any:
    supervisor = _supervisor()
    if supervisor is None:
        return _unavailable()
    return _action(
        supervisor.trigger_manual_start(),
        "Miner started",
        "Failed to start miner",
    )


@bp.route("/restart", methods=["POST"])
def restart() -> Any:
    supervisor = _supervisor()
    if supervisor is None:
        return _unavailable()
    return _action(
        supervisor.force_restart(),
        "Miner restarted",
        "Failed to restart miner",
    )


@bp.route("/health")
def health() -> Any:
    supervisor = _supervisor()
    if supervisor is None:
        return _unavailable()
    return jsonify({"success": True, **supervisor.health_report().to_dict()})


@bp.route("/output")
def output() -> Any:
    supervisor = _supervisor()
    if supervisor is None:
        return _unavailable()
    return jsonify({"success": True, "output": supervisor.snapshot_output()})
