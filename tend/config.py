# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""File-backed rig configuration with backend sync.

The local document at ``$RIG_HOME/config/config.json`` is the source of
truth between syncs. A sync merges the backend answer over it, always
keeping the locally registered ``minerId``.
"""

from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Any

from tend.api import ApiClient
from tend.flightsheet import WorkerIdentity, resolve_worker_identity
from tend.schedule import ScheduleConfig
from tend.utils import load_json, save_json

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    "maxCpuTemp": 85,
    "maxBatteryTemp": 45,
    "maxStorageUsage": 90,
    "minHashrate": 0,
    "shareRatio": 0.5,
}


def default_config() -> dict[str, Any]:
    return {
        "minerId": "",
        "rigId": "",
        "name": "Unnamed Rig",
        "minerSoftware": None,
        "thresholds": dict(DEFAULT_THRESHOLDS),
        "schedules": {
            "scheduledMining": {"enabled": False, "periods": []},
            "scheduledRestarts": [],
        },
    }


def _list_field(name: str, value: Any) -> bool:
    """True if ``value`` can replace the list section ``name``."""
    if value is None:
        return False
    if not isinstance(value, list):
        logger.warning(f"Ignoring {name}: expected a list, got {value!r}")
        return False
    return True


def normalize_config(raw: Any) -> dict[str, Any]:
    """Fill missing sections of ``raw`` with defaults."""
    config = default_config()
    if not isinstance(raw, dict):
        return config

    for key in ("minerId", "rigId", "name", "minerSoftware"):
        if raw.get(key) is not None:
            config[key] = raw[key]

    thresholds = raw.get("thresholds")
    if isinstance(thresholds, dict):
        config["thresholds"].update(
            {k: v for k, v in thresholds.items() if v is not None}
        )

    schedules = raw.get("schedules")
    if isinstance(schedules, dict):
        mining = schedules.get("scheduledMining")
        if isinstance(mining, dict):
            target = config["schedules"]["scheduledMining"]
            if mining.get("enabled") is not None:
                target["enabled"] = mining["enabled"]
            if _list_field("periods", mining.get("periods")):
                target["periods"] = mining["periods"]
        if _list_field("scheduledRestarts", schedules.get("scheduledRestarts")):
            config["schedules"]["scheduledRestarts"] = schedules["scheduledRestarts"]

    return config


def merge_remote(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """Overlay the backend ``remote`` config on ``local``.

    ``minerId`` is never taken from the backend. Fields the backend omits
    keep their local value.
    """
    merged = copy.deepcopy(local)

    remote_id = remote.get("minerId")
    if remote_id and remote_id != local.get("minerId"):
        logger.info(
            f"Backend returned minerId {remote_id}, keeping local "
            f"{local.get('minerId')!r}"
        )

    for key in ("rigId", "name", "minerSoftware"):
        if remote.get(key):
            merged[key] = remote[key]

    thresholds = remote.get("thresholds")
    if isinstance(thresholds, dict):
        for key, value in thresholds.items():
            if value is not None:
                merged["thresholds"][key] = value

    schedules = remote.get("schedules")
    if isinstance(schedules, dict):
        mining = schedules.get("scheduledMining")
        if isinstance(mining, dict):
            if mining.get("enabled") is not None:
                merged["schedules"]["scheduledMining"]["enabled"] = mining["enabled"]
            if _list_field("periods", mining.get("periods")):
                merged["schedules"]["scheduledMining"]["periods"] = mining["periods"]
        if _list_field("scheduledRestarts", schedules.get("scheduledRestarts")):
            merged["schedules"]["scheduledRestarts"] = schedules["scheduledRestarts"]

    return merged


class ConfigStore:
    """Config provider backed by ``config/config.json``."""

    def __init__(self, home: Path, api: ApiClient | None = None):
        self.home = Path(home)
        self.path = self.home / "config" / "config.json"
        self.api = api
        self._lock = threading.Lock()
        self._data = self._load()
        self._schedule = ScheduleConfig.from_dict(self._data["schedules"])
        self._identity = resolve_worker_identity(self.home, self.miner_software)

    def _load(self) -> dict[str, Any]:
        raw = load_json(self.path)
        if raw is None:
            logger.warning(f"No usable config at {self.path}, using defaults")
        return normalize_config(raw)

    @property
    def miner_id(self) -> str:
        return self._data.get("minerId") or ""

    @property
    def miner_software(self) -> str | None:
        return self._data.get("minerSoftware") or None

    def get_schedule_config(self) -> ScheduleConfig:
        return self._schedule

    def get_worker_identity(self) -> WorkerIdentity | None:
        return self._identity

    def refresh(self) -> bool:
        """Resync with the backend, or re-read the local file without one.

        Returns True iff the schedule or the selected miner changed.
        """
        with self._lock:
            local = self._load()
            if self.api is not None:
                remote = self.api.get_config()
                if remote is not None:
                    merged = merge_remote(local, remote)
                    if merged != local:
                        try:
                            save_json(self.path, merged)
                        except OSError as e:
                            logger.error(f"Failed to save config {self.path}: {e}")
                    local = merged
            return self._apply(local)

    def _apply(self, new: dict[str, Any]) -> bool:
        old = self._data
        schedule = ScheduleConfig.from_dict(new["schedules"])
        changed = (
            schedule != self._schedule
            or new.get("minerSoftware") != old.get("minerSoftware")
        )
        if new.get("minerSoftware") != old.get("minerSoftware"):
            logger.info(
                f"Miner software changed: {old.get('minerSoftware')} -> "
                f"{new.get('minerSoftware')}"
            )

        # Replace references wholesale; readers never see a partial update
        self._data = new
        self._schedule = schedule
        self._identity = resolve_worker_identity(self.home, self.miner_software)
        return changed
