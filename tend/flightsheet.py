# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Workload (flightsheet) provider.

A flightsheet is the backend's parameter document for the selected miner.
It lives at ``$RIG_HOME/apps/<miner>/config.json`` next to the miner
executable ``$RIG_HOME/apps/<miner>/<miner>``.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tend.api import ApiClient
from tend.utils import is_termux, load_json, save_json

if TYPE_CHECKING:
    from tend.config import ConfigStore

logger = logging.getLogger(__name__)

# Keys whose change requires a worker restart; other keys (xmrig autosave
# artifacts, cosmetics) are ignored.
CRITICAL_SETTINGS = (
    "pools",
    "threads",
    "cpu.rx",
    "randomx.mode",
    "cpu.enabled",
    "opencl.enabled",
    "cuda.enabled",
    "cpu.huge-pages",
    "cpu.memory-pool",
    "cpu.yield",
)


@dataclass(frozen=True)
class WorkerIdentity:
    """Selected worker: its name plus executable and parameter file paths."""

    name: str
    executable: Path
    params: Path

    @classmethod
    def for_miner(cls, home: Path, name: str) -> WorkerIdentity:
        app_dir = Path(home) / "apps" / name
        return cls(name=name, executable=app_dir / name, params=app_dir / "config.json")

    def missing(self) -> list[Path]:
        """Artifacts that do not exist on disk."""
        return [p for p in (self.executable, self.params) if not p.is_file()]


def resolve_worker_identity(
    home: Path, miner_software: str | None
) -> WorkerIdentity | None:
    """Return the worker to run, or None if no miner can be determined.

    Uses ``miner_software`` when given. Otherwise scans ``apps/`` for a
    directory whose ``config.json`` names its own miner.
    """
    if miner_software:
        return WorkerIdentity.for_miner(home, miner_software)

    apps = Path(home) / "apps"
    if not apps.is_dir():
        return None
    for app_dir in sorted(apps.iterdir()):
        if not app_dir.is_dir():
            continue
        data = load_json(app_dir / "config.json")
        if isinstance(data, dict) and data.get("minerSoftware") == app_dir.name:
            logger.info("Resolved miner %s from %s", app_dir.name, app_dir)
            return WorkerIdentity.for_miner(home, app_dir.name)
    return None


def get_nested(obj: Any, dotted: str) -> Any:
    """Look up ``a.b.c`` in nested dicts, None if any level is missing."""
    for part in dotted.split("."):
        if not isinstance(obj, dict):
            return None
        obj = obj.get(part)
    return obj


def has_significant_changes(path: Path, new: dict[str, Any]) -> bool:
    """True if ``new`` differs from the file at ``path`` on a critical key."""
    if not path.exists():
        logger.debug("No existing worker config at %s, treating as changed", path)
        return True

    current = load_json(path)
    if not isinstance(current, dict):
        return True

    for key in CRITICAL_SETTINGS:
        old_value = get_nested(current, key)
        new_value = get_nested(new, key)
        if json.dumps(old_value, sort_keys=True) != json.dumps(
            new_value, sort_keys=True
        ):
            logger.info(
                f"Significant change in {key}: "
                f"{json.dumps(old_value)} -> {json.dumps(new_value)}"
            )
            return True
    return False


def apply_local_overrides(sheet: dict[str, Any], miner: str) -> dict[str, Any]:
    """Apply device-local settings the backend does not control."""
    result = copy.deepcopy(sheet)
    if miner == "xmrig" and is_termux() and isinstance(result.get("http"), dict):
        result["http"]["host"] = "127.0.0.1"
        logger.debug("Pinned xmrig http.host to 127.0.0.1 on Termux")
    return result


class FlightsheetStore:
    """Fetches the flightsheet and writes it next to the worker."""

    def __init__(self, home: Path, config: ConfigStore, api: ApiClient | None = None):
        self.home = Path(home)
        self.config = config
        self.api = api

    def refresh_workload(self) -> bool:
        """Sync the flightsheet. Returns True when the worker must restart."""
        if self.api is None:
            return False

        miner = self.config.miner_software
        if not miner:
            logger.warning("Cannot fetch flightsheet: no minerSoftware in config")
            return False

        sheet = self.api.get_flightsheet()
        if sheet is None:
            return False

        sheet = apply_local_overrides(sheet, miner)
        path = WorkerIdentity.for_miner(self.home, miner).params
        if not has_significant_changes(path, sheet):
            logger.debug("Flightsheet unchanged for %s", miner)
            return False

        try:
            save_json(path, sheet)
        except OSError as e:
            logger.error(f"Failed to write flightsheet {path}: {e}")
            return False
        logger.info(f"Flightsheet written to {path}")
        return True
