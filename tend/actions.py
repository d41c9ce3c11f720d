# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Control actions queued by the fleet backend.

The backend queues commands per miner. Each poll fetches the pending ones,
marks each ``in_progress``, runs it against the supervisor and reports
``completed`` or ``failed``. Device-level commands (reboot, self-update)
are refused.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

from tend.api import ApiClient

logger = logging.getLogger(__name__)


class ActionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionCommand(str, Enum):
    RESTART_MINER = "restart_miner"
    RESTART_DEVICE = "restart_device"
    UPDATE_SOFTWARE = "update_software"
    RELOAD_CONFIG = "reload_config"
    STOP_MINING = "stop_mining"
    START_MINING = "start_mining"


UNSUPPORTED = {ActionCommand.RESTART_DEVICE, ActionCommand.UPDATE_SOFTWARE}


class ActionError(Exception):
    """An action could not be carried out."""


@runtime_checkable
class Controller(Protocol):
    def force_restart(self) -> bool: ...

    def trigger_manual_stop(self) -> bool: ...

    def trigger_manual_start(self) -> bool: ...

    def refresh_config(self) -> bool: ...


def run_command(command: str, controller: Controller) -> None:
    """Execute ``command``. Raises :class:`ActionError` on failure."""
    try:
        cmd = ActionCommand(command)
    except ValueError:
        raise ActionError(f"Unknown command: {command}") from None

    if cmd in UNSUPPORTED:
        raise ActionError(f"{cmd.value} is not supported by this agent")

    logger.info(f"Executing {cmd.value} action")
    if cmd is ActionCommand.RESTART_MINER:
        ok = controller.force_restart()
    elif cmd is ActionCommand.STOP_MINING:
        ok = controller.trigger_manual_stop()
    elif cmd is ActionCommand.START_MINING:
        ok = controller.trigger_manual_start()
    else:
        # Completes even when the backend returned nothing new
        controller.refresh_config()
        ok = True

    if not ok:
        raise ActionError(f"{cmd.value} failed")


class ActionPoller:
    """Fetches pending actions and reports their outcome."""

    def __init__(self, api: ApiClient, miner_id: Callable[[], str]):
        self.api = api
        self.miner_id = miner_id

    def process(self, action: dict[str, Any], controller: Controller) -> bool:
        action_id = action.get("_id")
        command = action.get("command")
        if not action_id:
            logger.warning(f"Ignoring action without id: {action!r}")
            return False

        logger.info(f"Processing action {action_id}: {command}")
        self.api.complete_action(action_id, ActionStatus.IN_PROGRESS.value)
        try:
            run_command(str(command), controller)
        except ActionError as e:
            logger.error(f"Action {action_id} failed: {e}")
            self.api.complete_action(action_id, ActionStatus.FAILED.value, str(e))
            return False

        self.api.complete_action(action_id, ActionStatus.COMPLETED.value)
        logger.info(f"Action {action_id} completed")
        return True

    def poll(self, controller: Controller) -> int:
        """Run every pending action in order. Returns how many were handled."""
        miner_id = self.miner_id()
        if not miner_id:
            logger.error("Cannot check actions: no minerId configured")
            return 0

        actions = self.api.get_pending_actions(miner_id)
        if not actions:
            logger.debug("No pending actions")
            return 0

        logger.info(f"Found {len(actions)} pending action(s)")
        for action in actions:
            self.process(action, controller)
        return len(actions)
