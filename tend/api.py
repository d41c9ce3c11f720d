# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""HTTP client for the fleet-management backend."""

from __future__ import annotations

import logging
from typing import Any

import requests

from tend.utils import get_api_url, get_rig_token

logger = logging.getLogger(__name__)

API_TIMEOUT = 10


class ApiClient:
    """Thin wrapper over the backend's rig endpoints.

    All methods return None/False on failure instead of raising.
    """

    def __init__(
        self,
        base_url: str | None = None,
        rig_token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = API_TIMEOUT,
    ):
        self.base_url = (base_url or get_api_url()).rstrip("/")
        self.rig_token = rig_token if rig_token is not None else get_rig_token()
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get_json(self, path: str) -> Any | None:
        if not self.rig_token:
            logger.warning("RIG_TOKEN not set, skipping GET %s", path)
            return None

        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url, params={"rigToken": self.rig_token}, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning(f"GET {path} failed: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"GET {path} returned {response.status_code}")
            return None

        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"GET {path} returned invalid JSON: {e}")
            return None

    def get_config(self) -> dict[str, Any] | None:
        """Fetch the rig's configuration (schedules, miner software, ...)."""
        data = self._get_json("/api/miners/config")
        return data if isinstance(data, dict) else None

    def get_flightsheet(self) -> dict[str, Any] | None:
        """Fetch the worker parameter document for this rig."""
        data = self._get_json("/api/miners/flightsheet")
        return data if isinstance(data, dict) else None

    def log_miner_error(
        self,
        miner_id: str,
        message: str,
        stack: str = "",
        additional_info: dict[str, Any] | None = None,
    ) -> bool:
        """POST an incident for ``miner_id``. Returns True on success."""
        try:
            response = self.session.post(
                f"{self.base_url}/api/miners/error",
                json={
                    "minerId": miner_id,
                    "message": message,
                    "stack": stack,
                    "additionalInfo": additional_info or {},
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Error report failed: {e}")
            return False

        if response.status_code >= 300:
            logger.warning(
                f"Error report rejected: {response.status_code} {response.text}"
            )
            return False
        return True

    def get_pending_actions(self, miner_id: str) -> list[dict[str, Any]] | None:
        """Fetch queued control actions for ``miner_id``."""
        data = self._get_json(f"/api/miners-actions/miner/{miner_id}/pending")
        if data is None:
            return None
        if not isinstance(data, list):
            logger.warning(f"Pending actions is not a list: {data!r}")
            return None
        return [a for a in data if isinstance(a, dict)]

    def complete_action(
        self, action_id: str, status: str, error: str | None = None
    ) -> bool:
        """Report the outcome of an action. Returns True on success."""
        body = {"status": status}
        if error:
            body["error"] = error
        try:
            response = self.session.put(
                f"{self.base_url}/api/miners-actions/{action_id}/complete",
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Action {action_id} status update failed: {e}")
            return False

        if response.status_code >= 300:
            logger.warning(
                f"Action {action_id} status update rejected: "
                f"{response.status_code} {response.text}"
            )
            return False
        return True
