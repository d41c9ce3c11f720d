# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Fire-and-forget incident reporting to the fleet backend.

Incidents are queued and sent from a background thread so that callers,
including the supervisor's critical section, never wait on the network.
A full queue or a failed delivery is logged and dropped.
"""

from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime
from typing import Any, Callable

from tend.api import ApiClient

logger = logging.getLogger(__name__)

RETRY_BACKOFF = [1, 5]  # seconds between attempts


class IncidentReporter:
    """Queue incidents and deliver them to ``/api/miners/error``."""

    def __init__(
        self,
        api: ApiClient,
        miner_id: Callable[[], str],
        *,
        maxsize: int = 100,
    ):
        self.api = api
        self._miner_id = miner_id
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        """Start the background sender thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name="incident-reporter"
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the sender thread. Undelivered incidents are dropped."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def report_incident(
        self, message: str, stack: str = "", metadata: dict[str, Any] | None = None
    ) -> bool:
        """Queue an incident. Returns False if it had to be dropped."""
        incident = {
            "message": message,
            "stack": stack or "",
            "metadata": {"timestamp": datetime.now().isoformat(), **(metadata or {})},
        }
        try:
            self._queue.put_nowait(incident)
            return True
        except queue.Full:
            logger.warning(f"Incident queue full, dropping: {message}")
            return False

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                incident = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.deliver(incident)
            except Exception as e:
                logger.error(f"Incident delivery error: {e}")

    def deliver(self, incident: dict[str, Any]) -> bool:
        """Send one queued incident, retrying with backoff."""
        miner_id = self._miner_id()
        if not miner_id:
            logger.error(
                "Cannot report incident, no minerId: %s", incident["message"]
            )
            return False

        for attempt in range(len(RETRY_BACKOFF) + 1):
            if self.api.log_miner_error(
                miner_id,
                incident["message"],
                incident["stack"],
                incident["metadata"],
            ):
                logger.debug("Incident reported: %s", incident["message"])
                return True
            if attempt < len(RETRY_BACKOFF):
                if self._stop_event.wait(RETRY_BACKOFF[attempt]):
                    break

        logger.error(f"Incident not delivered: {incident['message']}")
        return False
