# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Supervisor loop for the mining worker.

Four periodic triggers (workload refresh, config refresh, schedule check,
health check), plus backend action polling when a backend is configured,
run as independent :class:`Ticker` tasks on one asyncio loop.
Each tick executes its blocking body in a worker thread with a timeout;
state changes are serialized by the :class:`~tend.recovery.RecoveryMachine`.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import threading
from datetime import datetime
from typing import Any, Callable, Protocol, runtime_checkable

from tend.actions import ActionPoller
from tend.flightsheet import WorkerIdentity
from tend.health import HealthReport, assess_health
from tend.recovery import IncidentSink, RecoveryMachine, TickAction
from tend.schedule import (
    ScheduleConfig,
    log_schedule_status,
    schedule_status,
    should_be_running,
)
from tend.session import SessionRunner
from tend.utils import get_home, setup_cli

logger = logging.getLogger(__name__)

HEALTH_INTERVAL = 30
SCHEDULE_INTERVAL = 20
REFRESH_INTERVAL = 60
TICK_TIMEOUT = 30

shutdown_requested = False


@runtime_checkable
class ConfigProvider(Protocol):
    def get_schedule_config(self) -> ScheduleConfig: ...

    def get_worker_identity(self) -> WorkerIdentity | None: ...

    def refresh(self) -> bool: ...


@runtime_checkable
class WorkloadProvider(Protocol):
    def refresh_workload(self) -> bool: ...


class Ticker:
    """Cancellable periodic trigger.

    The body runs in a thread and never overlaps itself: a tick that finds
    the previous body still running (even one abandoned after a timeout)
    is skipped.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Any],
        *,
        timeout: float = TICK_TIMEOUT,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.timeout = timeout
        self.run_immediately = run_immediately
        self.task: asyncio.Task | None = None
        self._busy = threading.Lock()

    def _guarded(self) -> bool:
        if not self._busy.acquire(blocking=False):
            logger.debug("%s still busy, skipping tick", self.name)
            return False
        try:
            self.func()
            return True
        finally:
            self._busy.release()

    async def tick(self) -> bool:
        """Run the body once. Returns True if it completed."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._guarded), self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} tick exceeded {self.timeout}s")
        except Exception:
            logger.exception(f"{self.name} tick failed")
        return False

    async def run(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run(), name=self.name)
        return self.task

    def cancel(self) -> None:
        if self.task:
            self.task.cancel()


class Supervisor:
    """Owns the recovery machine and its periodic triggers."""

    def __init__(
        self,
        config: ConfigProvider,
        runner: SessionRunner,
        *,
        workload: WorkloadProvider | None = None,
        incidents: IncidentSink | None = None,
        actions: ActionPoller | None = None,
        clock: Callable[[], datetime] = datetime.now,
        health_interval: float = HEALTH_INTERVAL,
        schedule_interval: float = SCHEDULE_INTERVAL,
        refresh_interval: float = REFRESH_INTERVAL,
        tick_timeout: float = TICK_TIMEOUT,
    ):
        self.config = config
        self.runner = runner
        self.workload = workload
        self.actions = actions
        self.clock = clock
        self.machine = RecoveryMachine(runner, incidents, clock=clock)
        self.health_interval = health_interval
        self.schedule_interval = schedule_interval
        self.refresh_interval = refresh_interval
        self.tick_timeout = tick_timeout
        self.last_health: HealthReport | None = None
        self.tickers: list[Ticker] = []

    # ------------------------------------------------------------------
    # Tick bodies
    # ------------------------------------------------------------------

    def initialize(self, start: bool = True) -> bool:
        """Sync collaborators, log the schedule and start the worker."""
        self.refresh_config()
        if self.workload is not None:
            self.workload.refresh_workload()

        now = self.clock()
        config = self.config.get_schedule_config()
        log_schedule_status(config, now)

        identity = self.config.get_worker_identity()
        if identity is None:
            logging.warning("No worker selected")
        else:
            for path in identity.missing():
                logging.warning(f"{identity.name} is missing {path}")

        if not start:
            logging.info("Initial start disabled, waiting for the next tick")
            return False
        if not should_be_running(config, now):
            logging.info("Outside mining window, worker not started")
            return False
        return self.machine.start_worker(identity)

    def refresh_workload(self) -> TickAction:
        if self.workload is None or not self.workload.refresh_workload():
            return TickAction.NONE
        logging.info("Workload changed, restarting worker")
        return self.machine.restart_for_workload(self.config.get_worker_identity())

    def refresh_config(self) -> bool:
        changed = self.config.refresh()
        if changed:
            logging.info("Configuration changed")
        return changed

    def process_actions(self) -> int:
        if self.actions is None:
            return 0
        return self.actions.poll(self)

    def check_schedule(self, now: datetime | None = None) -> TickAction:
        now = now or self.clock()
        return self.machine.on_schedule_tick(
            now, self.config.get_schedule_config(), self.config.get_worker_identity()
        )

    def check_health(self, now: datetime | None = None) -> TickAction:
        now = now or self.clock()
        identity = self.config.get_worker_identity()
        should_run = should_be_running(self.config.get_schedule_config(), now)
        # Capture outside the recovery lock; an absent snapshot is inconclusive
        report = assess_health(
            self.runner.snapshot_output(), identity.name if identity else None, now
        )
        self.last_health = report
        return self.machine.on_health_tick(now, should_run, identity, report.verdict)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def build_tickers(self) -> list[Ticker]:
        tickers = [
            Ticker(
                "workload-refresh",
                self.refresh_interval,
                self.refresh_workload,
                timeout=self.tick_timeout,
            ),
            Ticker(
                "config-refresh",
                self.refresh_interval,
                self.refresh_config,
                timeout=self.tick_timeout,
            ),
            Ticker(
                "schedule-check",
                self.schedule_interval,
                self.check_schedule,
                timeout=self.tick_timeout,
                run_immediately=True,
            ),
            Ticker(
                "health-check",
                self.health_interval,
                self.check_health,
                timeout=self.tick_timeout,
            ),
        ]
        if self.actions is not None:
            tickers.append(
                Ticker(
                    "backend-actions",
                    self.refresh_interval,
                    self.process_actions,
                    timeout=self.tick_timeout,
                )
            )
        return tickers

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Run all triggers until ``stop`` is set or the task is cancelled."""
        stop = stop or asyncio.Event()
        self.tickers = self.build_tickers()
        for ticker in self.tickers:
            ticker.start()
        logging.info(f"Supervising with {len(self.tickers)} triggers")
        try:
            await stop.wait()
        finally:
            for ticker in self.tickers:
                ticker.cancel()
            await asyncio.gather(
                *(t.task for t in self.tickers if t.task), return_exceptions=True
            )

    def shutdown(self) -> bool:
        """Stop issuing actions and stop the worker, best-effort."""
        logging.info("Stopping worker session...")
        return self.machine.close()

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def trigger_manual_stop(self) -> bool:
        return self.machine.stop_worker(manual=True)

    def trigger_manual_start(self) -> bool:
        return self.machine.manual_start(self.config.get_worker_identity())

    def force_restart(self) -> bool:
        return self.machine.force_restart(self.config.get_worker_identity())

    def snapshot_output(self) -> str | None:
        return self.runner.snapshot_output()

    def health_report(self) -> HealthReport:
        """Fresh health report from the current session output."""
        identity = self.config.get_worker_identity()
        report = assess_health(
            self.runner.snapshot_output(),
            identity.name if identity else None,
            self.clock(),
        )
        self.last_health = report
        return report

    def get_status(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self.clock()
        identity = self.config.get_worker_identity()
        status = schedule_status(self.config.get_schedule_config(), now)
        status["is_running"] = self.runner.is_running()
        status["worker"] = identity.name if identity else None
        status.update(self.machine.status())
        return status


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_args() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Supervise the mining worker")
    parser.add_argument(
        "--health-interval",
        type=float,
        default=HEALTH_INTERVAL,
        help="Seconds between crash/health checks",
    )
    parser.add_argument(
        "--schedule-interval",
        type=float,
        default=SCHEDULE_INTERVAL,
        help="Seconds between schedule checks (evaluated once per minute)",
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        default=REFRESH_INTERVAL,
        help="Seconds between config and flightsheet refreshes",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=0,
        help="Serve the control panel on this port (0 disables)",
    )
    parser.add_argument(
        "--no-start",
        action="store_true",
        help="Do not start the worker at launch",
    )
    return parser


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    if not shutdown_requested:
        shutdown_requested = True
        logging.info("Shutdown requested, cleaning up...")
    raise KeyboardInterrupt


def build_supervisor(home, args) -> tuple[Supervisor, Any]:
    """Wire collaborators for ``home``. Returns the supervisor and reporter."""
    from tend.actions import ActionPoller
    from tend.api import ApiClient
    from tend.config import ConfigStore
    from tend.flightsheet import FlightsheetStore
    from tend.incidents import IncidentReporter
    from tend.utils import get_rig_token

    api = None
    if get_rig_token():
        api = ApiClient()
    else:
        logging.warning("RIG_TOKEN not set, running from local config only")

    config = ConfigStore(home, api)
    reporter = None
    actions = None
    if api is not None:
        reporter = IncidentReporter(api, lambda: config.miner_id)
        reporter.start()
        actions = ActionPoller(api, lambda: config.miner_id)

    supervisor = Supervisor(
        config,
        SessionRunner(state_dir=home / "health"),
        workload=FlightsheetStore(home, config, api),
        incidents=reporter,
        actions=actions,
        health_interval=args.health_interval,
        schedule_interval=args.schedule_interval,
        refresh_interval=args.refresh_interval,
    )
    return supervisor, reporter


def main() -> None:
    parser = parse_args()
    args = setup_cli(parser)
    home = get_home()

    log_level = logging.DEBUG if args.debug else logging.INFO
    log_path = home / "health" / "supervisor.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.getLogger().handlers = []
    logging.basicConfig(
        level=log_level,
        handlers=[logging.FileHandler(log_path, encoding="utf-8")],
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if args.verbose or args.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        )
        logging.getLogger().addHandler(console_handler)

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    logging.info("Supervisor starting...")
    supervisor, reporter = build_supervisor(home, args)

    if args.port:
        from panel import create_app, start_panel

        start_panel(create_app(supervisor), port=args.port)
        logging.info(f"Control panel listening on port {args.port}")

    try:
        supervisor.initialize(start=not args.no_start)
        asyncio.run(supervisor.run())
    except KeyboardInterrupt:
        logging.info("Caught KeyboardInterrupt, shutting down...")
    finally:
        supervisor.shutdown()
        if reporter is not None:
            reporter.stop()
        logging.info("Supervisor shutdown complete.")


if __name__ == "__main__":
    main()
