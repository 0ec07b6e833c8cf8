"""Cron-driven sync cycles over every enabled portal."""

from __future__ import annotations

import asyncio
from concurrent.futures import Future
from datetime import datetime, timezone
import threading
from typing import Any, Callable, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from stocksync.config import ScheduleConfig, build_cron_trigger
from stocksync.errors import ConfigError, SyncAlreadyRunning
from stocksync.logging_config import get_logger
from stocksync.pipeline import SyncPipeline
from stocksync.waiting import Sleeper, sleep_ms

LOGGER = get_logger(__name__)

JOB_ID = "stocksync-cycle"


class SchedulerContext:
    """Owns the APScheduler instance, the in-progress flag and the last cycle summary.

    The flag is a ``threading.Lock`` used as a check-and-set: a scheduled fire
    that finds it held is skipped, ``run_now`` raises ``SyncAlreadyRunning``.
    ``submit_run_now`` claims the flag on the calling thread (the dashboard)
    and hands the cycle to the scheduler's event loop.
    """

    def __init__(
        self,
        pipelines: Iterable[SyncPipeline],
        schedule: ScheduleConfig,
        *,
        sleep: Sleeper = sleep_ms,
        on_cycle_complete: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.pipelines: dict[str, SyncPipeline] = {pipeline.name: pipeline for pipeline in pipelines}
        self.schedule = schedule
        self.sleep = sleep
        self.on_cycle_complete = on_cycle_complete
        self.skipped_fires = 0
        self.last_run: dict[str, Any] | None = None
        self._busy = threading.Lock()
        self._scheduler: AsyncIOScheduler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def running(self) -> bool:
        return self._busy.locked()

    def bind_loop(self) -> None:
        """Record the running event loop so other threads can submit manual runs."""

        self._loop = asyncio.get_running_loop()

    def start(self) -> None:
        """Register the cron job; must be called from inside the running event loop."""

        try:
            trigger = build_cron_trigger(self.schedule.cron, self.schedule.timezone)
        except ValueError as exc:
            raise ConfigError(f"Invalid schedule: {exc}") from exc
        self.bind_loop()
        scheduler = AsyncIOScheduler(timezone=trigger.timezone)
        scheduler.add_job(
            self._scheduled_fire,
            trigger,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        LOGGER.info(
            "Scheduler started | cron=%s timezone=%s portals=%s",
            self.schedule.cron,
            self.schedule.timezone,
            ",".join(self.pipelines) or "none",
        )

    def stop(self, cancel_running: bool = False) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            LOGGER.info("Scheduler stopped")
        if cancel_running:
            for pipeline in self.pipelines.values():
                if pipeline.cancel():
                    LOGGER.warning("In-flight run cancelled | portal=%s", pipeline.name)

    def next_fire_time(self) -> datetime | None:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job is not None else None

    def status(self) -> dict[str, Any]:
        next_fire = self.next_fire_time()
        return {
            "scheduled": self._scheduler is not None,
            "running": self.running,
            "cron": self.schedule.cron,
            "timezone": self.schedule.timezone,
            "next_fire_time": next_fire.isoformat() if next_fire else None,
            "skipped_fires": self.skipped_fires,
            "portals": sorted(self.pipelines),
            "last_run": self.last_run,
        }

    async def _scheduled_fire(self) -> None:
        summary = await self.run_all("scheduled")
        if summary is not None and self.on_cycle_complete is not None:
            try:
                self.on_cycle_complete(summary)
            except Exception as exc:
                LOGGER.warning("Cycle completion hook failed | error=%s", exc)

    async def run_all(self, trigger: str = "scheduled", **options: Any) -> dict[str, Any] | None:
        """Run every portal serially; returns None when a cycle is already in progress."""

        if not self._busy.acquire(blocking=False):
            self.skipped_fires += 1
            LOGGER.warning("Sync cycle skipped; previous cycle still running | trigger=%s", trigger)
            return None
        return await self._run_claimed(trigger, **options)

    async def run_now(
        self,
        *,
        limit: float | int | None = None,
        process_stock: bool = True,
        portal: str | None = None,
    ) -> dict[str, Any]:
        if not self._busy.acquire(blocking=False):
            raise SyncAlreadyRunning("A sync cycle is already running.")
        return await self._run_claimed("manual", limit=limit, process_stock=process_stock, portal=portal)

    def submit_run_now(
        self,
        *,
        limit: float | int | None = None,
        process_stock: bool = True,
        portal: str | None = None,
    ) -> Future:
        """Thread-safe run_now for callers outside the scheduler's event loop."""

        loop = self._loop
        if loop is None or loop.is_closed():
            raise RuntimeError("scheduler event loop is not running")
        if portal is not None and portal not in self.pipelines:
            raise ConfigError(f"Unknown or disabled portal {portal!r}")
        if not self._busy.acquire(blocking=False):
            raise SyncAlreadyRunning("A sync cycle is already running.")
        try:
            return asyncio.run_coroutine_threadsafe(
                self._run_claimed("manual", limit=limit, process_stock=process_stock, portal=portal),
                loop,
            )
        except Exception:
            self._busy.release()
            raise

    async def _run_claimed(
        self,
        trigger: str,
        *,
        limit: float | int | None = None,
        process_stock: bool = True,
        portal: str | None = None,
    ) -> dict[str, Any]:
        started = datetime.now(timezone.utc)
        results: dict[str, Any] = {}
        try:
            selected = [p for name, p in self.pipelines.items() if portal is None or name == portal]
            for position, pipeline in enumerate(selected):
                if position:
                    await self.sleep(self.schedule.portal_pause_ms)
                try:
                    result = await pipeline.run(limit=limit, process_stock=process_stock, trigger=trigger)
                    results[pipeline.name] = result.summary()
                except Exception as exc:
                    LOGGER.exception("Portal sync failed | portal=%s trigger=%s", pipeline.name, trigger)
                    results[pipeline.name] = {
                        "source": pipeline.name,
                        "status": "FAILED",
                        "error": str(exc) or exc.__class__.__name__,
                    }
        finally:
            self._busy.release()
        summary = {
            "trigger": trigger,
            "started_at": started.isoformat(),
            "ended_at": datetime.now(timezone.utc).isoformat(),
            "results": results,
        }
        self.last_run = summary
        LOGGER.info(
            "Sync cycle finished | trigger=%s portals=%s statuses=%s",
            trigger,
            len(results),
            ",".join(f"{name}:{item.get('status')}" for name, item in results.items()),
        )
        return summary
