from __future__ import annotations

import asyncio

import pytest

from stocksync.config import ScheduleConfig
from stocksync.errors import ConfigError, LoginError, SyncAlreadyRunning
from stocksync.pipeline import SyncResult
from stocksync.records import SyncStatus
from stocksync.scheduler import SchedulerContext


class FakePipeline:
    def __init__(self, name: str, calls: list[str], *, error: Exception | None = None, gate=None) -> None:
        self.name = name
        self.calls = calls
        self.error = error
        self.gate = gate
        self.cancelled = False
        self.options: dict = {}

    async def run(self, limit=None, process_stock=True, trigger="manual") -> SyncResult:
        self.calls.append(self.name)
        self.options = {"limit": limit, "process_stock": process_stock, "trigger": trigger}
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SyncResult(source=self.name, found=1, status=SyncStatus.SUCCESS)

    def cancel(self, reason: str = "") -> bool:
        self.cancelled = True
        return True


SCHEDULE = ScheduleConfig(cron="*/5 * * * *", timezone="UTC", portal_pause_ms=1_500)


def _context(*pipelines, schedule: ScheduleConfig = SCHEDULE) -> tuple[SchedulerContext, list[int]]:
    pauses: list[int] = []

    async def _sleep(ms: int) -> None:
        pauses.append(ms)

    return SchedulerContext(pipelines, schedule, sleep=_sleep), pauses


def test_cycle_runs_portals_serially_with_pause() -> None:
    calls: list[str] = []
    context, pauses = _context(FakePipeline("customerconnect", calls), FakePipeline("routestar", calls))

    summary = asyncio.run(context.run_all("scheduled"))

    assert calls == ["customerconnect", "routestar"]
    assert pauses == [1_500]
    assert summary["trigger"] == "scheduled"
    assert summary["results"]["routestar"]["status"] == "SUCCESS"
    assert context.last_run is summary
    assert not context.running


def test_failed_portal_does_not_stop_cycle() -> None:
    calls: list[str] = []
    context, _ = _context(
        FakePipeline("customerconnect", calls, error=LoginError("bad password")),
        FakePipeline("routestar", calls),
    )

    summary = asyncio.run(context.run_all())

    assert summary["results"]["customerconnect"]["status"] == "FAILED"
    assert "bad password" in summary["results"]["customerconnect"]["error"]
    assert summary["results"]["routestar"]["status"] == "SUCCESS"


def test_run_now_for_one_portal_passes_options() -> None:
    calls: list[str] = []
    routestar = FakePipeline("routestar", calls)
    context, pauses = _context(FakePipeline("customerconnect", calls), routestar)

    summary = asyncio.run(context.run_now(limit=5, process_stock=False, portal="routestar"))

    assert calls == ["routestar"]
    assert pauses == []
    assert routestar.options == {"limit": 5, "process_stock": False, "trigger": "manual"}
    assert list(summary["results"]) == ["routestar"]


def test_overlapping_fire_is_skipped() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        calls: list[str] = []
        context, _ = _context(FakePipeline("customerconnect", calls, gate=gate))

        first = asyncio.create_task(context.run_all("scheduled"))
        await asyncio.sleep(0)
        assert context.running

        assert await context.run_all("scheduled") is None
        assert context.skipped_fires == 1
        with pytest.raises(SyncAlreadyRunning):
            await context.run_now()

        gate.set()
        summary = await first
        assert summary is not None
        assert calls == ["customerconnect"]
        assert not context.running

    asyncio.run(scenario())


def test_start_registers_job_and_status() -> None:
    async def scenario() -> None:
        calls: list[str] = []
        pipeline = FakePipeline("routestar", calls)
        context, _ = _context(pipeline)
        context.start()
        try:
            status = context.status()
            assert status["scheduled"] is True
            assert status["cron"] == "*/5 * * * *"
            assert status["next_fire_time"] is not None
            assert status["portals"] == ["routestar"]
        finally:
            context.stop(cancel_running=True)
        assert context.status()["scheduled"] is False
        assert pipeline.cancelled

    asyncio.run(scenario())


def test_invalid_cron_is_config_error() -> None:
    schedule = ScheduleConfig.model_construct(cron="every day", timezone="UTC", portal_pause_ms=0, enabled=True)
    context, _ = _context(schedule=schedule)

    async def scenario() -> None:
        with pytest.raises(ConfigError):
            context.start()

    asyncio.run(scenario())


def test_submit_run_now_from_another_thread() -> None:
    async def scenario() -> None:
        calls: list[str] = []
        context, _ = _context(FakePipeline("customerconnect", calls), FakePipeline("routestar", calls))
        context.start()
        try:
            with pytest.raises(ConfigError):
                await asyncio.to_thread(context.submit_run_now, portal="unknown")
            future = await asyncio.to_thread(context.submit_run_now, portal="routestar")
            summary = await asyncio.wrap_future(future)
        finally:
            context.stop()
        assert calls == ["routestar"]
        assert summary["trigger"] == "manual"

    asyncio.run(scenario())


def test_submit_run_now_requires_started_loop() -> None:
    context, _ = _context(FakePipeline("routestar", []))
    with pytest.raises(RuntimeError):
        context.submit_run_now()


def test_manual_runs_work_with_schedule_disabled() -> None:
    async def scenario() -> None:
        calls: list[str] = []
        disabled = SCHEDULE.model_copy(update={"enabled": False})
        context, _ = _context(FakePipeline("routestar", calls), schedule=disabled)
        context.bind_loop()
        future = await asyncio.to_thread(context.submit_run_now, limit=5)
        summary = await asyncio.wrap_future(future)
        assert calls == ["routestar"]
        assert summary["results"]["routestar"]["status"] == "SUCCESS"
        assert context.status()["scheduled"] is False
        assert context.running is False

    asyncio.run(scenario())
