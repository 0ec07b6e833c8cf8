from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from pydantic import SecretStr
from sqlalchemy import func, select

from stocksync.errors import ContentTimeout, LoginError, RunCancelled, SessionExpired, SyncAlreadyRunning
from stocksync.pipeline import SyncLock, SyncPipeline
from stocksync.portals.common import PortalSession
from stocksync.portals.customerconnect import CustomerConnectClient
from stocksync.records import LineItemData, ListedRecord, RecordDetail, RecordStatus, SyncStatus
from stocksync.storage import repo
from stocksync.storage.models_sql import ExternalRecord, InventoryItem, SyncLog
import stocksync.selectors as selectors

from tests.fakes import CountingFactory, FakeClient, FakeDriver, row


async def _no_sleep(ms: int) -> None:
    return None


def _listed(*numbers: str) -> list[ListedRecord]:
    return [ListedRecord(number=number, status=RecordStatus.COMPLETE, total="10.00") for number in numbers]


def _detail(sku: str = "ICE", quantity: float = 2) -> RecordDetail:
    return RecordDetail(items=[LineItemData(sku=sku, name=sku.title(), quantity=quantity)], total="10.00")


def _pipeline(cc_config, session_factory, client, **kwargs) -> tuple[SyncPipeline, CountingFactory]:
    factory = CountingFactory(client)
    return SyncPipeline(cc_config, session_factory, factory, sleep=_no_sleep, **kwargs), factory


def _logs(session_factory) -> list[SyncLog]:
    with session_factory() as session:
        return list(session.execute(select(SyncLog).order_by(SyncLog.id)).scalars())


def test_detail_failure_gives_partial_run(cc_config, session_factory) -> None:
    client = FakeClient(
        _listed("1", "2", "3", "4", "5"),
        {
            "1": _detail(),
            "2": _detail(),
            "3": [ContentTimeout("grid missing"), ContentTimeout("grid missing")],
            "4": _detail(),
            "5": _detail(),
        },
    )
    pipeline, factory = _pipeline(cc_config, session_factory, client)

    result = asyncio.run(pipeline.run())

    assert result.status is SyncStatus.PARTIAL
    assert (result.found, result.created, result.details_fetched) == (5, 5, 4)
    assert [error.key for error in result.errors] == ["3"]
    assert client.detail_calls.count("3") == 2
    assert result.ledger.processed == 4
    assert factory.opened == 1

    [log] = _logs(session_factory)
    assert log.status == "PARTIAL"
    assert log.found == 5
    assert log.failed == 1
    assert log.ledger_processed == 4
    assert log.errors[0]["stage"] == "detail"
    with session_factory() as session:
        assert session.get(InventoryItem, "ICE").quantity == 8
        failed = repo.get_record(session, "customerconnect", "3")
        assert failed.processed is False


def test_rerun_only_fetches_missing_details(cc_config, session_factory) -> None:
    client = FakeClient(_listed("1", "2"), {"1": _detail(), "2": [RuntimeError("boom"), _detail()]})
    pipeline, _ = _pipeline(cc_config, session_factory, client)

    asyncio.run(pipeline.run())
    second = asyncio.run(pipeline.run())

    assert second.status is SyncStatus.SUCCESS
    assert (second.created, second.skipped) == (0, 2)
    assert client.detail_calls == ["1", "2", "2"]
    with session_factory() as session:
        assert session.get(InventoryItem, "ICE").quantity == 4


def test_held_lock_refuses_before_any_work(cc_config, session_factory) -> None:
    lock = SyncLock()
    assert lock.acquire()
    pipeline, factory = _pipeline(cc_config, session_factory, FakeClient(_listed("1")), lock=lock)

    with pytest.raises(SyncAlreadyRunning):
        asyncio.run(pipeline.run())

    assert factory.opened == 0
    assert _logs(session_factory) == []
    assert pipeline.running


def test_login_failure_marks_run_failed(cc_config, session_factory) -> None:
    client = FakeClient(_listed("1"), login_error=LoginError("Warning: No match", portal="customerconnect"))
    pipeline, _ = _pipeline(cc_config, session_factory, client)

    with pytest.raises(LoginError):
        asyncio.run(pipeline.run())

    [log] = _logs(session_factory)
    assert log.status == "FAILED"
    assert "No match" in log.error_message
    assert log.ended_at is not None
    assert not pipeline.running


def test_expired_session_logs_in_again(cc_config, session_factory) -> None:
    client = FakeClient(_listed("1"), {"1": [SessionExpired("redirected"), _detail()]})
    pipeline, _ = _pipeline(cc_config, session_factory, client)

    result = asyncio.run(pipeline.run())

    assert result.status is SyncStatus.SUCCESS
    assert client.logins == 2
    assert result.details_fetched == 1


def test_second_expiry_aborts_run(cc_config, session_factory) -> None:
    client = FakeClient(_listed("1"), {"1": [SessionExpired("redirected"), SessionExpired("redirected")]})
    pipeline, _ = _pipeline(cc_config, session_factory, client)

    with pytest.raises(LoginError):
        asyncio.run(pipeline.run())

    assert _logs(session_factory)[0].status == "FAILED"


def test_process_stock_disabled_leaves_records_pending(cc_config, session_factory) -> None:
    pipeline, _ = _pipeline(cc_config, session_factory, FakeClient(_listed("1"), {"1": _detail()}))

    result = asyncio.run(pipeline.run(process_stock=False))

    assert result.ledger is None
    with session_factory() as session:
        assert session.execute(select(func.count(ExternalRecord.id))).scalar_one() == 1
        assert session.get(InventoryItem, "ICE") is None


class _CancellingClient(FakeClient):
    """Requests an operator cancel for the running log during its first detail."""

    def __init__(self, session_factory, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.session_factory = session_factory

    async def fetch_detail(self, number, detail_url=None):
        with self.session_factory() as session:
            [log] = repo.active_sync_logs(session)
            repo.request_cancel(session, log.id)
            session.commit()
            self.status_after_cancel = log.status
        return await super().fetch_detail(number, detail_url)


def test_operator_cancel_stops_between_records(cc_config, session_factory) -> None:
    client = _CancellingClient(session_factory, _listed("1", "2", "3"), {"1": _detail()})
    pipeline, _ = _pipeline(cc_config, session_factory, client)

    with pytest.raises(RunCancelled):
        asyncio.run(pipeline.run())

    assert client.detail_calls == ["1"]
    assert client.status_after_cancel == "RUNNING"
    [log] = _logs(session_factory)
    assert log.status == "FAILED"
    assert log.error_message == repo.CANCELLED_MESSAGE


def test_overlapping_pages_are_ledgered_once(cc_config, session_factory) -> None:
    """Rows repeated across list pages produce one record and one stock change each."""

    orders = [row(0, "Order ID: #10001\nStatus: Complete"), row(1, "Order ID: #10002\nStatus: Complete")]
    shifted = [row(0, "Order ID: #10002\nStatus: Complete"), row(1, "Order ID: #10003\nStatus: Complete")]
    detail = selectors.CC_DETAIL
    driver = FakeDriver(
        pages=[orders, shifted],
        present={
            "#content",
            detail["ready"],
            selectors.CC_LOGIN["username"],
            selectors.CC_LOGIN["password"],
            selectors.CC_LOGIN["submit"],
            selectors.CC_LOGIN["logged_in_indicator"],
        },
        tables={detail["item_rows"]: [row(0, "", cells=("Blue Widget", "BW-1", "2", "$5.00", "$10.00"))]},
        rows_selector=selectors.CC_LIST["rows"],
        next_selector=selectors.CC_LIST["next_buttons"][0],
    )
    config = cc_config.model_copy(update={"password": SecretStr("pw")})

    @asynccontextmanager
    async def factory(cancel):
        yield CustomerConnectClient(PortalSession(config, driver, cancel=cancel))

    pipeline = SyncPipeline(config, session_factory, factory, sleep=_no_sleep)
    result = asyncio.run(pipeline.run())

    assert result.found == 3
    assert result.ledger.processed == 3
    with session_factory() as session:
        numbers = sorted(session.execute(select(ExternalRecord.number)).scalars())
        assert numbers == ["10001", "10002", "10003"]
        assert session.get(InventoryItem, "BW-1").quantity == 6
