"""One sync run for one portal: login, list, upsert, details, ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.orm import Session

from stocksync.browser import ClientFactory
from stocksync.config import PortalConfig
from stocksync.errors import (
    ContentTimeout,
    LoginError,
    NavigationTimeout,
    RetryableError,
    RunCancelled,
    SessionExpired,
    SyncAlreadyRunning,
)
from stocksync.ledger import LedgerEngine, LedgerResult
from stocksync.logging_config import get_logger
from stocksync.portals.common import PortalClient
from stocksync.records import ListedRecord, SyncStatus
from stocksync.storage import repo
from stocksync.waiting import CancelToken, Sleeper, retrying, sleep_ms

LOGGER = get_logger(__name__)

T = TypeVar("T")


class SyncLock:
    """Non-blocking advisory lock; a second holder is refused, never queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()


@dataclass
class SyncError:
    key: str
    stage: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"key": self.key, "stage": self.stage, "message": self.message}


@dataclass
class SyncResult:
    source: str
    log_id: int | None = None
    found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    details_fetched: int = 0
    errors: list[SyncError] = field(default_factory=list)
    ledger: LedgerResult | None = None
    status: SyncStatus = SyncStatus.RUNNING

    def counts(self) -> dict[str, int]:
        return {
            "found": self.found,
            "inserted": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": len(self.errors),
            "details_fetched": self.details_fetched,
            "ledger_processed": self.ledger.processed if self.ledger else 0,
        }

    def summary(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "log_id": self.log_id,
            "status": self.status.value,
            **self.counts(),
            "errors": [error.as_dict() for error in self.errors],
        }


class SyncPipeline:
    """Orchestrates a single portal run and keeps its SyncLog row current."""

    def __init__(
        self,
        portal: PortalConfig,
        session_factory: Callable[[], Session],
        client_factory: ClientFactory,
        *,
        lock: SyncLock | None = None,
        ledger: LedgerEngine | None = None,
        sleep: Sleeper = sleep_ms,
    ) -> None:
        self.portal = portal
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.lock = lock or SyncLock()
        self.ledger = ledger or LedgerEngine(
            session_factory,
            source=portal.name.value,
            statuses=portal.ledger_statuses,
        )
        self.sleep = sleep
        self._token: CancelToken | None = None

    @property
    def name(self) -> str:
        return self.portal.name.value

    @property
    def running(self) -> bool:
        return self.lock.locked

    def cancel(self, reason: str = "Run cancelled by scheduler shutdown.") -> bool:
        token = self._token
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def run(
        self,
        limit: float | int | None = None,
        process_stock: bool = True,
        trigger: str = "manual",
    ) -> SyncResult:
        if not self.lock.acquire():
            LOGGER.warning("Sync refused; already running | portal=%s trigger=%s", self.name, trigger)
            raise SyncAlreadyRunning(portal=self.name)
        try:
            return await self._run(limit, process_stock, trigger)
        finally:
            self._token = None
            self.lock.release()

    # ------------------------------------------------------------------
    # run stages
    # ------------------------------------------------------------------

    def _create_log(self, trigger: str) -> int:
        session = self.session_factory()
        try:
            log = repo.create_sync_log(session, self.name, trigger=trigger)
            session.commit()
            return log.id
        finally:
            session.close()

    def _cancel_requested(self, log_id: int) -> bool:
        session = self.session_factory()
        try:
            return repo.is_cancel_requested(session, log_id)
        finally:
            session.close()

    def _update_log(self, result: SyncResult) -> None:
        session = self.session_factory()
        try:
            repo.update_sync_log(session, result.log_id, **result.counts())
            session.commit()
        finally:
            session.close()

    def _finalize(self, result: SyncResult, status: SyncStatus, error_message: str | None = None) -> None:
        result.status = status
        session = self.session_factory()
        try:
            log = repo.finalize_sync_log(
                session,
                result.log_id,
                status=status,
                error_message=error_message,
                errors=[error.as_dict() for error in result.errors],
                **result.counts(),
            )
            session.commit()
            if log is not None:
                result.status = SyncStatus(log.status)
        finally:
            session.close()

    async def _run(self, limit: float | int | None, process_stock: bool, trigger: str) -> SyncResult:
        result = SyncResult(source=self.name)
        result.log_id = self._create_log(trigger)
        log_id = result.log_id
        token = CancelToken(check=lambda: self._cancel_requested(log_id))
        self._token = token
        LOGGER.info("Sync started | portal=%s trigger=%s log_id=%s limit=%s", self.name, trigger, log_id, limit)

        try:
            async with self.client_factory(token) as client:
                await client.login()
                token.raise_if_cancelled()
                listed = await self._with_session(client, "list", lambda: client.fetch_list(limit))
                result.found = len(listed)
                LOGGER.info("Records listed | portal=%s found=%s", self.name, result.found)
                pending = self._upsert_all(listed, result)
                self._update_log(result)
                await self._fetch_details(client, pending, result, token)
        except Exception as exc:
            status_message = str(exc) or exc.__class__.__name__
            if isinstance(exc, RunCancelled):
                LOGGER.warning("Sync cancelled | portal=%s log_id=%s reason=%s", self.name, log_id, status_message)
            else:
                LOGGER.error("Sync failed | portal=%s log_id=%s error=%s", self.name, log_id, status_message)
            self._finalize(result, SyncStatus.FAILED, status_message)
            raise

        if process_stock:
            result.ledger = self._apply_ledger(result)

        status = SyncStatus.PARTIAL if result.errors else SyncStatus.SUCCESS
        self._finalize(result, status)
        LOGGER.info(
            "Sync finished | portal=%s log_id=%s status=%s found=%s created=%s updated=%s details=%s errors=%s",
            self.name,
            log_id,
            result.status.value,
            result.found,
            result.created,
            result.updated,
            result.details_fetched,
            len(result.errors),
        )
        return result

    async def _with_session(self, client: PortalClient, stage: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Retry transient failures; re-login once when the session expires."""

        relogged = False
        while True:
            try:
                async for attempt in retrying(
                    self.portal.retry,
                    logger=LOGGER,
                    retry_on=(NavigationTimeout, ContentTimeout),
                ):
                    with attempt:
                        return await operation()
            except SessionExpired as exc:
                if relogged:
                    raise LoginError(
                        "Session expired again after re-login", portal=self.name, url=exc.url
                    ) from exc
                relogged = True
                LOGGER.warning("Session expired; logging in again | portal=%s stage=%s", self.name, stage)
                await client.login()

    def _upsert_all(self, listed: list[ListedRecord], result: SyncResult) -> list[tuple[str, str | None]]:
        """Upsert listed records; return (number, detail_url) for those lacking line items."""

        pending: list[tuple[str, str | None]] = []
        kind = self.portal.name.kind
        session = self.session_factory()
        try:
            for record in listed:
                try:
                    stored, outcome = repo.upsert_record(session, self.name, kind, record)
                    session.commit()
                except Exception as exc:
                    session.rollback()
                    LOGGER.error("Record upsert failed | portal=%s record=%s error=%s", self.name, record.number, exc)
                    result.errors.append(SyncError(record.number, "upsert", str(exc) or exc.__class__.__name__))
                    continue
                if outcome == "created":
                    result.created += 1
                elif outcome == "updated":
                    result.updated += 1
                else:
                    result.skipped += 1
                if repo.needs_details(stored):
                    pending.append((stored.number, stored.detail_url))
        finally:
            session.close()
        return pending

    async def _fetch_details(
        self,
        client: PortalClient,
        pending: list[tuple[str, str | None]],
        result: SyncResult,
        token: CancelToken,
    ) -> None:
        for position, (number, detail_url) in enumerate(pending):
            token.raise_if_cancelled()
            if position:
                await self.sleep(self.portal.detail_delay_ms)
            try:
                detail = await self._with_session(
                    client, "detail", lambda: client.fetch_detail(number, detail_url)
                )
            except (LoginError, RunCancelled):
                raise
            except Exception as exc:
                LOGGER.error("Detail fetch failed | portal=%s record=%s error=%s", self.name, number, exc)
                result.errors.append(SyncError(number, "detail", str(exc) or exc.__class__.__name__))
                continue

            session = self.session_factory()
            try:
                record = repo.get_record(session, self.name, number)
                if record is None:
                    raise LookupError(f"record {number} disappeared before its details were stored")
                repo.apply_record_detail(session, record, detail)
                session.commit()
                result.details_fetched += 1
            except Exception as exc:
                session.rollback()
                LOGGER.error("Detail store failed | portal=%s record=%s error=%s", self.name, number, exc)
                result.errors.append(SyncError(number, "detail", str(exc) or exc.__class__.__name__))
            finally:
                session.close()
        if pending:
            self._update_log(result)

    def _apply_ledger(self, result: SyncResult) -> LedgerResult | None:
        try:
            ledger = self.ledger.apply_pending()
        except Exception as exc:
            LOGGER.error("Ledger pass failed | portal=%s error=%s", self.name, exc)
            result.errors.append(SyncError(self.name, "ledger", str(exc) or exc.__class__.__name__))
            return None
        for error in ledger.errors:
            result.errors.append(SyncError(f"{error.source}:{error.number}", "ledger", error.message))
        return ledger
