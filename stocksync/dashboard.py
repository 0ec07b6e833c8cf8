"""FastAPI JSON surface for run history, inventory and manual triggers."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Iterable

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stocksync.errors import ConfigError, SyncAlreadyRunning
from stocksync.logging_config import get_logger
from stocksync.records import SyncStatus
from stocksync.scheduler import SchedulerContext
from stocksync.storage import repo
from stocksync.storage.models_sql import ExternalRecord, InventoryItem, SyncLog


LOGGER = get_logger(__name__)


class RunNowRequest(BaseModel):
    limit: int | None = Field(default=None, ge=0)
    process_stock: bool = True
    portal: str | None = None


class SkuAliasRequest(BaseModel):
    alias: str = Field(min_length=1)
    sku: str = Field(min_length=1)


def _iso(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = repo.as_utc(value)
    return value.isoformat()


def serialize_sync_log(log: SyncLog) -> dict[str, Any]:
    payload = {
        "id": log.id,
        "source": log.source,
        "trigger": log.trigger,
        "status": log.status,
        "found": log.found,
        "inserted": log.inserted,
        "updated": log.updated,
        "skipped": log.skipped,
        "failed": log.failed,
        "details_fetched": log.details_fetched,
        "ledger_processed": log.ledger_processed,
        "started_at": _iso(log.started_at),
        "ended_at": _iso(log.ended_at),
        "error_message": log.error_message,
        "errors": log.errors or [],
        "cancel_requested": log.cancel_requested,
    }
    payload["elapsed_seconds"] = round(repo.elapsed_seconds(log), 1)
    return payload


def serialize_record(record: ExternalRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "source": record.source,
        "number": record.number,
        "kind": record.kind,
        "status": record.status,
        "record_date": _iso(record.record_date),
        "counterparty": record.counterparty,
        "total": record.total,
        "po_number": record.po_number,
        "list_view": record.list_view,
        "items": len(record.line_items),
        "processed": record.processed,
        "processing_error": record.processing_error,
        "last_synced_at": _iso(record.last_synced_at),
    }


def serialize_inventory(item: InventoryItem) -> dict[str, Any]:
    return {
        "sku": item.sku,
        "name": item.name,
        "quantity": item.quantity,
        "last_restocked_at": _iso(item.last_restocked_at),
        "last_restock_qty": item.last_restock_qty,
        "last_restock_ref": item.last_restock_ref,
        "updated_at": _iso(item.updated_at),
    }


def create_app(
    session_factory: Callable[[], Session],
    context: SchedulerContext | None = None,
) -> FastAPI:
    """Build the API bound to *session_factory* and, optionally, a live scheduler."""

    app = FastAPI(title="StockSync")

    def get_session() -> Iterable[Session]:
        """Dependency that yields a SQLAlchemy session."""

        with session_factory() as session:
            yield session

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/runs")
    def api_runs(
        source: str | None = Query(None),
        status: str | None = Query(None),
        days: int | None = Query(None, ge=1),
        page: int = Query(1, ge=1),
        per_page: int = Query(20, ge=1, le=200),
        session: Session = Depends(get_session),
    ) -> JSONResponse:
        if status and status.upper() not in SyncStatus.__members__:
            raise HTTPException(status_code=400, detail=f"Unknown status {status!r}.")
        logs, total = repo.list_sync_logs(
            session,
            source=source,
            status=status,
            days=days,
            limit=per_page,
            offset=(page - 1) * per_page,
        )
        return JSONResponse(
            content={
                "runs": [serialize_sync_log(log) for log in logs],
                "total": total,
                "page": page,
                "per_page": per_page,
            }
        )

    @app.get("/api/runs/active")
    def api_active_runs(session: Session = Depends(get_session)) -> JSONResponse:
        logs = repo.active_sync_logs(session)
        return JSONResponse(content={"runs": [serialize_sync_log(log) for log in logs], "count": len(logs)})

    @app.get("/api/runs/{log_id}")
    def api_run(log_id: int, session: Session = Depends(get_session)) -> JSONResponse:
        log = session.get(SyncLog, log_id)
        if log is None:
            raise HTTPException(status_code=404, detail="Run not found.")
        return JSONResponse(content=serialize_sync_log(log))

    @app.post("/api/runs/{log_id}/cancel")
    def api_cancel_run(log_id: int, session: Session = Depends(get_session)) -> JSONResponse:
        existing = session.get(SyncLog, log_id)
        if existing is None:
            raise HTTPException(status_code=404, detail="Run not found.")
        if existing.status != SyncStatus.RUNNING.value:
            raise HTTPException(status_code=409, detail=f"Run is not running (status={existing.status}).")
        if existing.cancel_requested:
            raise HTTPException(status_code=409, detail="Cancel already requested.")
        log = repo.request_cancel(session, log_id)
        session.commit()
        LOGGER.info("Run cancel requested | log_id=%s source=%s", log_id, log.source)
        return JSONResponse(content=serialize_sync_log(log))

    @app.get("/api/stats")
    def api_stats(days: int = Query(30, ge=1, le=3650), session: Session = Depends(get_session)) -> JSONResponse:
        return JSONResponse(content=repo.sync_log_stats(session, days=days))

    @app.post("/api/run-now")
    def api_run_now(body: RunNowRequest | None = None) -> JSONResponse:
        if context is None:
            raise HTTPException(status_code=503, detail="Scheduler is not running in this process.")
        body = body or RunNowRequest()
        try:
            context.submit_run_now(limit=body.limit, process_stock=body.process_stock, portal=body.portal)
        except SyncAlreadyRunning as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        LOGGER.info("Manual run submitted | portal=%s limit=%s", body.portal or "all", body.limit)
        return JSONResponse(status_code=202, content={"accepted": True, "portal": body.portal, "limit": body.limit})

    @app.get("/api/scheduler")
    def api_scheduler() -> JSONResponse:
        if context is None:
            return JSONResponse(content={"scheduled": False, "running": False})
        return JSONResponse(content=context.status())

    @app.get("/api/inventory")
    def api_inventory(session: Session = Depends(get_session)) -> JSONResponse:
        items = repo.list_inventory(session)
        return JSONResponse(content={"items": [serialize_inventory(item) for item in items], "count": len(items)})

    @app.get("/api/records")
    def api_records(
        source: str | None = Query(None),
        processed: bool | None = Query(None),
        page: int = Query(1, ge=1),
        per_page: int = Query(50, ge=1, le=500),
        session: Session = Depends(get_session),
    ) -> JSONResponse:
        records, total = repo.list_records(
            session,
            source=source,
            processed=processed,
            limit=per_page,
            offset=(page - 1) * per_page,
        )
        return JSONResponse(
            content={
                "records": [serialize_record(record) for record in records],
                "total": total,
                "page": page,
                "per_page": per_page,
            }
        )

    @app.post("/api/sku-aliases")
    def api_add_alias(body: SkuAliasRequest, session: Session = Depends(get_session)) -> JSONResponse:
        try:
            entry = repo.add_sku_alias(session, body.alias, body.sku)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        session.commit()
        return JSONResponse(status_code=201, content={"alias": entry.alias, "sku": entry.sku})

    return app
