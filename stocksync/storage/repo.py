"""Repository helpers for interacting with persistent storage."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from stocksync.records import ZERO_MONEY, Direction, ListedRecord, RecordDetail, RecordKind, RecordStatus, SyncStatus

from .models_sql import ExternalRecord, InventoryItem, LineItem, SkuAlias, StockMovement, SyncLog

MAX_LOGGED_ERRORS = 25
CANCELLED_MESSAGE = "Cancelled by operator"

_LISTED_FIELDS = ("status", "record_date", "counterparty", "total", "po_number", "detail_url", "list_view")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_zero_money(value: str | None) -> bool:
    try:
        return Decimal(value or ZERO_MONEY) == 0
    except InvalidOperation:
        return False


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# External records
# ---------------------------------------------------------------------------


def get_record(session: Session, source: str, number: str) -> ExternalRecord | None:
    stmt = select(ExternalRecord).where(ExternalRecord.source == source, ExternalRecord.number == number)
    return session.execute(stmt).scalar_one_or_none()


def upsert_record(
    session: Session,
    source: str,
    kind: RecordKind,
    listed: ListedRecord,
) -> tuple[ExternalRecord, str]:
    """Insert or refresh a record by its (source, number) natural key.

    Returns the record and one of ``"created"``, ``"updated"`` or
    ``"unchanged"``. The natural key is never rewritten.
    """

    values: dict[str, Any] = {
        "status": listed.status.value if isinstance(listed.status, RecordStatus) else str(listed.status),
        "record_date": listed.record_date,
        "counterparty": listed.counterparty,
        "total": listed.total or ZERO_MONEY,
        "po_number": listed.po_number,
        "detail_url": listed.detail_url,
        "list_view": listed.list_view,
    }
    now = _utcnow()
    record = get_record(session, source, listed.number)
    if record is None:
        record = ExternalRecord(
            source=source,
            number=listed.number,
            kind=kind.value,
            raw=dict(listed.raw) if listed.raw else None,
            first_seen_at=now,
            last_synced_at=now,
            **values,
        )
        session.add(record)
        session.flush()
        return record, "created"

    changed = False
    for name in _LISTED_FIELDS:
        value = values[name]
        # A list page that could not read a field never blanks a known value.
        if value is None or (name == "total" and _is_zero_money(value) and not _is_zero_money(record.total)):
            continue
        if getattr(record, name) != value:
            setattr(record, name, value)
            changed = True
    if listed.raw:
        merged = dict(record.raw or {})
        merged.update(listed.raw)
        if merged != (record.raw or {}):
            record.raw = merged
    record.last_synced_at = now
    session.flush()
    return record, "updated" if changed else "unchanged"


def needs_details(record: ExternalRecord) -> bool:
    return not record.line_items


def apply_record_detail(session: Session, record: ExternalRecord, detail: RecordDetail) -> ExternalRecord:
    """Replace the record's line items and merge totals read from its detail page."""

    record.line_items.clear()
    session.flush()
    for position, item in enumerate(detail.items):
        record.line_items.append(
            LineItem(
                position=position,
                sku=item.sku,
                name=item.name,
                description=item.description or None,
                quantity=max(float(item.quantity), 0.0),
                unit_price=item.unit_price or ZERO_MONEY,
                line_total=item.line_total or ZERO_MONEY,
            )
        )
    for name in ("subtotal", "tax", "shipping", "total"):
        value = getattr(detail, name)
        if value and not _is_zero_money(value):
            setattr(record, name, value)
    if detail.status is not None and detail.status is not RecordStatus.UNKNOWN:
        record.status = detail.status.value
    for name in ("po_number", "counterparty", "record_date"):
        value = getattr(detail, name)
        if value:
            setattr(record, name, value)
    if detail.raw:
        merged = dict(record.raw or {})
        merged.update({key: value for key, value in detail.raw.items() if value is not None})
        record.raw = merged
    record.details_fetched_at = _utcnow()
    session.flush()
    return record


def list_records(
    session: Session,
    *,
    source: str | None = None,
    processed: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ExternalRecord], int]:
    stmt = select(ExternalRecord)
    count_stmt = select(func.count(ExternalRecord.id))
    if source:
        stmt = stmt.where(ExternalRecord.source == source)
        count_stmt = count_stmt.where(ExternalRecord.source == source)
    if processed is not None:
        stmt = stmt.where(ExternalRecord.processed.is_(processed))
        count_stmt = count_stmt.where(ExternalRecord.processed.is_(processed))
    stmt = (
        stmt.options(selectinload(ExternalRecord.line_items))
        .order_by(ExternalRecord.last_synced_at.desc(), ExternalRecord.id.desc())
        .limit(limit)
        .offset(offset)
    )
    total = int(session.execute(count_stmt).scalar_one())
    return list(session.execute(stmt).scalars()), total


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def pending_ledger_records(
    session: Session,
    *,
    source: str | None = None,
    statuses: Iterable[RecordStatus | str] | None = None,
) -> list[ExternalRecord]:
    """Unprocessed records, oldest record date first."""

    stmt = select(ExternalRecord).where(ExternalRecord.processed.is_(False))
    if source:
        stmt = stmt.where(ExternalRecord.source == source)
    if statuses is not None:
        allowed = [status.value if isinstance(status, RecordStatus) else str(status) for status in statuses]
        stmt = stmt.where(ExternalRecord.status.in_(allowed))
    stmt = stmt.options(selectinload(ExternalRecord.line_items)).order_by(
        ExternalRecord.record_date.is_(None),
        ExternalRecord.record_date,
        ExternalRecord.id,
    )
    return list(session.execute(stmt).scalars())


def mark_processed(session: Session, record: ExternalRecord, *, error: str | None = None) -> ExternalRecord:
    record.processed = True
    record.processed_at = _utcnow()
    record.processing_error = error
    session.flush()
    return record


def reset_processed(session: Session, record: ExternalRecord) -> ExternalRecord:
    record.processed = False
    record.processed_at = None
    record.processing_error = None
    session.flush()
    return record


def count_movements_for_record(session: Session, record_id: int) -> int:
    stmt = select(func.count(StockMovement.id)).where(
        StockMovement.reference_id == record_id,
        StockMovement.reference_type.in_([kind.reference_type for kind in RecordKind]),
    )
    return int(session.execute(stmt).scalar_one())


def append_movement(
    session: Session,
    *,
    sku: str,
    direction: Direction,
    quantity: float,
    reference_type: str,
    reference_id: int | None = None,
    source_ref: str | None = None,
    ts: datetime | None = None,
    note: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        sku=sku,
        direction=direction.value,
        quantity=float(quantity),
        reference_type=reference_type,
        reference_id=reference_id,
        source_ref=source_ref,
        ts=ts or _utcnow(),
        note=note,
    )
    session.add(movement)
    session.flush()
    return movement


def ensure_inventory_item(session: Session, sku: str, name: str | None = None) -> InventoryItem:
    item = session.get(InventoryItem, sku)
    if item is None:
        item = InventoryItem(sku=sku, name=name or sku, quantity=0.0, updated_at=_utcnow())
        session.add(item)
        session.flush()
    return item


def adjust_inventory(
    session: Session,
    sku: str,
    delta: float,
    *,
    name: str | None = None,
    restock_ref: str | None = None,
) -> InventoryItem:
    """Change stock on hand by *delta* with a single ``quantity = quantity + delta`` UPDATE."""

    ensure_inventory_item(session, sku, name)
    now = _utcnow()
    values: dict[str, Any] = {"quantity": InventoryItem.quantity + float(delta), "updated_at": now}
    if restock_ref is not None and delta > 0:
        values.update(last_restocked_at=now, last_restock_qty=float(delta), last_restock_ref=restock_ref)
    session.execute(
        update(InventoryItem).where(InventoryItem.sku == sku).values(**values),
        execution_options={"synchronize_session": False},
    )
    item = session.get(InventoryItem, sku)
    session.refresh(item)
    return item


def resolve_sku(session: Session, sku: str) -> str:
    alias = session.get(SkuAlias, sku)
    return alias.sku if alias is not None else sku


def add_sku_alias(session: Session, alias: str, sku: str) -> SkuAlias:
    alias = alias.strip().upper()
    sku = sku.strip().upper()
    if alias == sku:
        raise ValueError("alias and sku must differ")
    entry = session.get(SkuAlias, alias)
    if entry is None:
        entry = SkuAlias(alias=alias, sku=sku)
        session.add(entry)
    else:
        entry.sku = sku
    session.flush()
    return entry


def movement_totals(session: Session) -> dict[str, float]:
    """Net quantity per sku computed from the movement log."""

    signed = case((StockMovement.direction == Direction.IN.value, StockMovement.quantity), else_=-StockMovement.quantity)
    stmt = select(StockMovement.sku, func.sum(signed)).group_by(StockMovement.sku)
    return {sku: float(total or 0.0) for sku, total in session.execute(stmt)}


def list_inventory(session: Session) -> list[InventoryItem]:
    return list(session.execute(select(InventoryItem).order_by(InventoryItem.sku)).scalars())


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------


def create_sync_log(session: Session, source: str, *, trigger: str = "manual") -> SyncLog:
    log = SyncLog(source=source, trigger=trigger, status=SyncStatus.RUNNING.value, started_at=_utcnow(), errors=[])
    session.add(log)
    session.flush()
    return log


def update_sync_log(session: Session, log_id: int, **counts: int) -> SyncLog | None:
    log = session.get(SyncLog, log_id)
    if log is None:
        return None
    for name, value in counts.items():
        setattr(log, name, value)
    session.flush()
    return log


def finalize_sync_log(
    session: Session,
    log_id: int,
    *,
    status: SyncStatus,
    error_message: str | None = None,
    errors: Iterable[dict[str, Any]] = (),
    **counts: int,
) -> SyncLog | None:
    """Close a run; an entry flagged for cancellation always ends FAILED."""

    log = session.get(SyncLog, log_id)
    if log is None:
        return None
    session.refresh(log)
    for name, value in counts.items():
        setattr(log, name, value)
    log.errors = list(errors)[:MAX_LOGGED_ERRORS]
    log.ended_at = _utcnow()
    if log.cancel_requested:
        log.status = SyncStatus.FAILED.value
        log.error_message = CANCELLED_MESSAGE
    else:
        log.status = status.value
        log.error_message = error_message
    session.flush()
    return log


def request_cancel(session: Session, log_id: int) -> SyncLog | None:
    """Flag a RUNNING entry for cancellation.

    The entry stays RUNNING until the run notices the flag and
    ``finalize_sync_log`` closes it as FAILED. Returns None when the entry
    does not exist; a finished entry is returned unchanged.
    """

    log = session.get(SyncLog, log_id)
    if log is None:
        return None
    if log.status != SyncStatus.RUNNING.value:
        return log
    log.cancel_requested = True
    session.flush()
    return log


def is_cancel_requested(session: Session, log_id: int) -> bool:
    stmt = select(SyncLog.cancel_requested).where(SyncLog.id == log_id)
    return bool(session.execute(stmt).scalar_one_or_none())


def list_sync_logs(
    session: Session,
    *,
    source: str | None = None,
    status: str | None = None,
    days: int | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[SyncLog], int]:
    conditions = []
    if source:
        conditions.append(SyncLog.source == source)
    if status:
        conditions.append(SyncLog.status == status.upper())
    if days:
        conditions.append(SyncLog.started_at >= _utcnow() - timedelta(days=days))
    stmt = select(SyncLog).where(*conditions).order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
    total = int(session.execute(select(func.count(SyncLog.id)).where(*conditions)).scalar_one())
    rows = session.execute(stmt.limit(limit).offset(offset)).scalars()
    return list(rows), total


def active_sync_logs(session: Session) -> list[SyncLog]:
    stmt = select(SyncLog).where(SyncLog.status == SyncStatus.RUNNING.value).order_by(SyncLog.started_at)
    return list(session.execute(stmt).scalars())


def elapsed_seconds(log: SyncLog, *, now: datetime | None = None) -> float:
    start = as_utc(log.started_at)
    end = as_utc(log.ended_at) or now or _utcnow()
    if start is None:
        return 0.0
    return max((end - start).total_seconds(), 0.0)


def sync_log_stats(session: Session, *, days: int = 30) -> dict[str, Any]:
    """Success rate, per-source counts and average duration over *days*."""

    cutoff = _utcnow() - timedelta(days=days)
    logs = list(session.execute(select(SyncLog).where(SyncLog.started_at >= cutoff)).scalars())
    by_status: dict[str, int] = defaultdict(int)
    by_source: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    durations: list[float] = []
    for log in logs:
        by_status[log.status] += 1
        by_source[log.source][log.status] += 1
        if log.ended_at is not None:
            durations.append(elapsed_seconds(log))
    finished = sum(count for status, count in by_status.items() if status != SyncStatus.RUNNING.value)
    success = by_status.get(SyncStatus.SUCCESS.value, 0)
    return {
        "days": days,
        "total": len(logs),
        "by_status": dict(by_status),
        "by_source": {source: dict(counts) for source, counts in by_source.items()},
        "success_rate": round(success / finished, 4) if finished else None,
        "average_duration_seconds": round(sum(durations) / len(durations), 2) if durations else None,
    }


def cleanup_sync_logs(session: Session, *, days: int = 90) -> int:
    """Remove finished run entries older than *days* days."""

    if days <= 0:
        return 0

    cutoff = _utcnow() - timedelta(days=days)
    stmt = delete(SyncLog).where(SyncLog.started_at < cutoff, SyncLog.status != SyncStatus.RUNNING.value)
    result = session.execute(stmt)
    return int(result.rowcount or 0)


def mark_stale_runs(session: Session, *, message: str = "Process exited before the run finished") -> int:
    """Close RUNNING entries left behind by a process that did not shut down cleanly."""

    stmt = (
        update(SyncLog)
        .where(SyncLog.status == SyncStatus.RUNNING.value)
        .values(
            status=SyncStatus.FAILED.value,
            ended_at=_utcnow(),
            error_message=case((SyncLog.cancel_requested.is_(True), CANCELLED_MESSAGE), else_=message),
        )
    )
    result = session.execute(stmt, execution_options={"synchronize_session": False})
    return int(result.rowcount or 0)
