"""Apply synced records to inventory exactly once."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Callable, Iterable

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stocksync.errors import LedgerApplicationError
from stocksync.logging_config import get_logger
from stocksync.records import Direction, RecordKind, RecordStatus
from stocksync.storage import repo
from stocksync.storage.models_sql import ExternalRecord, InventoryItem

LOGGER = get_logger(__name__)

ADJUSTMENT = "ADJUSTMENT"


@dataclass
class LedgerError:
    source: str
    number: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"key": f"{self.source}:{self.number}", "stage": "ledger", "message": self.message}


@dataclass
class LedgerResult:
    processed: int = 0
    skipped: int = 0
    errors: list[LedgerError] = field(default_factory=list)


def _movement_ts(record: ExternalRecord) -> datetime:
    if record.record_date is not None:
        return datetime.combine(record.record_date, time.min, tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def movement_note(record: ExternalRecord) -> str:
    """Human-readable origin of a movement, e.g. "Purchase: Acme - Order #100 (PO: 77)"."""

    party = record.counterparty or "unknown"
    if RecordKind(record.kind) is RecordKind.ORDER:
        note = f"Purchase: {party} - Order #{record.number}"
        return f"{note} (PO: {record.po_number})" if record.po_number else note
    return f"Sale: {party} - {record.number}"


class LedgerEngine:
    """Turns unprocessed records into stock movements and inventory deltas.

    Each record is applied and committed on its own: movements, inventory
    updates and the processed marker land together or not at all. A record
    that fails is rolled back and then marked processed with its error so it
    is not retried blindly; ``reprocess`` clears that marker.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        source: str | None = None,
        statuses: Iterable[RecordStatus] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.source = source
        self.statuses = list(statuses) if statuses is not None else None

    def apply_pending(self) -> LedgerResult:
        result = LedgerResult()
        session = self.session_factory()
        try:
            records = repo.pending_ledger_records(session, source=self.source, statuses=self.statuses)
            LOGGER.info("Ledger pass started | source=%s pending=%s", self.source or "all", len(records))
            for record in records:
                if not record.line_items:
                    result.skipped += 1
                    continue
                key = (record.id, record.source, record.number)
                try:
                    self._apply(session, record)
                    session.commit()
                    result.processed += 1
                except Exception as exc:
                    session.rollback()
                    message = str(exc) or exc.__class__.__name__
                    LOGGER.error(
                        "Ledger application failed | source=%s record=%s error=%s", key[1], key[2], message
                    )
                    result.errors.append(LedgerError(key[1], key[2], message))
                    self._mark_failed(session, key[0], message)
        finally:
            session.close()
        LOGGER.info(
            "Ledger pass finished | source=%s processed=%s skipped=%s errors=%s",
            self.source or "all",
            result.processed,
            result.skipped,
            len(result.errors),
        )
        return result

    def _apply(self, session: Session, record: ExternalRecord) -> None:
        kind = RecordKind(record.kind)
        direction = kind.direction
        ts = _movement_ts(record)
        source_ref = f"{record.source}:{record.number}"
        note = movement_note(record)
        for item in record.line_items:
            if item.quantity is None or item.quantity <= 0:
                continue
            try:
                sku = repo.resolve_sku(session, item.sku)
                repo.append_movement(
                    session,
                    sku=sku,
                    direction=direction,
                    quantity=item.quantity,
                    reference_type=kind.reference_type,
                    reference_id=record.id,
                    source_ref=source_ref,
                    ts=ts,
                    note=note,
                )
                delta = item.quantity if direction is Direction.IN else -item.quantity
                repo.adjust_inventory(
                    session,
                    sku,
                    delta,
                    name=item.name,
                    restock_ref=source_ref if direction is Direction.IN else None,
                )
            except SQLAlchemyError as exc:
                raise LedgerApplicationError(
                    f"could not apply {item.sku}: {exc}", portal=record.source, record=record.number
                ) from exc
        repo.mark_processed(session, record)

    def _mark_failed(self, session: Session, record_id: int, message: str) -> None:
        record = session.get(ExternalRecord, record_id)
        if record is None:
            return
        repo.mark_processed(session, record, error=message[:2000])
        session.commit()

    def adjust(self, sku: str, delta: float, note: str | None = None) -> InventoryItem:
        """Record a compensating movement and apply it to stock on hand."""

        if delta == 0:
            raise ValueError("delta must be non-zero")
        session = self.session_factory()
        try:
            canonical = repo.resolve_sku(session, sku.strip().upper())
            repo.append_movement(
                session,
                sku=canonical,
                direction=Direction.IN if delta > 0 else Direction.OUT,
                quantity=abs(delta),
                reference_type=ADJUSTMENT,
                note=note,
            )
            item = repo.adjust_inventory(session, canonical, delta)
            session.commit()
            LOGGER.info("Inventory adjusted | sku=%s delta=%s quantity=%s", canonical, delta, item.quantity)
            return item
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def rebuild_inventory(self) -> dict[str, float]:
        """Recompute every inventory quantity from the movement log."""

        session = self.session_factory()
        try:
            totals = repo.movement_totals(session)
            for sku in totals:
                repo.ensure_inventory_item(session, sku)
            session.execute(
                update(InventoryItem).where(InventoryItem.sku.not_in(list(totals))).values(quantity=0.0),
                execution_options={"synchronize_session": False},
            )
            for sku, quantity in totals.items():
                session.execute(
                    update(InventoryItem).where(InventoryItem.sku == sku).values(quantity=quantity),
                    execution_options={"synchronize_session": False},
                )
            session.commit()
            LOGGER.info("Inventory rebuilt from movements | skus=%s", len(totals))
            return totals
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def reprocess(self, source: str, number: str) -> bool:
        """Clear a ledger error marker so the record is applied on the next pass.

        Refused (returns False) when the record already produced movements.
        """

        session = self.session_factory()
        try:
            record = repo.get_record(session, source, number)
            if record is None:
                raise LookupError(f"unknown record {source}:{number}")
            if not record.processed:
                return True
            if repo.count_movements_for_record(session, record.id):
                LOGGER.warning("Reprocess refused; movements exist | source=%s record=%s", source, number)
                return False
            repo.reset_processed(session, record)
            session.commit()
            LOGGER.info("Record queued for reprocessing | source=%s record=%s", source, number)
            return True
        finally:
            session.close()

