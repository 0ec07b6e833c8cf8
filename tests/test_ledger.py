from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from stocksync.ledger import ADJUSTMENT, LedgerEngine
from stocksync.records import LineItemData, ListedRecord, RecordDetail, RecordKind, RecordStatus
from stocksync.storage import repo
from stocksync.storage.models_sql import ExternalRecord, InventoryItem, LineItem, StockMovement


def _seed(session_factory, source: str, kind: RecordKind, number: str, items, **listed) -> None:
    with session_factory() as session:
        record, _ = repo.upsert_record(
            session, source, kind, ListedRecord(number=number, record_date=date(2024, 3, 1), **listed)
        )
        if items:
            repo.apply_record_detail(session, record, RecordDetail(items=list(items)))
        session.commit()


def _stock(session_factory, sku: str) -> float | None:
    with session_factory() as session:
        item = session.get(InventoryItem, sku)
        return None if item is None else item.quantity


def _movement_count(session_factory) -> int:
    with session_factory() as session:
        return int(session.execute(select(func.count(StockMovement.id))).scalar_one())


def test_orders_add_and_invoices_remove_stock(session_factory) -> None:
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "100", [LineItemData("ICE", "Ice", 10)])
    _seed(session_factory, "routestar", RecordKind.INVOICE, "INV-1", [LineItemData("ICE", "Ice", 4)])

    result = LedgerEngine(session_factory).apply_pending()

    assert result.processed == 2
    assert result.errors == []
    assert _stock(session_factory, "ICE") == 6
    with session_factory() as session:
        item = session.get(InventoryItem, "ICE")
        assert item.last_restock_ref == "customerconnect:100"
        directions = sorted(session.execute(select(StockMovement.direction)).scalars())
        assert directions == ["IN", "OUT"]


def test_second_pass_applies_nothing(session_factory) -> None:
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "100", [LineItemData("ICE", "Ice", 10)])
    engine = LedgerEngine(session_factory)

    engine.apply_pending()
    again = engine.apply_pending()

    assert again.processed == 0
    assert _stock(session_factory, "ICE") == 10
    assert _movement_count(session_factory) == 1


def test_record_without_items_stays_eligible(session_factory) -> None:
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "100", [])

    result = LedgerEngine(session_factory).apply_pending()

    assert result.skipped == 1
    with session_factory() as session:
        assert session.execute(select(ExternalRecord.processed)).scalar_one() is False


def test_failed_record_is_isolated(session_factory, monkeypatch) -> None:
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "100", [LineItemData("ICE", "Ice", 10)])
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "101", [LineItemData("CUP", "Cup", 3)])
    adjust = repo.adjust_inventory

    def failing_adjust(session, sku, delta, **kwargs):
        if sku == "ICE":
            raise OperationalError("UPDATE inventory_items", {}, Exception("database is locked"))
        return adjust(session, sku, delta, **kwargs)

    monkeypatch.setattr(repo, "adjust_inventory", failing_adjust)

    result = LedgerEngine(session_factory).apply_pending()

    assert result.processed == 1
    assert [error.number for error in result.errors] == ["100"]
    assert _stock(session_factory, "ICE") is None
    assert _stock(session_factory, "CUP") == 3
    assert _movement_count(session_factory) == 1
    with session_factory() as session:
        failed = repo.get_record(session, "customerconnect", "100")
        assert failed.processed is True
        assert "could not apply ICE" in failed.processing_error


def test_non_positive_quantities_are_skipped(session_factory) -> None:
    _seed(
        session_factory,
        "customerconnect",
        RecordKind.ORDER,
        "100",
        [LineItemData("ICE", "Ice", 10), LineItemData("CUP", "Cup", 3)],
    )
    with session_factory() as session:
        # Quantities are clamped on write; force a bad one underneath.
        item = session.execute(select(LineItem).where(LineItem.sku == "ICE")).scalar_one()
        item.quantity = -1
        session.commit()

    result = LedgerEngine(session_factory).apply_pending()

    assert result.processed == 1
    assert result.errors == []
    assert _stock(session_factory, "ICE") is None
    assert _stock(session_factory, "CUP") == 3
    with session_factory() as session:
        assert repo.get_record(session, "customerconnect", "100").processing_error is None


def test_movements_carry_origin_notes(session_factory) -> None:
    _seed(
        session_factory,
        "customerconnect",
        RecordKind.ORDER,
        "100",
        [LineItemData("ICE", "Ice", 10)],
        counterparty="Acme Ice",
        po_number="77",
    )
    _seed(
        session_factory,
        "routestar",
        RecordKind.INVOICE,
        "INV-1",
        [LineItemData("ICE", "Ice", 4)],
        counterparty="Corner Store",
    )

    LedgerEngine(session_factory).apply_pending()

    with session_factory() as session:
        notes = dict(session.execute(select(StockMovement.direction, StockMovement.note)).all())
    assert notes == {
        "IN": "Purchase: Acme Ice - Order #100 (PO: 77)",
        "OUT": "Sale: Corner Store - INV-1",
    }


def test_zero_quantity_lines_are_ignored(session_factory) -> None:
    _seed(
        session_factory,
        "routestar",
        RecordKind.INVOICE,
        "INV-2",
        [LineItemData("ICE", "Ice", 0), LineItemData("CUP", "Cup", 2)],
    )

    LedgerEngine(session_factory).apply_pending()

    assert _movement_count(session_factory) == 1
    assert _stock(session_factory, "CUP") == -2


def test_aliases_fold_into_canonical_sku(session_factory) -> None:
    with session_factory() as session:
        repo.add_sku_alias(session, "ICE BAG 10LB", "ICE-10")
        session.commit()
    _seed(session_factory, "routestar", RecordKind.INVOICE, "INV-3", [LineItemData("ICE BAG 10LB", "Ice bag", 5)])

    LedgerEngine(session_factory).apply_pending()

    assert _stock(session_factory, "ICE-10") == -5
    assert _stock(session_factory, "ICE BAG 10LB") is None


def test_status_filter(session_factory) -> None:
    _seed(
        session_factory,
        "routestar",
        RecordKind.INVOICE,
        "INV-4",
        [LineItemData("ICE", "Ice", 1)],
        status=RecordStatus.PENDING,
    )
    _seed(
        session_factory,
        "routestar",
        RecordKind.INVOICE,
        "INV-5",
        [LineItemData("ICE", "Ice", 2)],
        status=RecordStatus.CLOSED,
    )

    result = LedgerEngine(session_factory, source="routestar", statuses=[RecordStatus.CLOSED]).apply_pending()

    assert result.processed == 1
    assert _stock(session_factory, "ICE") == -2


def test_manual_adjustment(session_factory) -> None:
    engine = LedgerEngine(session_factory)
    item = engine.adjust("ice", 12, note="count")
    assert item.quantity == 12
    engine.adjust("ICE", -2)

    assert _stock(session_factory, "ICE") == 10
    with session_factory() as session:
        types = set(session.execute(select(StockMovement.reference_type)).scalars())
        assert types == {ADJUSTMENT}
    with pytest.raises(ValueError):
        engine.adjust("ICE", 0)


def test_rebuild_inventory_from_movements(session_factory) -> None:
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "100", [LineItemData("ICE", "Ice", 10)])
    engine = LedgerEngine(session_factory)
    engine.apply_pending()
    with session_factory() as session:
        session.get(InventoryItem, "ICE").quantity = 999
        repo.ensure_inventory_item(session, "GHOST")
        session.get(InventoryItem, "GHOST").quantity = 4
        session.commit()

    totals = engine.rebuild_inventory()

    assert totals == {"ICE": 10.0}
    assert _stock(session_factory, "ICE") == 10
    assert _stock(session_factory, "GHOST") == 0


def test_reprocess_rules(session_factory) -> None:
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "100", [LineItemData("ICE", "Ice", 10)])
    _seed(session_factory, "customerconnect", RecordKind.ORDER, "101", [LineItemData("CUP", "Cup", 1)])
    engine = LedgerEngine(session_factory)
    engine.apply_pending()
    with session_factory() as session:
        record = repo.get_record(session, "customerconnect", "101")
        repo.mark_processed(session, record, error="bad sku")
        session.execute(StockMovement.__table__.delete().where(StockMovement.reference_id == record.id))
        session.commit()

    assert engine.reprocess("customerconnect", "100") is False
    assert engine.reprocess("customerconnect", "101") is True
    with pytest.raises(LookupError):
        engine.reprocess("customerconnect", "nope")
    with session_factory() as session:
        record = repo.get_record(session, "customerconnect", "101")
        assert record.processed is False
        assert record.processing_error is None
