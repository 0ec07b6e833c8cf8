"""CustomerConnect purchase-order portal client."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from stocksync.errors import ParsingError
from stocksync.extractor import ListExtractor, RawRecord
from stocksync.logging_config import get_logger
from stocksync.normalizers import normalize_order_status
from stocksync.parsers import (
    clean_text,
    derive_sku,
    extract_date,
    extract_order_number,
    extract_po_number,
    extract_status,
    extract_total,
    extract_vendor,
    parse_currency,
    parse_pagination_text,
    parse_quantity,
)
from stocksync.portals.common import PortalSession
from stocksync.records import ZERO_MONEY, LineItemData, ListedRecord, Portal, RecordDetail, RowSnapshot

LOGGER = get_logger(__name__)

_DETAIL_LINK_MARKERS = ("order_id=", "order/info")
_TOTAL_LABELS = {
    "sub-total": "subtotal",
    "subtotal": "subtotal",
    "total": "total",
}


def _detail_link(links: Iterable[str]) -> str | None:
    for href in links:
        if any(marker in href for marker in _DETAIL_LINK_MARKERS):
            return href
    return None


def parse_order_row(row: RowSnapshot) -> RawRecord | None:
    """Parse one order block from the order history list; None when it has no order number."""

    text = row.text
    number = extract_order_number(text)
    if not number:
        return None
    return RawRecord(
        key=number,
        fields={
            "status": extract_status(text),
            "record_date": extract_date(text),
            "total": extract_total(text),
            "counterparty": extract_vendor(text),
            "po_number": extract_po_number(text),
            "detail_url": _detail_link(row.links),
        },
        snapshot=row,
    )


def listed_order(raw: RawRecord, view: str) -> ListedRecord:
    fields = raw.fields
    return ListedRecord(
        number=raw.key,
        status=normalize_order_status(fields.get("status")),
        record_date=fields.get("record_date"),
        counterparty=fields.get("counterparty"),
        total=fields.get("total") or ZERO_MONEY,
        po_number=fields.get("po_number"),
        detail_url=fields.get("detail_url"),
        list_view=view,
        raw={"status_text": fields.get("status"), "text": raw.snapshot.text if raw.snapshot else ""},
    )


def parse_order_items(rows: Iterable[RowSnapshot]) -> list[LineItemData]:
    """Line items from the order detail tables: product, model, quantity, price, total."""

    items: list[LineItemData] = []
    for row in rows:
        if len(row.cells) < 5:
            continue
        try:
            name = clean_text(row.cell(0))
            if not name or name.lower().startswith("product"):
                continue
            sku = derive_sku(row.cell(1), name)
            if sku is None:
                continue
            items.append(
                LineItemData(
                    sku=sku,
                    name=name,
                    quantity=parse_quantity(row.cell(2)),
                    unit_price=parse_currency(row.cell(3)),
                    line_total=parse_currency(row.cell(4)),
                )
            )
        except Exception as exc:
            LOGGER.warning("Order item row skipped | row=%s error=%s", row.index, exc)
    return items


def parse_order_totals(rows: Iterable[RowSnapshot]) -> dict[str, str]:
    """Sub-total/tax/shipping/total from the order table footer rows."""

    totals = dict.fromkeys(("subtotal", "tax", "shipping", "total"), ZERO_MONEY)
    tax_sum = Decimal("0")
    for row in rows:
        if len(row.cells) < 2:
            continue
        label = clean_text(row.cells[-2]).lower().rstrip(":")
        value = parse_currency(row.cells[-1])
        if label in _TOTAL_LABELS:
            totals[_TOTAL_LABELS[label]] = value
        elif "tax" in label:
            tax_sum += Decimal(value)
            totals["tax"] = parse_currency(str(tax_sum))
        elif "shipping" in label:
            totals["shipping"] = value
    return totals


class CustomerConnectClient:
    """Purchase orders (stock in) from the CustomerConnect order history."""

    portal = Portal.CUSTOMERCONNECT

    def __init__(self, session: PortalSession) -> None:
        self.session = session
        self.config = session.config
        self.driver = session.driver

    async def login(self) -> None:
        await self.session.login()

    async def _page_budget_hint(self) -> int | None:
        selector = self.config.listing.summary
        if not selector:
            return None
        total, pages = parse_pagination_text(await self.driver.text(selector))
        if pages:
            LOGGER.info("Order history size | portal=%s orders=%s pages=%s", self.session.name, total, pages)
            return pages
        return None

    async def fetch_list(self, limit: float | int | None = None, *, seen: set[str] | None = None) -> list[ListedRecord]:
        await self.session.ensure_logged_in()
        records: list[ListedRecord] = []
        for view, route in self.config.routes.lists.items():
            url = self.config.url(route)
            await self.session.open(url, content_selector=self.config.listing.container)
            pages = await self._page_budget_hint()
            extractor = ListExtractor(
                self.driver,
                self.session.navigator,
                self.session.list_spec(max_pages=min(pages, self.config.max_pages) if pages else None),
                parse_order_row,
                seen=seen,
                cancel=self.session.cancel,
                before_advance=self.session.dismiss_modals,
            )
            result = await extractor.extract(limit)
            records.extend(listed_order(raw, view) for raw in result.records)
        LOGGER.info("Fetched order list | portal=%s records=%s", self.session.name, len(records))
        return records

    async def fetch_detail(self, number: str, detail_url: str | None = None) -> RecordDetail:
        detail = self.config.detail
        url = self.session.detail_url(number, detail_url)
        LOGGER.info("Fetching order details | portal=%s order=%s url=%s", self.session.name, number, url)
        await self.session.open(url, content_selector=detail.ready)

        info = (await self.driver.text(detail.info)) if detail.info else ""
        info = info or ""
        rows = await self.driver.extract_rows(detail.item_rows)
        items = parse_order_items(rows)
        totals = parse_order_totals(await self.driver.extract_rows(detail.totals_rows)) if detail.totals_rows else {}
        if not items and rows:
            LOGGER.warning("No order items extracted | portal=%s order=%s rows=%s", self.session.name, number, len(rows))
            await self.driver.screenshot(f"order-{number}-no-items")
            raise ParsingError(
                f"{len(rows)} item rows but no readable line items", portal=self.session.name, record=number, url=url
            )

        status_text = extract_status(info)
        result = RecordDetail(
            items=items,
            status=normalize_order_status(status_text) if status_text else None,
            po_number=extract_po_number(info),
            counterparty=extract_vendor(info),
            record_date=extract_date(info),
            raw={"info": info[:2000]},
            **totals,
        )
        LOGGER.info("Order details extracted | portal=%s order=%s items=%s", self.session.name, number, len(items))
        return result
