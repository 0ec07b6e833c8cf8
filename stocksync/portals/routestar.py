"""RouteStar sales-invoice portal client."""

from __future__ import annotations

from typing import Iterable

from stocksync.errors import ElementNotFound
from stocksync.extractor import ListExtractor, RawRecord
from stocksync.logging_config import get_logger
from stocksync.normalizers import normalize_invoice_status
from stocksync.parsers import (
    INVOICE_NUMBER_PATTERNS,
    clean_item_name,
    clean_text,
    derive_sku,
    extract_first,
    is_placeholder_item,
    parse_currency,
    parse_date,
    parse_int,
    parse_quantity,
)
from stocksync.portals.common import PortalSession
from stocksync.records import ZERO_MONEY, LineItemData, ListedRecord, Portal, RecordDetail, RecordStatus, RowSnapshot
from stocksync.waiting import poll_until

LOGGER = get_logger(__name__)

# Column order of the invoice grid (td cells only; the row header is a th).
COL_NUMBER = 0
COL_DATE = 1
COL_ENTERED_BY = 2
COL_ASSIGNED_TO = 3
COL_STOP = 4
COL_CUSTOMER = 5
COL_TYPE = 6
COL_SERVICE_NOTES = 7
COL_STATUS = 8
COL_COMPLETE = 9
COL_POSTED = 10
COL_TOTAL = 11
COL_LAST_MODIFIED = 12
COL_PAYMENT = 13
COL_ARRIVAL = 14


def _invoice_link(links: Iterable[str]) -> str | None:
    fallback = None
    for href in links:
        if "/invoice" in href.lower():
            return href
        if fallback is None and "customer" not in href.lower():
            fallback = href
    return fallback


def parse_invoice_row(row: RowSnapshot) -> RawRecord | None:
    """Parse one invoice grid row; None for spare or placeholder rows."""

    number = extract_first(row.cell(COL_NUMBER), INVOICE_NUMBER_PATTERNS) or extract_first(
        row.text, INVOICE_NUMBER_PATTERNS[1:]
    )
    if not number:
        return None
    status_class = row.cell_classes[COL_STATUS] if len(row.cell_classes) > COL_STATUS else ""
    return RawRecord(
        key=number,
        fields={
            "record_date": parse_date(row.cell(COL_DATE)),
            "entered_by": clean_text(row.cell(COL_ENTERED_BY)) or None,
            "assigned_to": clean_text(row.cell(COL_ASSIGNED_TO)) or None,
            "stop": clean_text(row.cell(COL_STOP)) or None,
            "counterparty": clean_text(row.cell(COL_CUSTOMER)) or None,
            "invoice_type": clean_text(row.cell(COL_TYPE)) or None,
            "service_notes": clean_text(row.cell(COL_SERVICE_NOTES)) or None,
            "status_text": clean_text(row.cell(COL_STATUS)) or None,
            "status": normalize_invoice_status(row.cell(COL_STATUS), cell_class=status_class),
            "is_complete": row.is_checked(COL_COMPLETE),
            "is_posted": row.is_checked(COL_POSTED),
            "total": parse_currency(row.cell(COL_TOTAL)),
            "last_modified": clean_text(row.cell(COL_LAST_MODIFIED)) or None,
            "payment": clean_text(row.cell(COL_PAYMENT)) or None,
            "arrival_time": clean_text(row.cell(COL_ARRIVAL)) or None,
            "detail_url": _invoice_link(row.links),
        },
        snapshot=row,
    )


def listed_invoice(raw: RawRecord, view: str) -> ListedRecord:
    fields = dict(raw.fields)
    status = fields.pop("status", RecordStatus.PENDING)
    if view == "closed" and status is RecordStatus.PENDING and not fields.get("status_text"):
        status = RecordStatus.CLOSED
    return ListedRecord(
        number=raw.key,
        status=status,
        record_date=fields.pop("record_date", None),
        counterparty=fields.pop("counterparty", None),
        total=fields.pop("total", None) or ZERO_MONEY,
        detail_url=fields.pop("detail_url", None),
        list_view=view,
        raw=fields,
    )


def parse_invoice_items(rows: Iterable[RowSnapshot]) -> list[LineItemData]:
    """Line items from the invoice grid: item, description, qty, rate, amount."""

    items: list[LineItemData] = []
    for row in rows:
        try:
            name = clean_item_name(row.cell(0))
            if is_placeholder_item(name):
                continue
            sku = derive_sku(None, name)
            if sku is None:
                continue
            items.append(
                LineItemData(
                    sku=sku,
                    name=name,
                    description=clean_text(row.cell(1)),
                    quantity=parse_quantity(row.cell(2)),
                    unit_price=parse_currency(row.cell(3)),
                    line_total=parse_currency(row.cell(4)),
                )
            )
        except Exception as exc:
            LOGGER.warning("Invoice item row skipped | row=%s error=%s", row.index, exc)
    return items


class RouteStarClient:
    """Sales invoices (stock out) from the RouteStar pending and closed invoice grids."""

    portal = Portal.ROUTESTAR

    def __init__(self, session: PortalSession) -> None:
        self.session = session
        self.config = session.config
        self.driver = session.driver

    async def login(self) -> None:
        await self.session.login()

    async def _first_keys(self) -> list[int]:
        rows = await self.driver.extract_rows(self.config.listing.rows, cell_selector=self.config.listing.cells)
        keys = []
        for row in rows[:2]:
            parsed = parse_invoice_row(row)
            if parsed is not None:
                keys.append(parse_int(parsed.key))
        return keys

    async def sort_newest_first(self) -> bool:
        """Best effort: click the invoice-number header until the grid is descending."""

        header = self.config.listing.sort_header
        if not header:
            return False
        for _ in range(2):
            keys = await self._first_keys()
            if len(keys) == 2 and keys[0] >= keys[1]:
                return True
            try:
                await self.driver.click(header, timeout_ms=5_000)
            except ElementNotFound:
                LOGGER.info("Invoice sort header not clickable | portal=%s", self.session.name)
                return False
            await self.driver.sleep(1_500)
        keys = await self._first_keys()
        return len(keys) == 2 and keys[0] >= keys[1]

    async def fetch_list(self, limit: float | int | None = None, *, seen: set[str] | None = None) -> list[ListedRecord]:
        await self.session.ensure_logged_in()
        seen = seen if seen is not None else set()
        records: list[ListedRecord] = []
        for view, route in self.config.routes.lists.items():
            url = self.config.url(route)
            await self.session.open(url, content_selector=self.config.listing.container)
            if not await self.sort_newest_first():
                LOGGER.info("Invoice grid order unverified | portal=%s view=%s", self.session.name, view)
            extractor = ListExtractor(
                self.driver,
                self.session.navigator,
                self.session.list_spec(),
                parse_invoice_row,
                seen=seen,
                cancel=self.session.cancel,
                before_advance=self.session.dismiss_modals,
            )
            result = await extractor.extract(limit)
            records.extend(listed_invoice(raw, view) for raw in result.records)
            LOGGER.info(
                "Fetched invoice list | portal=%s view=%s records=%s stop=%s",
                self.session.name,
                view,
                len(result.records),
                result.stop_reason.value,
            )
        return records

    async def fetch_detail(self, number: str, detail_url: str | None = None) -> RecordDetail:
        detail = self.config.detail
        url = self.session.detail_url(number, detail_url)
        LOGGER.info("Fetching invoice details | portal=%s invoice=%s url=%s", self.session.name, number, url)
        await self.session.open(url, content_selector=detail.ready)

        timeouts = self.config.timeouts

        async def _rows() -> list[RowSnapshot]:
            return await self.driver.extract_rows(detail.item_rows)

        rows = await poll_until(
            _rows,
            timeout_ms=timeouts.row_settle_ms,
            interval_ms=timeouts.poll_interval_ms,
            sleep=self.driver.sleep,
            cancel=self.session.cancel,
        ) or []
        items = parse_invoice_items(rows)
        if not items and rows:
            LOGGER.warning(
                "No invoice items extracted; only placeholder rows | portal=%s invoice=%s rows=%s",
                self.session.name,
                number,
                len(rows),
            )

        async def _read(selector: str | None) -> str | None:
            return await self.driver.text(selector) if selector else None

        result = RecordDetail(
            items=items,
            subtotal=parse_currency(await _read(detail.subtotal)),
            tax=parse_currency(await _read(detail.tax)),
            total=parse_currency(await _read(detail.total)),
            raw={
                "signed_by": await _read(detail.signed_by),
                "memo": await _read(detail.memo),
            },
        )
        LOGGER.info(
            "Invoice details extracted | portal=%s invoice=%s items=%s total=%s",
            self.session.name,
            number,
            len(items),
            result.total,
        )
        return result
