"""Value types shared by portal clients, the pipeline and the ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

ZERO_MONEY = "0.00"


class Portal(str, Enum):
    """External portals the sync knows how to drive."""

    CUSTOMERCONNECT = "customerconnect"
    ROUTESTAR = "routestar"

    @property
    def kind(self) -> "RecordKind":
        return RecordKind.ORDER if self is Portal.CUSTOMERCONNECT else RecordKind.INVOICE


class RecordKind(str, Enum):
    ORDER = "order"
    INVOICE = "invoice"

    @property
    def direction(self) -> "Direction":
        return Direction.IN if self is RecordKind.ORDER else Direction.OUT

    @property
    def reference_type(self) -> str:
        return "PURCHASE_ORDER" if self is RecordKind.ORDER else "INVOICE"


class Direction(str, Enum):
    IN = "IN"
    OUT = "OUT"


class RecordStatus(str, Enum):
    """Normalised lifecycle state of an order or invoice."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    COMPLETE = "COMPLETE"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


class SyncStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RowSnapshot:
    """Plain-data capture of one rendered list/table row."""

    index: int
    text: str
    cells: tuple[str, ...] = ()
    cell_classes: tuple[str, ...] = ()
    checked: tuple[bool | None, ...] = ()
    links: tuple[str, ...] = ()

    def cell(self, position: int) -> str:
        if 0 <= position < len(self.cells):
            return self.cells[position]
        return ""

    def is_checked(self, position: int) -> bool:
        if 0 <= position < len(self.checked):
            return bool(self.checked[position])
        return False

    def fingerprint(self) -> str:
        return " ".join(self.text.split())


@dataclass
class LineItemData:
    sku: str
    name: str
    quantity: float
    unit_price: str = ZERO_MONEY
    line_total: str = ZERO_MONEY
    description: str = ""


@dataclass
class ListedRecord:
    """A record as read from a portal list page."""

    number: str
    status: RecordStatus = RecordStatus.UNKNOWN
    record_date: date | None = None
    counterparty: str | None = None
    total: str = ZERO_MONEY
    po_number: str | None = None
    detail_url: str | None = None
    list_view: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordDetail:
    """Fields merged into a record from its detail page."""

    items: list[LineItemData] = field(default_factory=list)
    subtotal: str = ZERO_MONEY
    tax: str = ZERO_MONEY
    shipping: str = ZERO_MONEY
    total: str = ZERO_MONEY
    status: RecordStatus | None = None
    po_number: str | None = None
    counterparty: str | None = None
    record_date: date | None = None
    raw: dict[str, Any] = field(default_factory=dict)
