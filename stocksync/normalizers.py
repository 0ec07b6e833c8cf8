"""Normalisation helpers for portal status strings."""

from __future__ import annotations

from stocksync.records import RecordStatus

_ORDER_STATUS_MAP = {
    "pending": RecordStatus.PENDING,
    "processing": RecordStatus.PROCESSING,
    "processed": RecordStatus.PROCESSING,
    "shipped": RecordStatus.SHIPPED,
    "complete": RecordStatus.COMPLETE,
    "completed": RecordStatus.COMPLETE,
    "canceled": RecordStatus.CANCELLED,
    "cancelled": RecordStatus.CANCELLED,
    "canceled reversal": RecordStatus.CANCELLED,
    "denied": RecordStatus.CANCELLED,
    "voided": RecordStatus.CANCELLED,
    "reversed": RecordStatus.CANCELLED,
    "refunded": RecordStatus.CANCELLED,
    "expired": RecordStatus.CANCELLED,
    "failed": RecordStatus.CANCELLED,
}

_INVOICE_STATUS_MAP = {
    "pending": RecordStatus.PENDING,
    "open": RecordStatus.PENDING,
    "draft": RecordStatus.PENDING,
    "issued": RecordStatus.PENDING,
    "complete": RecordStatus.COMPLETE,
    "completed": RecordStatus.COMPLETE,
    "delivered": RecordStatus.COMPLETE,
    "paid": RecordStatus.CLOSED,
    "closed": RecordStatus.CLOSED,
    "posted": RecordStatus.CLOSED,
    "cancelled": RecordStatus.CANCELLED,
    "canceled": RecordStatus.CANCELLED,
    "void": RecordStatus.CANCELLED,
    "voided": RecordStatus.CANCELLED,
}


def _key(value: str | None) -> str:
    return " ".join((value or "").split()).lower()


def normalize_order_status(value: str | None) -> RecordStatus:
    """Map CustomerConnect order status text to a RecordStatus."""

    key = _key(value)
    if not key:
        return RecordStatus.UNKNOWN
    if key in _ORDER_STATUS_MAP:
        return _ORDER_STATUS_MAP[key]
    for token, status in _ORDER_STATUS_MAP.items():
        if key.startswith(token):
            return status
    return RecordStatus.UNKNOWN


def normalize_invoice_status(value: str | None, *, cell_class: str | None = None) -> RecordStatus:
    """Map RouteStar invoice status text (and grid cell class) to a RecordStatus."""

    css = (cell_class or "").lower()
    if "htinvalid" in css or "status-invalid" in css:
        return RecordStatus.UNKNOWN
    if "status-complete" in css:
        return RecordStatus.COMPLETE
    if "status-pending" in css:
        return RecordStatus.PENDING

    key = _key(value)
    if not key:
        return RecordStatus.PENDING
    if key in _INVOICE_STATUS_MAP:
        return _INVOICE_STATUS_MAP[key]
    if "complete" in key:
        return RecordStatus.COMPLETE
    if "pending" in key:
        return RecordStatus.PENDING
    return RecordStatus.PENDING
