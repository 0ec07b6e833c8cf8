"""Pure text-to-value parsers for portal list rows and detail pages.

Every field extractor tries a primary pattern and then its fallbacks, in
order, and returns an "absent" value (None, ``"0.00"`` or ``0``) instead of
raising, so one missing field never blocks the rest of a record.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re
from typing import Iterable, Pattern

from stocksync.records import ZERO_MONEY

ORDER_NUMBER_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"Order\s*ID:\s*#?\s*(\d+)", re.I),
    re.compile(r"^\s*#?(\d{5,})"),
)
INVOICE_NUMBER_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"^\s*([A-Za-z]{0,4}-?\d{3,}[A-Za-z0-9-]*)\s*$"),
    re.compile(r"Invoice\s*#?\s*:?\s*([A-Za-z0-9-]*\d[A-Za-z0-9-]*)", re.I),
    re.compile(r"^\s*(\d{3,})"),
)
STATUS_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"Status:\s*([^\n]+)", re.I),
)
DATE_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"Date\s*(?:Added)?:\s*(\d{1,2}/\d{1,2}/\d{2,4})", re.I),
    re.compile(r"Date\s*(?:Added)?:\s*(\d{4}-\d{2}-\d{2})", re.I),
)
TOTAL_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"(?<!Sub-)Total:\s*(\$?\s*-?[\d,]+(?:\.\d+)?)", re.I),
)
VENDOR_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"Vendor\(s\):\s*([^,\n]+)", re.I),
    re.compile(r"Vendor:\s*([^\n]+)", re.I),
)
PO_NUMBER_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"PO\s*Number\(s\):\s*([^,\n]+)", re.I),
    re.compile(r"PO\s*#:\s*([^\n]+)", re.I),
)
PAGINATION_PATTERN = re.compile(r"of\s+(\d+)\s+\((\d+)\s+Pages?\)", re.I)

_WHITESPACE = re.compile(r"\s+")
_CURRENCY_NOISE = re.compile(r"[^\d.\-]")
_QUANTITY_NOISE = re.compile(r"[^\d.]")
_DROPDOWN_GLYPHS = re.compile(r"[▼▾↓]")
_CENTS = Decimal("0.01")
_DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%Y-%m-%d", "%b %d, %Y", "%d %b %Y")
_PLACEHOLDER_NAMES = {"choose..", "choose...", "choose"}


def clean_text(value: str | None) -> str:
    """Collapse whitespace; None becomes the empty string."""

    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip()


def extract_first(text: str | None, patterns: Iterable[Pattern[str]]) -> str | None:
    """Return the first capture group of the first pattern that matches."""

    if not text:
        return None
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = clean_text(match.group(1))
            if value:
                return value
    return None


def extract_order_number(text: str | None) -> str | None:
    return extract_first(text, ORDER_NUMBER_PATTERNS)


def extract_status(text: str | None) -> str | None:
    return extract_first(text, STATUS_PATTERNS)


def extract_date(text: str | None) -> date | None:
    return parse_date(extract_first(text, DATE_PATTERNS))


def extract_total(text: str | None) -> str:
    return parse_currency(extract_first(text, TOTAL_PATTERNS))


def extract_vendor(text: str | None) -> str | None:
    return extract_first(text, VENDOR_PATTERNS)


def extract_po_number(text: str | None) -> str | None:
    return extract_first(text, PO_NUMBER_PATTERNS)


def parse_pagination_text(text: str | None) -> tuple[int, int]:
    """Parse "Showing 1 to 10 of 57 (6 Pages)" into (total_records, total_pages)."""

    if not text:
        return 0, 0
    match = PAGINATION_PATTERN.search(text)
    if not match:
        return 0, 0
    return int(match.group(1)), int(match.group(2))


def to_decimal(text: str | None) -> Decimal | None:
    """Parse a money string into a Decimal, or None when nothing numeric is present."""

    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None
    negative = raw.startswith("(") and raw.endswith(")")
    cleaned = _CURRENCY_NOISE.sub("", raw)
    if cleaned.count("-") > 1 or (cleaned.startswith("-") is False and "-" in cleaned):
        cleaned = cleaned.replace("-", "")
    if not cleaned or cleaned in {".", "-", "-."}:
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if negative and value > 0:
        value = -value
    return value


def parse_currency(text: str | None) -> str:
    """Return a fixed two-decimal string, e.g. "$1,234.56" -> "1234.56"; absent -> "0.00"."""

    value = to_decimal(text)
    if value is None:
        return ZERO_MONEY
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def parse_quantity(text: str | None) -> float:
    """Strip non-numeric characters and parse; defaults to 0."""

    if text is None:
        return 0.0
    cleaned = _QUANTITY_NOISE.sub("", str(text))
    if not cleaned:
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_int(text: str | None, default: int = 0) -> int:
    if text is None:
        return default
    digits = re.sub(r"[^\d]", "", str(text))
    return int(digits) if digits else default


def parse_date(text: str | None) -> date | None:
    """Parse the portal date formats; None when unrecognised."""

    value = clean_text(text)
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def clean_item_name(text: str | None) -> str:
    """Drop dropdown glyphs rendered inside editable grid cells."""

    return clean_text(_DROPDOWN_GLYPHS.sub("", text or ""))


def is_placeholder_item(name: str | None) -> bool:
    return not name or name.strip().lower() in _PLACEHOLDER_NAMES


def derive_sku(raw_sku: str | None, name: str | None) -> str | None:
    """Portal item identifier when present, else the upper-cased normalized name."""

    sku = clean_text(raw_sku)
    if sku:
        return sku.upper()
    fallback = clean_text(name)
    if fallback:
        return fallback.upper()
    return None
