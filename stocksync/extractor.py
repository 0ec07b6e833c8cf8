"""Paginated list extraction with stuck-pager and duplicate-page guards."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import math
from typing import Any, Awaitable, Callable

from stocksync.driver import PageDriver
from stocksync.errors import ContentTimeout, ElementNotFound
from stocksync.logging_config import get_logger
from stocksync.navigation import NavigationStrategy
from stocksync.records import RowSnapshot
from stocksync.waiting import CancelToken, poll_until

LOGGER = get_logger(__name__)

DEFAULT_PAGE_SIZE = 10
DEFAULT_MAX_PAGES = 200


class ExtractorState(str, Enum):
    AWAITING_CONTENT = "awaiting_content"
    ROWS_FOUND = "rows_found"
    EMPTY_PAGE = "empty_page"
    EXTRACTING = "extracting"
    ADVANCING = "advancing"
    STOPPED = "stopped"


class StopReason(str, Enum):
    EMPTY_FIRST_PAGE = "empty_first_page"
    EMPTY_PAGE = "empty_page"
    NO_NEW_KEYS = "no_new_keys"
    LIMIT_REACHED = "limit_reached"
    PAGE_BUDGET = "page_budget"
    NO_NEXT = "no_next"
    STUCK = "stuck"


@dataclass
class RawRecord:
    """One parsed row: its natural key plus extracted fields."""

    key: str
    fields: dict[str, Any] = field(default_factory=dict)
    snapshot: RowSnapshot | None = None


RowParser = Callable[[RowSnapshot], "RawRecord | None"]


@dataclass(frozen=True)
class ListSpec:
    """Selectors and budgets describing one paginated list."""

    container: str
    rows: str
    next_buttons: tuple[str, ...]
    cells: str = "td"
    next_disabled: tuple[str, ...] = ()
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    content_timeout_ms: int | None = None
    advance_timeout_ms: int = 15_000
    poll_interval_ms: int = 1_000
    row_settle_ms: int = 5_000


@dataclass
class ExtractionResult:
    records: list[RawRecord]
    pages_visited: int
    stop_reason: StopReason
    rows_skipped: int = 0


def page_budget(limit: float | int | None, page_size: int, max_pages: int) -> int:
    """Translate a record limit into a number of pages to visit."""

    if limit is None or limit == 0 or (isinstance(limit, float) and math.isinf(limit)):
        return max_pages
    if limit < 0:
        raise ValueError("limit must be positive, zero/None for unbounded")
    return max(1, min(max_pages, math.ceil(limit / max(page_size, 1))))


def _limit_value(limit: float | int | None) -> int | None:
    if limit is None or limit == 0 or (isinstance(limit, float) and math.isinf(limit)):
        return None
    return int(limit)


class ListExtractor:
    """Extract records page by page from a client-rendered, paginated list.

    The caller-visible ``seen`` set holds natural keys already collected and
    may be shared between several extractors of the same run. A page that
    contributes no new key ends extraction even when a next control exists.
    The first-row fingerprint check after "next" only approximates progress
    detection; the ``seen`` set is the backstop.
    """

    def __init__(
        self,
        driver: PageDriver,
        navigator: NavigationStrategy,
        spec: ListSpec,
        parse_row: RowParser,
        *,
        seen: set[str] | None = None,
        cancel: CancelToken | None = None,
        before_advance: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self.driver = driver
        self.navigator = navigator
        self.spec = spec
        self.parse_row = parse_row
        self.seen: set[str] = seen if seen is not None else set()
        self.cancel = cancel
        self.before_advance = before_advance
        self.state = ExtractorState.AWAITING_CONTENT
        self.page_number = 1
        self.rows_skipped = 0
        self.stuck = False
        self._last_rows: list[RowSnapshot] = []

    @property
    def portal(self) -> str:
        return self.navigator.portal

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    async def _read_rows(self) -> list[RowSnapshot]:
        rows = await self.driver.extract_rows(self.spec.rows, cell_selector=self.spec.cells)
        return [row for row in rows if row.text or any(row.cells)]

    async def _await_rows(self) -> list[RowSnapshot]:
        self.state = ExtractorState.AWAITING_CONTENT
        try:
            await self.navigator.wait_for_content(
                self.spec.container,
                timeout_ms=self.spec.content_timeout_ms,
            )
        except ContentTimeout:
            if self.page_number == 1:
                raise
            LOGGER.info(
                "List container missing after advance; treating as end of data | portal=%s page=%s",
                self.portal,
                self.page_number,
            )
            return []

        rows = await poll_until(
            self._read_rows,
            timeout_ms=self.spec.row_settle_ms,
            interval_ms=self.spec.poll_interval_ms,
            sleep=self.driver.sleep,
            cancel=self.cancel,
        )
        return rows or []

    async def fetch_page(self) -> list[RawRecord]:
        """Read and parse the current page; per-row failures are skipped."""

        self._check_cancel()
        rows = await self._await_rows()
        self._last_rows = rows
        if not rows:
            self.state = ExtractorState.EMPTY_PAGE
            return []

        self.state = ExtractorState.ROWS_FOUND
        LOGGER.info("List page rows | portal=%s page=%s rows=%s", self.portal, self.page_number, len(rows))
        self.state = ExtractorState.EXTRACTING
        records: list[RawRecord] = []
        for row in rows:
            try:
                record = self.parse_row(row)
            except Exception as exc:
                self.rows_skipped += 1
                LOGGER.warning(
                    "Row extraction failed | portal=%s page=%s row=%s error=%s",
                    self.portal,
                    self.page_number,
                    row.index,
                    exc,
                )
                continue
            if record is None or not record.key:
                self.rows_skipped += 1
                LOGGER.debug(
                    "Row skipped (no natural key) | portal=%s page=%s row=%s",
                    self.portal,
                    self.page_number,
                    row.index,
                )
                continue
            records.append(record)
        return records

    async def has_next(self) -> bool:
        for selector in self.spec.next_disabled:
            if await self.driver.exists(selector):
                return False
        for selector in self.spec.next_buttons:
            if await self.driver.is_visible(selector):
                return True
        return False

    async def _current_fingerprint(self) -> str:
        rows = await self._read_rows()
        return rows[0].fingerprint() if rows else ""

    async def advance(self) -> bool:
        """Click "next" and wait for the first row to change; False when stuck or at the end."""

        self._check_cancel()
        self.state = ExtractorState.ADVANCING
        before = self._last_rows[0].fingerprint() if self._last_rows else await self._current_fingerprint()

        if self.before_advance is not None:
            await self.before_advance()

        clicked = False
        for selector in self.spec.next_buttons:
            if not await self.driver.is_visible(selector):
                continue
            try:
                await self.driver.click(selector, timeout_ms=5_000)
            except ElementNotFound:
                continue
            clicked = True
            break
        if not clicked:
            return False

        async def _changed() -> bool:
            current = await self._current_fingerprint()
            return not current or current != before

        changed = await poll_until(
            _changed,
            timeout_ms=self.spec.advance_timeout_ms,
            interval_ms=self.spec.poll_interval_ms,
            sleep=self.driver.sleep,
            cancel=self.cancel,
        )
        if not changed:
            self.stuck = True
            LOGGER.warning(
                "Pagination stuck; first row unchanged after next | portal=%s page=%s",
                self.portal,
                self.page_number,
            )
            await self.driver.screenshot(f"pagination-stuck-p{self.page_number}")
            return False
        self.page_number += 1
        return True

    async def extract(self, limit: float | int | None = None) -> ExtractionResult:
        """Run the state machine until a stop condition is reached."""

        budget = page_budget(limit, self.spec.page_size, self.spec.max_pages)
        wanted = _limit_value(limit)
        collected: list[RawRecord] = []
        pages_visited = 0
        reason = StopReason.PAGE_BUDGET

        while True:
            page_records = await self.fetch_page()
            pages_visited += 1

            if self.state is ExtractorState.EMPTY_PAGE:
                reason = StopReason.EMPTY_FIRST_PAGE if pages_visited == 1 else StopReason.EMPTY_PAGE
                break

            fresh: list[RawRecord] = []
            for record in page_records:
                if record.key in self.seen or any(r.key == record.key for r in fresh):
                    continue
                fresh.append(record)
            if not fresh:
                reason = StopReason.NO_NEW_KEYS
                break
            if wanted is not None:
                fresh = fresh[: wanted - len(collected)]
            for record in fresh:
                self.seen.add(record.key)
            collected.extend(fresh)

            if wanted is not None and len(collected) >= wanted:
                reason = StopReason.LIMIT_REACHED
                break
            if pages_visited >= budget:
                reason = StopReason.PAGE_BUDGET
                break
            if not await self.has_next():
                reason = StopReason.NO_NEXT
                break
            if not await self.advance():
                reason = StopReason.STUCK if self.stuck else StopReason.NO_NEXT
                break

        self.state = ExtractorState.STOPPED
        LOGGER.info(
            "List extraction stopped | portal=%s reason=%s pages=%s records=%s skipped_rows=%s",
            self.portal,
            reason.value,
            pages_visited,
            len(collected),
            self.rows_skipped,
        )
        return ExtractionResult(
            records=collected,
            pages_visited=pages_visited,
            stop_reason=reason,
            rows_skipped=self.rows_skipped,
        )
