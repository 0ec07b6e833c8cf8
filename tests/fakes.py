"""In-memory stand-ins for the browser page and portal clients."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from stocksync.errors import ElementNotFound
from stocksync.records import ListedRecord, Portal, RecordDetail, RowSnapshot

CONTAINER = "#list"
ROWS = "#list tr"
NEXT = "a.next"


def row(index: int, text: str, *, cells: tuple[str, ...] = (), links: tuple[str, ...] = (), **extra: Any) -> RowSnapshot:
    return RowSnapshot(index=index, text=text, cells=cells, links=links, **extra)


def order_rows(*numbers: str) -> list[RowSnapshot]:
    return [row(i, f"Order ID: #{number}\nStatus: Complete\nTotal: $10.00") for i, number in enumerate(numbers)]


class FakeDriver:
    """Scriptable PageDriver.

    ``pages`` are the successive contents of ``rows_selector``; clicking the
    next selector moves to the following page unless ``stuck`` is set.
    ``views`` swaps in a different page list when a given URL is opened.
    """

    def __init__(
        self,
        *,
        pages: list[list[RowSnapshot]] | None = None,
        present: set[str] | None = None,
        visible: set[str] | None = None,
        texts: dict[str, str] | None = None,
        tables: dict[str, list[RowSnapshot]] | None = None,
        failing_signals: set[str | None] | None = None,
        redirects: dict[str, str] | None = None,
        rows_selector: str = ROWS,
        next_selector: str = NEXT,
        stuck: bool = False,
        views: dict[str, list[list[RowSnapshot]]] | None = None,
    ) -> None:
        self.pages = pages or []
        self.views = dict(views or {})
        self.page_index = 0
        self.present = set(present if present is not None else {CONTAINER})
        self.visible = set(visible or ())
        self.texts = dict(texts or {})
        self.tables = dict(tables or {})
        self.failing_signals = set(failing_signals or ())
        self.redirects = dict(redirects or {})
        self.rows_selector = rows_selector
        self.next_selector = next_selector
        self.stuck = stuck
        self._url = "about:blank"
        self.gotos: list[tuple[str, str | None]] = []
        self.clicks: list[str] = []
        self.fills: dict[str, str] = {}
        self.sleeps: list[int] = []
        self.screenshots: list[str] = []
        self.click_effects: dict[str, Any] = {}

    @property
    def url(self) -> str:
        return self._url

    async def goto(self, url: str, *, wait_until: str | None, timeout_ms: int) -> None:
        self.gotos.append((url, wait_until))
        if wait_until in self.failing_signals:
            raise TimeoutError(f"Timeout {timeout_ms}ms exceeded waiting for {wait_until}")
        self._url = self.redirects.get(url, url)
        if url in self.views:
            self.pages = self.views[url]
            self.page_index = 0

    async def wait_for_selector(self, selector: str, *, timeout_ms: int, state: str = "attached") -> bool:
        return selector in self.present

    async def exists(self, selector: str) -> bool:
        return selector in self.present

    async def is_visible(self, selector: str) -> bool:
        if selector == self.next_selector:
            return self.page_index < len(self.pages) - 1
        return selector in self.visible

    async def click(self, selector: str, *, timeout_ms: int | None = None) -> None:
        self.clicks.append(selector)
        if selector == self.next_selector:
            if not self.stuck:
                self.page_index += 1
            return
        effect = self.click_effects.get(selector)
        if effect is not None:
            effect(self)
            return
        if selector not in self.visible and selector not in self.present:
            raise ElementNotFound(f"{selector} not found")

    async def fill(self, selector: str, value: str, *, timeout_ms: int | None = None) -> None:
        if selector not in self.present:
            raise ElementNotFound(f"{selector} not found")
        self.fills[selector] = value

    async def text(self, selector: str, *, timeout_ms: int | None = None) -> str | None:
        return self.texts.get(selector)

    async def extract_rows(self, selector: str, *, cell_selector: str = "td") -> list[RowSnapshot]:
        if selector == self.rows_selector:
            if not self.pages:
                return []
            return list(self.pages[min(self.page_index, len(self.pages) - 1)])
        return list(self.tables.get(selector, []))

    async def screenshot(self, name: str) -> Path | None:
        self.screenshots.append(name)
        return None

    async def sleep(self, ms: int) -> None:
        self.sleeps.append(ms)


class FakeClient:
    """PortalClient returning canned list entries and details."""

    def __init__(
        self,
        listed: list[ListedRecord],
        details: dict[str, Any] | None = None,
        *,
        portal: Portal = Portal.CUSTOMERCONNECT,
        login_error: Exception | None = None,
    ) -> None:
        self.portal = portal
        self.listed = listed
        self.details = details or {}
        self.login_error = login_error
        self.logins = 0
        self.detail_calls: list[str] = []

    async def login(self) -> None:
        self.logins += 1
        if self.login_error is not None:
            raise self.login_error

    async def fetch_list(self, limit: float | int | None = None) -> list[ListedRecord]:
        return list(self.listed)

    async def fetch_detail(self, number: str, detail_url: str | None = None) -> RecordDetail:
        self.detail_calls.append(number)
        outcome = self.details.get(number, RecordDetail())
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class CountingFactory:
    """Client factory that records how many browser sessions were opened."""

    def __init__(self, client: Any) -> None:
        self.client = client
        self.opened = 0
        self.tokens: list[Any] = []

    def __call__(self, cancel: Any):
        @asynccontextmanager
        async def _session():
            self.opened += 1
            self.tokens.append(cancel)
            yield self.client

        return _session()
