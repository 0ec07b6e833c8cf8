"""Shared portal session plumbing composed into each portal client."""

from __future__ import annotations

from typing import Protocol

from stocksync.config import PortalConfig
from stocksync.driver import PageDriver
from stocksync.errors import ContentTimeout
from stocksync.extractor import ListSpec
from stocksync.logging_config import get_logger
from stocksync.navigation import LoginFlow, NavigationHints, NavigationResult, NavigationStrategy
from stocksync.records import ListedRecord, Portal, RecordDetail
from stocksync.waiting import CancelToken

LOGGER = get_logger(__name__)


class PortalClient(Protocol):
    """What the sync pipeline needs from a portal."""

    portal: Portal

    async def login(self) -> None: ...

    async def fetch_list(self, limit: float | int | None = None) -> list[ListedRecord]: ...

    async def fetch_detail(self, number: str, detail_url: str | None = None) -> RecordDetail: ...


class PortalSession:
    """Driver, navigation strategy and login flow for one portal, one browser page."""

    def __init__(self, config: PortalConfig, driver: PageDriver, *, cancel: CancelToken | None = None) -> None:
        self.config = config
        self.driver = driver
        self.cancel = cancel
        self.navigator = NavigationStrategy(
            driver,
            portal=config.name.value,
            timeouts=config.timeouts,
            login_url_pattern=config.login_url_pattern,
            cancel=cancel,
        )
        self.login_flow = LoginFlow(
            self.navigator,
            config.login,
            retry_policy=config.retry,
            modal_selectors=config.modals,
            modal_close=config.modal_close,
        )
        self.logged_in = False

    @property
    def name(self) -> str:
        return self.config.name.value

    async def login(self) -> None:
        self.logged_in = False
        await self.login_flow.login(
            self.config.url(self.config.routes.login),
            self.config.username,
            self.config.password.get_secret_value(),
        )
        self.logged_in = True

    async def ensure_logged_in(self) -> None:
        if not self.logged_in:
            await self.login()

    async def dismiss_modals(self) -> int:
        return await self.navigator.dismiss_modals(self.config.modals, self.config.modal_close)

    async def open(self, url: str, *, content_selector: str | None = None) -> NavigationResult:
        """Navigate, clear dialogs and wait for *content_selector*.

        A dialog can reappear while the content renders; on a content timeout
        dialogs are dismissed once more before giving up.
        """

        result = await self.navigator.navigate(url)
        await self.dismiss_modals()
        if not content_selector:
            return result
        try:
            await self.navigator.wait_for_content(content_selector, attempted_url=url)
        except ContentTimeout:
            if await self.dismiss_modals() and await self.driver.exists(content_selector):
                LOGGER.info("Content appeared after dismissing dialog | portal=%s url=%s", self.name, url)
            else:
                raise
        return NavigationResult(
            url=result.url,
            final_url=self.driver.url,
            signal=result.signal,
            content_found=True,
        )

    def list_spec(self, *, max_pages: int | None = None) -> ListSpec:
        listing = self.config.listing
        timeouts = self.config.timeouts
        return ListSpec(
            container=listing.container,
            rows=listing.rows,
            cells=listing.cells,
            next_buttons=tuple(listing.next_buttons),
            next_disabled=tuple(listing.next_disabled),
            page_size=self.config.page_size,
            max_pages=max_pages or self.config.max_pages,
            content_timeout_ms=timeouts.content_ms,
            advance_timeout_ms=timeouts.advance_ms,
            poll_interval_ms=timeouts.poll_interval_ms,
            row_settle_ms=timeouts.row_settle_ms,
        )

    def detail_url(self, number: str, detail_url: str | None = None) -> str:
        if detail_url:
            return self.config.url(detail_url)
        return self.config.url(f"{self.config.routes.detail}{number}")
