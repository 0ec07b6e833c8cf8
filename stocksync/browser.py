"""Open one browser page per pipeline run and wrap it in a portal client."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Callable

from playwright.async_api import async_playwright

from stocksync.config import PortalConfig
from stocksync.driver import PageDriver, PlaywrightDriver
from stocksync.logging_config import get_logger
from stocksync.playwright_env import BrowserSettings, apply_stealth, close_browser, launch_browser
from stocksync.portals.common import PortalClient, PortalSession
from stocksync.portals.customerconnect import CustomerConnectClient
from stocksync.portals.routestar import RouteStarClient
from stocksync.records import Portal
from stocksync.waiting import CancelToken

LOGGER = get_logger(__name__)

ClientFactory = Callable[[CancelToken | None], AbstractAsyncContextManager[PortalClient]]


def build_client(portal: PortalConfig, driver: PageDriver, cancel: CancelToken | None = None) -> PortalClient:
    session = PortalSession(portal, driver, cancel=cancel)
    if portal.name is Portal.CUSTOMERCONNECT:
        return CustomerConnectClient(session)
    return RouteStarClient(session)


@asynccontextmanager
async def open_portal_client(
    portal: PortalConfig,
    *,
    screenshot_dir: str = "logs/screenshots",
    cancel: CancelToken | None = None,
    settings: BrowserSettings | None = None,
) -> AsyncIterator[PortalClient]:
    settings = settings or BrowserSettings.from_env()
    async with async_playwright() as playwright:
        apply_stealth(playwright, settings)
        browser, context = await launch_browser(playwright, settings)
        try:
            page = await context.new_page()
            page.set_default_navigation_timeout(portal.timeouts.navigation_ms)
            page.set_default_timeout(portal.timeouts.element_ms)
            driver = PlaywrightDriver(
                page,
                label=portal.name.value,
                screenshot_dir=screenshot_dir,
                element_timeout_ms=portal.timeouts.element_ms,
            )
            LOGGER.info("Browser session opened | portal=%s", portal.name.value)
            yield build_client(portal, driver, cancel)
        finally:
            await close_browser(browser, context)
            LOGGER.info("Browser session closed | portal=%s", portal.name.value)


def client_factory(portal: PortalConfig, *, screenshot_dir: str = "logs/screenshots") -> ClientFactory:
    """Bind *portal* so the pipeline only supplies the run's cancel token."""

    def _factory(cancel: CancelToken | None) -> AbstractAsyncContextManager[PortalClient]:
        return open_portal_client(portal, screenshot_dir=screenshot_dir, cancel=cancel)

    return _factory
