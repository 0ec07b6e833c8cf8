"""Resilient navigation: fallback completion signals, stabilization and content polling."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Sequence

from stocksync.config import LoginSelectors, RetryPolicy, Timeouts
from stocksync.driver import PageDriver
from stocksync.errors import ContentTimeout, ElementNotFound, LoginError, NavigationTimeout, SessionExpired
from stocksync.logging_config import get_logger
from stocksync.waiting import CancelToken, jitter_wait, poll_until, retrying

LOGGER = get_logger(__name__)

DEFAULT_SIGNALS: tuple[str, ...] = ("load", "domcontentloaded", "commit")
LENIENT_SIGNALS = frozenset({"commit"})
LAST_RESORT = "none"


@dataclass(frozen=True)
class NavigationHints:
    """Per-call overrides for NavigationStrategy.navigate()."""

    signals: tuple[str, ...] | None = None
    content_selector: str | None = None
    content_timeout_ms: int | None = None
    expect_login: bool = False
    settle_ms: int | None = None


@dataclass(frozen=True)
class NavigationResult:
    url: str
    final_url: str
    signal: str
    content_found: bool = False


class NavigationStrategy:
    """Navigate with decreasing-strictness completion signals.

    Each signal in ``signals`` gets its own navigation timeout; the first one
    that completes wins. When all of them fail a last-resort navigation is
    issued without waiting for any signal, followed by a fixed grace period.
    Lenient signals settle for ``commit_settle_ms``, strict ones for
    ``strict_settle_ms``. The final URL is checked against the portal login
    pattern so a dead session fails fast with ``SessionExpired``.
    """

    def __init__(
        self,
        driver: PageDriver,
        *,
        portal: str,
        timeouts: Timeouts,
        login_url_pattern: str | re.Pattern[str],
        signals: Sequence[str] = DEFAULT_SIGNALS,
        cancel: CancelToken | None = None,
    ) -> None:
        self.driver = driver
        self.portal = portal
        self.timeouts = timeouts
        self.login_pattern = (
            login_url_pattern
            if isinstance(login_url_pattern, re.Pattern)
            else re.compile(login_url_pattern, re.I)
        )
        self.signals = tuple(signals)
        self.cancel = cancel

    def is_login_url(self, url: str | None) -> bool:
        return bool(url) and bool(self.login_pattern.search(url or ""))

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def _settle_ms(self, signal: str) -> int:
        if signal == LAST_RESORT:
            return self.timeouts.grace_ms
        if signal in LENIENT_SIGNALS:
            return self.timeouts.commit_settle_ms
        return self.timeouts.strict_settle_ms

    async def navigate(self, url: str, hints: NavigationHints | None = None) -> NavigationResult:
        hints = hints or NavigationHints()
        signals = hints.signals or self.signals
        self._check_cancel()

        winning: str | None = None
        last_error: Exception | None = None
        for attempt, signal in enumerate(signals, start=1):
            LOGGER.info(
                "Navigating | portal=%s url=%s signal=%s attempt=%s/%s",
                self.portal,
                url,
                signal,
                attempt,
                len(signals),
            )
            try:
                await self.driver.goto(url, wait_until=signal, timeout_ms=self.timeouts.navigation_ms)
            except Exception as exc:
                last_error = exc
                LOGGER.warning(
                    "Navigation signal failed | portal=%s url=%s signal=%s error=%s",
                    self.portal,
                    url,
                    signal,
                    str(exc).splitlines()[0] if str(exc) else type(exc).__name__,
                )
                self._check_cancel()
                continue
            winning = signal
            break

        if winning is None:
            LOGGER.warning(
                "All navigation signals failed; issuing last-resort navigation | portal=%s url=%s grace_ms=%s",
                self.portal,
                url,
                self.timeouts.grace_ms,
            )
            try:
                await self.driver.goto(url, wait_until=None, timeout_ms=self.timeouts.navigation_ms)
            except Exception as exc:
                await self.driver.screenshot("navigation-failed")
                raise NavigationTimeout(
                    f"Navigation failed after {len(signals)} signals and last resort",
                    url=url,
                    portal=self.portal,
                    signal=LAST_RESORT,
                    attempt=len(signals) + 1,
                ) from (last_error or exc)
            winning = LAST_RESORT

        settle_ms = hints.settle_ms if hints.settle_ms is not None else self._settle_ms(winning)
        await self.driver.sleep(settle_ms)

        final_url = self.driver.url
        if final_url and final_url != url:
            LOGGER.info("Navigation redirected | portal=%s from=%s to=%s", self.portal, url, final_url)
        if not hints.expect_login and self.is_login_url(final_url):
            raise SessionExpired(url=url, portal=self.portal, signal=winning)

        content_found = False
        if hints.content_selector:
            await self.wait_for_content(
                hints.content_selector,
                timeout_ms=hints.content_timeout_ms,
                expect_login=hints.expect_login,
                attempted_url=url,
            )
            content_found = True

        LOGGER.info(
            "Navigation complete | portal=%s url=%s signal=%s",
            self.portal,
            final_url,
            winning,
        )
        return NavigationResult(url=url, final_url=final_url, signal=winning, content_found=content_found)

    async def wait_for_content(
        self,
        selector: str,
        *,
        timeout_ms: int | None = None,
        interval_ms: int | None = None,
        snapshot_every_ms: int | None = None,
        expect_login: bool = False,
        attempted_url: str | None = None,
    ) -> bool:
        """Poll for a client-rendered container; raise ContentTimeout if it never shows."""

        timeout = timeout_ms if timeout_ms is not None else self.timeouts.content_ms
        interval = interval_ms if interval_ms is not None else self.timeouts.poll_interval_ms
        snapshot_every = (
            snapshot_every_ms if snapshot_every_ms is not None else self.timeouts.snapshot_every_ms
        )
        url = attempted_url or self.driver.url
        last_snapshot = 0

        async def _present() -> bool:
            if not expect_login and self.is_login_url(self.driver.url):
                raise SessionExpired(url=url, portal=self.portal, signal="content-poll")
            return await self.driver.exists(selector)

        async def _tick(tick: int, elapsed_ms: int) -> None:
            nonlocal last_snapshot
            LOGGER.debug(
                "Waiting for content | portal=%s selector=%s elapsed_ms=%s",
                self.portal,
                selector,
                elapsed_ms,
            )
            if snapshot_every and elapsed_ms - last_snapshot >= snapshot_every:
                last_snapshot = elapsed_ms
                LOGGER.info(
                    "Content still pending | portal=%s selector=%s elapsed_ms=%s",
                    self.portal,
                    selector,
                    elapsed_ms,
                )
                await self.driver.screenshot(f"content-wait-{elapsed_ms // 1000}s")

        found = await poll_until(
            _present,
            timeout_ms=timeout,
            interval_ms=interval,
            sleep=self.driver.sleep,
            on_tick=_tick,
            cancel=self.cancel,
        )
        if not found:
            await self.driver.screenshot("content-timeout")
            raise ContentTimeout(
                f"Content {selector!r} not rendered after {timeout} ms",
                url=url,
                portal=self.portal,
                signal="content-poll",
            )
        return True

    async def dismiss_modals(
        self,
        modal_selectors: Sequence[str],
        close_selectors: Sequence[str],
        *,
        max_rounds: int = 3,
    ) -> int:
        """Close transient dialogs; returns the number of dialogs dismissed."""

        dismissed = 0
        for _ in range(max_rounds):
            visible = False
            for modal in modal_selectors:
                if await self.driver.is_visible(modal):
                    visible = True
                    break
            if not visible:
                break

            closed = False
            for close in close_selectors:
                if not await self.driver.is_visible(close):
                    continue
                try:
                    await self.driver.click(close, timeout_ms=3_000)
                except ElementNotFound:
                    continue
                dismissed += 1
                closed = True
                LOGGER.info("Dismissed modal | portal=%s via=%s", self.portal, close)
                await self.driver.sleep(500)
                break
            if not closed:
                LOGGER.warning("Modal visible but no close control matched | portal=%s", self.portal)
                break
        return dismissed


class LoginFlow:
    """Fill and submit a portal login form, classifying the outcome."""

    def __init__(
        self,
        navigator: NavigationStrategy,
        selectors: LoginSelectors,
        *,
        retry_policy: RetryPolicy,
        modal_selectors: Sequence[str] = (),
        modal_close: Sequence[str] = (),
    ) -> None:
        self.navigator = navigator
        self.driver = navigator.driver
        self.selectors = selectors
        self.retry_policy = retry_policy
        self.modal_selectors = tuple(modal_selectors)
        self.modal_close = tuple(modal_close)

    async def login(self, login_url: str, username: str, password: str) -> None:
        portal = self.navigator.portal
        if not username or not password:
            raise LoginError("Portal credentials are not configured", portal=portal, url=login_url)

        LOGGER.info("Attempting login | portal=%s username=%s", portal, username)
        async for attempt in retrying(self.retry_policy, logger=LOGGER):
            with attempt:
                await self.navigator.navigate(
                    login_url,
                    NavigationHints(
                        expect_login=True,
                        content_selector=self.selectors.username,
                        content_timeout_ms=self.navigator.timeouts.element_ms,
                    ),
                )

        await self.navigator.dismiss_modals(self.modal_selectors, self.modal_close)
        try:
            await self.driver.fill(self.selectors.username, username)
            await self.driver.fill(self.selectors.password, password)
            await jitter_wait(sleep=self.driver.sleep)
            await self.driver.click(self.selectors.submit)
        except ElementNotFound as exc:
            raise LoginError("Login form not usable", portal=portal, url=login_url) from exc

        await self.driver.sleep(self.navigator.timeouts.strict_settle_ms)
        await self._verify(login_url)
        LOGGER.info("Login successful | portal=%s", portal)

    async def _verify(self, login_url: str) -> None:
        portal = self.navigator.portal
        timeouts = self.navigator.timeouts

        if self.selectors.logged_in_indicator:
            found = await self.driver.wait_for_selector(
                self.selectors.logged_in_indicator,
                timeout_ms=timeouts.element_ms,
                state="attached",
            )
            if found:
                return

        if await self.driver.is_visible(self.selectors.error_message):
            message = await self.driver.text(self.selectors.error_message)
            await self.driver.screenshot("login-rejected")
            raise LoginError(
                f"Portal rejected login: {message or 'no message'}",
                portal=portal,
                url=login_url,
            )

        still_on_form = await self.driver.exists(self.selectors.username)
        if still_on_form and self.navigator.is_login_url(self.driver.url):
            await self.driver.screenshot("login-failed")
            raise LoginError("Login appears to have failed - still on login page", portal=portal, url=login_url)
