"""Browser launch settings for portal sessions, read from ``STOCKSYNC_*`` variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from playwright.async_api import Browser, BrowserContext, Playwright
from playwright_stealth import Stealth

from stocksync.logging_config import get_logger

LOGGER = get_logger(__name__)

_FALSE_VALUES = {"0", "false", "no", "off"}
_VIEWPORT = {"width": 1440, "height": 960}
_CHROMIUM_ARGS = (
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-default-browser-check",
    f"--window-size={_VIEWPORT['width']},{_VIEWPORT['height']}",
)


def _flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _number(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        LOGGER.warning("Ignoring non-numeric browser setting | name=%s value=%s", name, raw)
        return default


@dataclass(frozen=True)
class BrowserSettings:
    """How a portal session's Chromium is launched."""

    headless: bool = True
    channel: str | None = None
    proxy: str | None = None
    slow_mo_ms: int = 0
    user_data_dir: Path | None = None
    user_agent: str | None = None
    ignore_https_errors: bool = False
    stealth: bool = False
    wait_multiplier: float = 1.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BrowserSettings":
        env = os.environ if environ is None else environ
        user_dir = (env.get("STOCKSYNC_USER_DATA_DIR") or "").strip()
        return cls(
            headless=_flag(env, "STOCKSYNC_HEADLESS", True),
            channel=(env.get("STOCKSYNC_BROWSER_CHANNEL") or "").strip() or None,
            proxy=(env.get("STOCKSYNC_PROXY") or "").strip() or None,
            slow_mo_ms=max(int(_number(env, "STOCKSYNC_SLOW_MO_MS", 0)), 0),
            user_data_dir=Path(user_dir).expanduser() if user_dir else None,
            user_agent=(env.get("STOCKSYNC_USER_AGENT") or "").strip() or None,
            ignore_https_errors=_flag(env, "STOCKSYNC_IGNORE_HTTPS_ERRORS", False),
            stealth=_flag(env, "STOCKSYNC_STEALTH", False),
            wait_multiplier=max(_number(env, "STOCKSYNC_WAIT_MULTIPLIER", 1.0), 0.0),
        )

    def launch_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``chromium.launch`` / ``launch_persistent_context``."""

        kwargs: dict[str, Any] = {"headless": self.headless, "args": list(_CHROMIUM_ARGS)}
        if self.channel:
            kwargs["channel"] = self.channel
        if self.proxy:
            server = self.proxy if "://" in self.proxy else f"http://{self.proxy}"
            kwargs["proxy"] = {"server": server}
        if self.slow_mo_ms:
            kwargs["slow_mo"] = self.slow_mo_ms
        return kwargs

    def context_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"viewport": dict(_VIEWPORT), "locale": "en-US"}
        if self.user_agent:
            kwargs["user_agent"] = self.user_agent
        if self.ignore_https_errors:
            kwargs["ignore_https_errors"] = True
        return kwargs


def apply_stealth(playwright: Playwright, settings: BrowserSettings) -> None:
    """Hook *playwright* with stealth evasions when enabled."""

    if not settings.stealth:
        return
    stealth = Stealth(
        navigator_languages_override=("en-US", "en"),
        navigator_user_agent_override=settings.user_agent,
    )
    try:
        stealth.hook_playwright_context(playwright)
    except Exception as exc:
        LOGGER.warning("Stealth hook failed; continuing without it | error=%s", exc)


async def launch_browser(
    playwright: Playwright, settings: BrowserSettings
) -> tuple[Browser | None, BrowserContext]:
    """Launch Chromium; a persistent profile yields a context without a separate browser."""

    if settings.user_data_dir is not None:
        settings.user_data_dir.mkdir(parents=True, exist_ok=True)
        context = await playwright.chromium.launch_persistent_context(
            str(settings.user_data_dir), **settings.launch_kwargs(), **settings.context_kwargs()
        )
        return context.browser, context

    browser = await playwright.chromium.launch(**settings.launch_kwargs())
    context = await browser.new_context(**settings.context_kwargs())
    return browser, context


async def close_browser(browser: Browser | None, context: BrowserContext | None) -> None:
    """Close the browser/context pair, logging instead of raising."""

    if context is not None:
        try:
            await context.close()
        except Exception as exc:
            LOGGER.debug("Context close failed | error=%s", exc)
    if browser is not None:
        try:
            await browser.close()
        except Exception as exc:
            LOGGER.debug("Browser close failed | error=%s", exc)


def apply_wait_policy(min_ms: int, max_ms: int, settings: BrowserSettings | None = None) -> tuple[int, int]:
    """Scale a human-like pause window by ``STOCKSYNC_WAIT_MULTIPLIER``."""

    multiplier = (settings or BrowserSettings.from_env()).wait_multiplier
    scaled_min = int(min_ms * multiplier)
    return scaled_min, max(int(max_ms * multiplier), scaled_min)
