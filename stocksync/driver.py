"""Page driver capability interface and its Playwright implementation."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import re
from typing import Any, Protocol

from playwright.async_api import Error as PlaywrightError, Page, TimeoutError as PlaywrightTimeoutError

from stocksync.errors import ElementNotFound
from stocksync.logging_config import get_logger
from stocksync.records import RowSnapshot
from stocksync.waiting import sleep_ms

LOGGER = get_logger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")

_ROWS_SCRIPT = """
(rows, cellSelector) => rows.map((row) => {
  const cells = Array.from(row.querySelectorAll(cellSelector));
  const read = (el) => ((el.innerText || el.textContent || "").trim());
  return {
    text: read(row),
    cells: cells.map(read),
    cell_classes: cells.map((cell) => String(cell.className || "")),
    checked: cells.map((cell) => {
      const box = cell.querySelector("input[type='checkbox']");
      return box ? Boolean(box.checked) : null;
    }),
    links: Array.from(row.querySelectorAll("a[href]")).map((a) => a.href),
  };
})
"""

_READ_SCRIPT = """
(el) => {
  if (el instanceof HTMLInputElement || el instanceof HTMLTextAreaElement || el instanceof HTMLSelectElement) {
    return el.value;
  }
  return el.innerText || el.textContent || "";
}
"""


class PageDriver(Protocol):
    """Primitive page capabilities consumed by navigation and extraction."""

    @property
    def url(self) -> str: ...

    async def goto(self, url: str, *, wait_until: str | None, timeout_ms: int) -> None: ...

    async def wait_for_selector(self, selector: str, *, timeout_ms: int, state: str = "attached") -> bool: ...

    async def exists(self, selector: str) -> bool: ...

    async def is_visible(self, selector: str) -> bool: ...

    async def click(self, selector: str, *, timeout_ms: int | None = None) -> None: ...

    async def fill(self, selector: str, value: str, *, timeout_ms: int | None = None) -> None: ...

    async def text(self, selector: str, *, timeout_ms: int | None = None) -> str | None: ...

    async def extract_rows(self, selector: str, *, cell_selector: str = "td") -> list[RowSnapshot]: ...

    async def screenshot(self, name: str) -> Path | None: ...

    async def sleep(self, ms: int) -> None: ...


def snapshots_from_payload(payload: list[dict[str, Any]]) -> list[RowSnapshot]:
    """Convert the JSON payload of the row script into RowSnapshot objects."""

    snapshots: list[RowSnapshot] = []
    for index, raw in enumerate(payload or []):
        snapshots.append(
            RowSnapshot(
                index=index,
                text=str(raw.get("text") or "").strip(),
                cells=tuple(str(cell or "").strip() for cell in raw.get("cells") or ()),
                cell_classes=tuple(str(cls or "") for cls in raw.get("cell_classes") or ()),
                checked=tuple(raw.get("checked") or ()),
                links=tuple(str(href) for href in raw.get("links") or () if href),
            )
        )
    return snapshots


class PlaywrightDriver:
    """PageDriver over a Playwright page with screenshot-on-failure."""

    def __init__(
        self,
        page: Page,
        *,
        label: str,
        screenshot_dir: str | Path = "logs/screenshots",
        element_timeout_ms: int = 20_000,
        screenshot_on_failure: bool = True,
    ) -> None:
        self.page = page
        self.label = label
        self.screenshot_dir = Path(screenshot_dir)
        self.element_timeout_ms = element_timeout_ms
        self.screenshot_on_failure = screenshot_on_failure

    @property
    def url(self) -> str:
        return self.page.url

    async def goto(self, url: str, *, wait_until: str | None, timeout_ms: int) -> None:
        if wait_until is None:
            # Fire-and-forget: assign location and return without any load signal.
            await self.page.evaluate("(target) => { window.location.href = target; }", url)
            return
        await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)

    async def wait_for_selector(self, selector: str, *, timeout_ms: int, state: str = "attached") -> bool:
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms, state=state)
            return True
        except (PlaywrightTimeoutError, PlaywrightError):
            return False

    async def exists(self, selector: str) -> bool:
        try:
            return await self.page.locator(selector).count() > 0
        except PlaywrightError:
            return False

    async def is_visible(self, selector: str) -> bool:
        try:
            return await self.page.locator(selector).first.is_visible()
        except PlaywrightError:
            return False

    async def click(self, selector: str, *, timeout_ms: int | None = None) -> None:
        timeout = timeout_ms or self.element_timeout_ms
        try:
            await self.page.locator(selector).first.click(timeout=timeout)
        except (PlaywrightTimeoutError, PlaywrightError) as exc:
            await self._capture_failure("click")
            raise ElementNotFound(f"Unable to click {selector}", url=self.url, portal=self.label) from exc

    async def fill(self, selector: str, value: str, *, timeout_ms: int | None = None) -> None:
        timeout = timeout_ms or self.element_timeout_ms
        try:
            await self.page.locator(selector).first.fill(value, timeout=timeout)
        except (PlaywrightTimeoutError, PlaywrightError) as exc:
            await self._capture_failure("fill")
            raise ElementNotFound(f"Unable to fill {selector}", url=self.url, portal=self.label) from exc

    async def text(self, selector: str, *, timeout_ms: int | None = None) -> str | None:
        timeout = timeout_ms or 3_000
        try:
            locator = self.page.locator(selector).first
            if await locator.count() == 0:
                return None
            value = await locator.evaluate(_READ_SCRIPT, timeout=timeout)
        except (PlaywrightTimeoutError, PlaywrightError):
            return None
        if value is None:
            return None
        return str(value).strip()

    async def extract_rows(self, selector: str, *, cell_selector: str = "td") -> list[RowSnapshot]:
        try:
            payload = await self.page.eval_on_selector_all(selector, _ROWS_SCRIPT, cell_selector)
        except PlaywrightError as exc:
            LOGGER.warning("Row extraction failed | portal=%s selector=%s error=%s", self.label, selector, exc)
            return []
        return snapshots_from_payload(payload)

    async def screenshot(self, name: str) -> Path | None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        filename = _SAFE_NAME.sub("_", f"{self.label}-{name}-{stamp}") + ".png"
        path = self.screenshot_dir / filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self.page.screenshot(path=str(path), full_page=True)
        except (PlaywrightError, OSError) as exc:
            LOGGER.warning("Screenshot failed | portal=%s name=%s error=%s", self.label, name, exc)
            return None
        LOGGER.info("Screenshot captured | portal=%s path=%s", self.label, path)
        return path

    async def sleep(self, ms: int) -> None:
        await sleep_ms(ms)

    async def _capture_failure(self, action: str) -> None:
        if self.screenshot_on_failure:
            await self.screenshot(f"{action}-failed")
