from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from delphi_bot.errors import ERROR_HTTP, ERROR_TIMEOUT, ERROR_UNKNOWN, FetchError
from delphi_bot.utils import now_utc


logger = logging.getLogger(__name__)


_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-features=IsolateOrigins,site-per-process",
]


class SubmitOutcome(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    NAVIGATED = "NAVIGATED"
    TIMED_OUT = "TIMED_OUT"


def _is_timeout(e: Exception) -> bool:
    return type(e).__name__ == "TimeoutError" or "Timeout" in str(e) or "timeout" in str(e)


class BrowserSession:
    """One Chromium page shared by login and scraping within a run."""

    def __init__(
        self,
        headless: bool,
        nav_timeout_seconds: int,
        user_agent: str,
    ) -> None:
        self._headless = headless
        self._nav_timeout_ms = int(nav_timeout_seconds * 1000)
        self._user_agent = user_agent
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def start(self) -> None:
        if self._page is not None:
            return
        try:
            from playwright.async_api import async_playwright
        except Exception as e:
            raise RuntimeError("Playwright not installed. Run: pip install playwright && playwright install chromium") from e

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self._headless, args=_LAUNCH_ARGS)
        self._context = await self._browser.new_context(user_agent=self._user_agent)
        self._page = await self._context.new_page()
        self._page.set_default_timeout(self._nav_timeout_ms)
        logger.info("browser started headless=%s", self._headless)

    async def aclose(self) -> None:
        """Close context, browser and driver; a failing step does not skip the rest."""
        context, browser, playwright = self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None
        for name, close in (
            ("context", context.close if context is not None else None),
            ("browser", browser.close if browser is not None else None),
            ("playwright", playwright.stop if playwright is not None else None),
        ):
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.exception("failed to close %s", name)

    def _require_page(self):
        if self._page is None:
            raise RuntimeError("browser not started")
        return self._page

    @property
    def url(self) -> str:
        return self._page.url if self._page is not None else ""

    async def goto(self, url: str) -> str:
        """Navigate and return the rendered HTML."""
        page = self._require_page()
        try:
            response = await page.goto(url, timeout=self._nav_timeout_ms, wait_until="networkidle")
            html = await page.content()
        except Exception as e:
            detail = str(e)[:240]
            if _is_timeout(e):
                raise FetchError(ERROR_TIMEOUT, detail) from e
            raise FetchError(ERROR_UNKNOWN, detail) from e
        if response is not None and response.status >= 400:
            raise FetchError(ERROR_HTTP, f"status {response.status} for {url}")
        return html

    async def content(self) -> str:
        return await self._require_page().content()

    async def cookies(self) -> list[dict]:
        if self._context is None:
            raise RuntimeError("browser not started")
        return list(await self._context.cookies())

    async def set_cookies(self, cookies: list[dict]) -> None:
        if self._context is None:
            raise RuntimeError("browser not started")
        await self._context.clear_cookies()
        if cookies:
            await self._context.add_cookies(cookies)

    async def fill_first(self, selectors: list[str], value: str) -> str | None:
        """Fill the first visible field matching one of ``selectors``."""
        page = self._require_page()
        for selector in selectors:
            locator = page.locator(selector)
            count = await locator.count()
            for i in range(count):
                field = locator.nth(i)
                if not await field.is_visible():
                    continue
                await field.fill(value)
                logger.debug("filled field %s", selector)
                return selector
        return None

    async def submit(self, selectors: list[str], texts: list[str], wait_timeout_seconds: int) -> SubmitOutcome:
        """Click the first control whose label matches ``texts`` and wait for navigation."""
        page = self._require_page()
        for selector in selectors:
            locator = page.locator(selector)
            count = await locator.count()
            for i in range(count):
                button = locator.nth(i)
                if not await button.is_visible():
                    continue
                label = ((await button.text_content()) or (await button.get_attribute("value")) or "").strip().lower()
                if not any(t in label for t in texts):
                    continue
                logger.info("submitting login via %s (%s)", selector, label)
                try:
                    async with page.expect_navigation(
                        wait_until="networkidle",
                        timeout=int(wait_timeout_seconds * 1000),
                    ):
                        await button.click()
                except Exception as e:
                    if _is_timeout(e):
                        logger.warning("no navigation after login submit: %s", str(e)[:240])
                        return SubmitOutcome.TIMED_OUT
                    raise
                return SubmitOutcome.NAVIGATED
        return SubmitOutcome.NOT_FOUND

    async def save_snapshot(self, directory: Path, name: str) -> None:
        """Best-effort screenshot and HTML dump for post-mortem debugging."""
        if self._page is None:
            return
        stamp = now_utc().strftime("%Y%m%dT%H%M%S")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            await self._page.screenshot(path=str(directory / f"{name}_{stamp}.png"), full_page=True)
            (directory / f"{name}_{stamp}.html").write_text(await self._page.content(), encoding="utf-8")
            logger.info("saved debug snapshot %s_%s in %s", name, stamp, directory)
        except Exception as e:
            logger.warning("failed to save debug snapshot %s: %s", name, e)
