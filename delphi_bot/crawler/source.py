from __future__ import annotations

import asyncio
import logging
import time

from delphi_bot.crawler.browser import BrowserSession
from delphi_bot.crawler.parser import detect_login_required, extract_article, extract_listing
from delphi_bot.crawler.selectors import Selectors
from delphi_bot.errors import ERROR_PARSE_FAIL, AuthRequiredError, FetchError
from delphi_bot.ratelimit import PageThrottle
from delphi_bot.storage.types import FetchedContent, ListingEntry


logger = logging.getLogger(__name__)


class DelphiSource:
    """Reads the members-only report listing and individual reports."""

    def __init__(
        self,
        browser: BrowserSession,
        selectors: Selectors,
        throttle: PageThrottle,
        settle_seconds: float = 0.0,
    ) -> None:
        self._browser = browser
        self._selectors = selectors
        self._throttle = throttle
        self._settle_seconds = settle_seconds

    async def _load(self, url: str, check_text: bool) -> str:
        await self._throttle.wait()
        html = await self._browser.goto(url)
        if self._settle_seconds > 0:
            # Report bodies are rendered client-side after the network settles.
            await asyncio.sleep(self._settle_seconds)
            html = await self._browser.content()
        if detect_login_required(html, self._browser.url, self._selectors, check_text=check_text):
            raise AuthRequiredError(f"login required at {self._browser.url or url}")
        return html

    async def list_items(self, listing_url: str) -> list[ListingEntry]:
        started = time.perf_counter()
        html = await self._load(listing_url, check_text=True)
        entries = extract_listing(html, self._browser.url or listing_url, self._selectors.listing)
        if not entries:
            raise FetchError(ERROR_PARSE_FAIL, f"no report links found at {listing_url}")
        logger.info(
            "listing %s: %s reports in %.1fs",
            listing_url,
            len(entries),
            time.perf_counter() - started,
        )
        return entries

    async def fetch_item(self, key: str) -> FetchedContent:
        html = await self._load(key, check_text=False)
        content = extract_article(html, self._selectors.article)
        logger.info("fetched %s: %s chars", key, len(content.body))
        return content
