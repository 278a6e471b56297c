from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Protocol

from delphi_bot.errors import FetchError
from delphi_bot.storage.types import (
    UNTITLED,
    FetchedContent,
    Item,
    ListingEntry,
    error_summary,
    is_error_summary,
)
from delphi_bot.utils import now_utc, sha256_hex, title_from_url, truncate


logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    async def fetch_item(self, key: str) -> FetchedContent: ...


class Summarizer(Protocol):
    async def summarize(self, title: str, body: str) -> str: ...


@dataclass(frozen=True)
class ProcessResult:
    item: Item
    ok: bool


def _fallback_title(entry: ListingEntry) -> str:
    return entry.title or title_from_url(entry.key) or UNTITLED


class ItemProcessor:
    """Turns a frontier entry into a persisted-ready Item.

    Never raises for fetch or summarizer failures: those produce an Item whose
    summary carries the error prefix so the key stays eligible for a retry.

    When ``previous`` holds a good summary of the same text (matching
    ``content_hash``), that summary is reused instead of calling the summarizer.
    """

    def __init__(self, source: ContentSource, summarizer: Summarizer) -> None:
        self._source = source
        self._summarizer = summarizer

    def failure(self, entry: ListingEntry, reason: str) -> Item:
        now = now_utc()
        return Item(
            key=entry.key,
            title=_fallback_title(entry),
            body="",
            summary=error_summary(truncate(reason, 300)),
            publication_date=now,
            discovered_at=now,
            last_processed_at=now,
        )

    async def process(self, entry: ListingEntry, previous: Item | None = None) -> ProcessResult:
        try:
            content = await self._source.fetch_item(entry.key)
        except FetchError as e:
            logger.warning("fetch failed for %s: %s", entry.key, e)
            return ProcessResult(self.failure(entry, f"fetch failed: {e}"), ok=False)

        now = now_utc()
        title = content.title or _fallback_title(entry)
        base = Item(
            key=entry.key,
            title=title,
            body=content.body,
            summary="",
            publication_date=content.published_at or now,
            discovered_at=now,
            last_processed_at=now,
            content_hash=sha256_hex(content.body) if content.body else None,
        )

        if not content.body.strip():
            logger.warning("no content extracted for %s", entry.key)
            return ProcessResult(replace(base, body="", summary=error_summary("no content extracted")), ok=False)

        if previous is not None and previous.ok and previous.content_hash == base.content_hash:
            logger.info("content unchanged for %s, keeping stored summary", entry.key)
            return ProcessResult(replace(base, body="", summary=previous.summary), ok=True)

        try:
            summary = await self._summarizer.summarize(title, content.body)
        except Exception as e:
            logger.exception("summarizer raised for %s", entry.key)
            summary = error_summary(f"summarization failed: {e}")

        summary = (summary or "").strip()
        if not summary:
            summary = error_summary("empty summary")

        ok = not is_error_summary(summary)
        if ok:
            logger.info("processed %s (%s chars -> %s chars)", entry.key, len(content.body), len(summary))
        else:
            logger.warning("summary failed for %s: %s", entry.key, summary)
        return ProcessResult(replace(base, body="", summary=summary), ok=ok)
