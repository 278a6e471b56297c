from __future__ import annotations

import logging
from typing import Protocol

from delphi_bot.errors import FetchError
from delphi_bot.retry import retry_async
from delphi_bot.storage.types import ListingEntry
from delphi_bot.utils import canonicalize_url


logger = logging.getLogger(__name__)


class ListingSource(Protocol):
    async def list_items(self, listing_url: str) -> list[ListingEntry]: ...


def cut_at_watermark(entries: list[ListingEntry], watermark_key: str | None) -> list[ListingEntry]:
    """Newest-first entries strictly before the watermark, deduplicated by key."""
    watermark = canonicalize_url(watermark_key) if watermark_key else None
    seen: set[str] = set()
    out: list[ListingEntry] = []
    for entry in entries:
        key = canonicalize_url(entry.key)
        if watermark is not None and key == watermark:
            break
        if key in seen:
            continue
        seen.add(key)
        out.append(ListingEntry(key=key, title=entry.title))
    return out


class FrontierResolver:
    def __init__(
        self,
        source: ListingSource,
        attempts: int = 3,
        delay_seconds: float = 5.0,
        first_run_limit: int = 0,
    ) -> None:
        self._source = source
        self._attempts = attempts
        self._delay_seconds = delay_seconds
        self._first_run_limit = first_run_limit

    async def resolve(
        self,
        source_url: str,
        watermark_key: str | None,
        limit: int | None = None,
    ) -> list[ListingEntry]:
        async def _scan() -> list[ListingEntry]:
            return await self._source.list_items(source_url)

        try:
            listing = await retry_async(
                _scan,
                attempts=self._attempts,
                delay_seconds=self._delay_seconds,
                retry_on=(FetchError,),
                name="listing scan",
            )
        except FetchError as e:
            logger.error("listing scan failed after %s attempts: %s", self._attempts, e)
            raise

        frontier = cut_at_watermark(listing, watermark_key)
        if limit is not None and limit > 0:
            frontier = frontier[:limit]
        elif watermark_key is None and self._first_run_limit > 0:
            frontier = frontier[: self._first_run_limit]

        logger.info(
            "frontier: %s new of %s listed (watermark=%s)",
            len(frontier),
            len(listing),
            watermark_key,
        )
        return frontier
