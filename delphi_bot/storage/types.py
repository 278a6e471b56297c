from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from delphi_bot.utils import isoformat_or_none, parse_datetime


SUMMARY_ERROR_PREFIX = "[error]"
UNTITLED = "Untitled Report"


def is_error_summary(summary: str | None) -> bool:
    summary = (summary or "").strip()
    return not summary or summary.startswith(SUMMARY_ERROR_PREFIX)


def error_summary(reason: str) -> str:
    return f"{SUMMARY_ERROR_PREFIX} {reason}".strip()


@dataclass(frozen=True)
class ListingEntry:
    key: str
    title: str


@dataclass(frozen=True)
class FetchedContent:
    title: str
    body: str
    published_at: datetime | None


@dataclass(frozen=True)
class Item:
    key: str
    title: str
    body: str
    summary: str
    publication_date: datetime
    discovered_at: datetime
    last_processed_at: datetime | None
    content_hash: str | None = None

    @property
    def ok(self) -> bool:
        return not is_error_summary(self.summary)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "title": self.title,
            "body": self.body,
            "summary": self.summary,
            "publication_date": self.publication_date.isoformat(),
            "discovered_at": self.discovered_at.isoformat(),
            "last_processed_at": isoformat_or_none(self.last_processed_at),
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Item":
        key = str(data.get("key") or "").strip()
        if not key:
            raise ValueError("item without key")
        discovered_at = parse_datetime(data.get("discovered_at"))
        publication_date = parse_datetime(data.get("publication_date")) or discovered_at
        if discovered_at is None or publication_date is None:
            raise ValueError(f"item without timestamps: {key}")
        return cls(
            key=key,
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            summary=str(data.get("summary") or ""),
            publication_date=publication_date,
            discovered_at=discovered_at,
            last_processed_at=parse_datetime(data.get("last_processed_at")),
            content_hash=data.get("content_hash") or None,
        )


@dataclass(frozen=True)
class DeliveryRecord:
    item_key: str
    channel: str
    delivered_at: datetime
    message_id: str

    def to_dict(self) -> dict:
        return {
            "item_key": self.item_key,
            "channel": self.channel,
            "delivered_at": self.delivered_at.isoformat(),
            "message_id": self.message_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryRecord":
        delivered_at = parse_datetime(data.get("delivered_at"))
        if not data.get("item_key") or not data.get("channel") or delivered_at is None:
            raise ValueError("incomplete delivery record")
        return cls(
            item_key=str(data["item_key"]),
            channel=str(data["channel"]),
            delivered_at=delivered_at,
            message_id=str(data.get("message_id") or ""),
        )
