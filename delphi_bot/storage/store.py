from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from delphi_bot.errors import PersistenceError
from delphi_bot.storage.jsonfile import backup_file, read_json, write_json_atomic
from delphi_bot.storage.types import DeliveryRecord, Item, is_error_summary
from delphi_bot.utils import now_utc, parse_datetime


logger = logging.getLogger(__name__)


LEDGER_FILE = "reports.json"
WATERMARK_FILE = "watermark.json"
DELIVERIES_FILE = "deliveries.json"
COOKIES_FILE = "cookies.json"
DIGEST_STATE_FILE = "digest_state.json"
BACKUPS_DIR = "backups"


def _sort_key(item: Item) -> tuple[datetime, datetime]:
    return (item.publication_date, item.discovered_at)


def _processed_ts(item: Item) -> datetime:
    return item.last_processed_at or item.discovered_at


def dedup_by_key(items: list[Item]) -> list[Item]:
    """Collapse entries sharing a key into the most recently processed one.

    Later entries win ties; the earliest discovery time is kept. The result is
    ordered newest publication first.
    """
    merged: dict[str, Item] = {}
    for item in items:
        prev = merged.get(item.key)
        if prev is None:
            merged[item.key] = item
            continue
        winner = item if _processed_ts(item) >= _processed_ts(prev) else prev
        discovered_at = min(prev.discovered_at, item.discovered_at)
        merged[item.key] = replace(winner, discovered_at=discovered_at)
    return sorted(merged.values(), key=_sort_key, reverse=True)


class StateStore:
    """JSON-backed ledger, watermark, delivery history and session cookies.

    Every write goes through ``write_json_atomic``; no other component touches
    these files.
    """

    def __init__(self, data_dir: Path, backup_keep: int = 20) -> None:
        self._dir = data_dir
        self._backup_keep = backup_keep
        self.ledger_path = data_dir / LEDGER_FILE
        self.watermark_path = data_dir / WATERMARK_FILE
        self.deliveries_path = data_dir / DELIVERIES_FILE
        self.cookies_path = data_dir / COOKIES_FILE
        self.digest_state_path = data_dir / DIGEST_STATE_FILE
        self.backups_dir = data_dir / BACKUPS_DIR

    def _write(self, path: Path, data) -> None:
        try:
            write_json_atomic(path, data)
        except (OSError, TypeError, ValueError) as e:
            logger.error("failed to write %s: %s", path, e)
            raise PersistenceError(f"failed to write {path}: {e}") from e

    def _read_list(self, path: Path) -> list | None:
        """Return the JSON list stored at ``path``, or None if unusable."""
        if not path.exists():
            logger.info("%s not found, creating an empty one", path)
            return None
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning("unreadable %s, resetting: %s", path, e)
            return None
        if not isinstance(data, list):
            logger.warning("%s does not contain a list, resetting", path)
            return None
        return data

    # Ledger

    def load(self) -> list[Item]:
        raw = self._read_list(self.ledger_path)
        if raw is None:
            try:
                if self.ledger_path.exists():
                    self.create_backup()
                self._write(self.ledger_path, [])
            except PersistenceError:
                pass
            return []

        items: list[Item] = []
        for entry in raw:
            if not isinstance(entry, dict):
                logger.warning("skipping non-object ledger entry: %r", entry)
                continue
            try:
                items.append(Item.from_dict(entry))
            except (TypeError, ValueError) as e:
                logger.warning("skipping malformed ledger entry: %s", e)
        return items

    def save(self, items: list[Item], backup: bool = False) -> list[Item]:
        ordered = dedup_by_key(items)
        if backup:
            self.create_backup()
        self._write(self.ledger_path, [replace(i, body="").to_dict() for i in ordered])
        logger.info("saved %s items to %s", len(ordered), self.ledger_path)
        return ordered

    def merge(self, items: list[Item]) -> list[Item]:
        existing = self.load()
        return self.save(existing + list(items), backup=True)

    def create_backup(self, path: Path | None = None) -> Path | None:
        path = path or self.ledger_path
        try:
            return backup_file(path, self.backups_dir, now_utc(), keep=self._backup_keep)
        except OSError as e:
            logger.error("failed to back up %s: %s", path, e)
            raise PersistenceError(f"backup failed: {e}") from e

    def get(self, key: str) -> Item | None:
        for item in self.load():
            if item.key == key:
                return item
        return None

    def known_keys(self) -> set[str]:
        return {i.key for i in self.load() if not is_error_summary(i.summary)}

    def failed(self, limit: int | None = None) -> list[Item]:
        """Ledger items whose last processing left an error summary, newest first."""
        items = [i for i in self.load() if is_error_summary(i.summary)]
        if limit is not None and limit > 0:
            items = items[:limit]
        return items

    def items_processed_since(self, since: datetime) -> list[Item]:
        return [
            i
            for i in self.load()
            if i.last_processed_at is not None and i.last_processed_at > since and not is_error_summary(i.summary)
        ]

    # Watermark

    def get_watermark(self) -> str | None:
        if not self.watermark_path.exists():
            return None
        try:
            data = read_json(self.watermark_path)
        except (OSError, ValueError) as e:
            logger.warning("unreadable watermark %s: %s", self.watermark_path, e)
            return None
        if not isinstance(data, dict):
            return None
        key = data.get("key")
        return str(key) if key else None

    def set_watermark(self, key: str) -> None:
        self._write(self.watermark_path, {"key": key, "updated_at": now_utc().isoformat()})
        logger.info("watermark advanced to %s", key)

    # Delivery history

    def load_deliveries(self) -> list[DeliveryRecord]:
        raw = self._read_list(self.deliveries_path)
        if raw is None:
            return []
        out: list[DeliveryRecord] = []
        for entry in raw:
            try:
                out.append(DeliveryRecord.from_dict(entry))
            except (AttributeError, ValueError) as e:
                logger.warning("skipping malformed delivery record: %s", e)
        return out

    def has_delivery(self, item_key: str, channel: str) -> bool:
        return any(r.item_key == item_key and r.channel == channel for r in self.load_deliveries())

    def record_delivery(self, record: DeliveryRecord) -> None:
        if self.deliveries_path.exists() and self._read_list(self.deliveries_path) is None:
            # Unreadable history is copied aside before it is replaced.
            self.create_backup(self.deliveries_path)
        records = [
            r
            for r in self.load_deliveries()
            if not (r.item_key == record.item_key and r.channel == record.channel)
        ]
        records.append(record)
        self._write(self.deliveries_path, [r.to_dict() for r in records])

    def undelivered(self, channel: str, limit: int | None = None) -> list[Item]:
        delivered = {r.item_key for r in self.load_deliveries() if r.channel == channel}
        pending = [i for i in self.load() if i.key not in delivered and not is_error_summary(i.summary)]
        if limit is not None and limit > 0:
            pending = pending[:limit]
        return pending

    # Session cookies

    def load_cookies(self) -> list[dict] | None:
        if not self.cookies_path.exists():
            logger.info("cookies file not found at %s", self.cookies_path)
            return None
        try:
            data = read_json(self.cookies_path)
        except (OSError, ValueError) as e:
            logger.warning("unreadable cookies file %s: %s", self.cookies_path, e)
            return None
        if not isinstance(data, list) or not data:
            return None
        return [c for c in data if isinstance(c, dict)] or None

    def save_cookies(self, cookies: list[dict]) -> None:
        self._write(self.cookies_path, cookies)
        logger.info("%s cookies saved to %s", len(cookies), self.cookies_path)

    # Digest state

    def get_last_digest_at(self) -> datetime | None:
        if not self.digest_state_path.exists():
            return None
        try:
            data = read_json(self.digest_state_path)
        except (OSError, ValueError) as e:
            logger.warning("unreadable digest state %s: %s", self.digest_state_path, e)
            return None
        if not isinstance(data, dict):
            return None
        return parse_datetime(data.get("last_digest_at"))

    def set_last_digest_at(self, ts: datetime) -> None:
        self._write(self.digest_state_path, {"last_digest_at": ts.isoformat()})
