from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from delphi_bot.storage.jsonfile import read_json, write_json_atomic


logger = logging.getLogger(__name__)


@dataclass
class RuntimeStats:
    last_run_started_ts: float | None = None
    last_run_finished_ts: float | None = None
    last_run_status: str | None = None
    last_run_stage: str | None = None
    last_error: str | None = None
    watermark: str | None = None
    page_next_allowed_in_seconds: float | None = None
    consecutive_run_failures: int = 0
    consecutive_login_failures: int = 0
    consecutive_ai_failures: int = 0
    last_counts: dict[str, int] = field(default_factory=dict)


class Metrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry

        self.runs_total = Counter("runs_total", "Finished runs", ["status"], registry=r)
        self.run_duration_seconds = Histogram(
            "run_duration_seconds",
            "Run duration",
            buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 3600),
            registry=r,
        )
        self.logins_total = Counter("logins_total", "Session acquisitions", ["result"], registry=r)
        self.items_discovered_total = Counter("items_discovered_total", "Frontier items", registry=r)
        self.items_processed_total = Counter("items_processed_total", "Processed items", ["result"], registry=r)
        self.item_process_seconds = Histogram(
            "item_process_seconds", "Fetch and summarize time per item", buckets=(0.5, 1, 2, 5, 10, 20, 60, 120, 240), registry=r
        )
        self.notifications_sent_total = Counter("notifications_sent_total", "Sent notifications", registry=r)

        self.consecutive_failures = Gauge("consecutive_failures", "Consecutive failures", ["type"], registry=r)

    def start_server(self, bind: str, port: int) -> None:
        start_http_server(port, addr=bind, registry=self.registry)
        logger.info("metrics server started at %s:%s", bind, port)

    def set_consecutive(self, typ: str, value: int) -> None:
        self.consecutive_failures.labels(type=typ).set(value)


def stats_to_dict(stats: RuntimeStats) -> dict[str, Any]:
    return asdict(stats)


def write_status_json(path: Path, data: dict[str, Any]) -> None:
    write_json_atomic(path, data)


def read_status_json(path: Path) -> dict[str, Any] | None:
    try:
        data = read_json(path)
    except FileNotFoundError:
        return None
    except ValueError as e:
        logger.warning("unreadable status file %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None
