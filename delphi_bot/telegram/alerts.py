from __future__ import annotations

import logging
from typing import Protocol


logger = logging.getLogger(__name__)


class StatusSink(Protocol):
    async def send_status(self, text: str) -> None: ...


async def maybe_send_consecutive_failure_alert(
    sink: StatusSink,
    name: str,
    count: int,
    threshold: int,
) -> bool:
    if threshold <= 0:
        return False
    if count != threshold:
        # only alert on the edge to avoid spamming
        return False

    text = (
        f"Alert: {name} failed {count} times in a row (threshold {threshold}). "
        "Check the logs, the cached session cookies and the AI service."
    )
    logger.warning("sending consecutive failure alert for %s (%s)", name, count)
    await sink.send_status(text)
    return True
