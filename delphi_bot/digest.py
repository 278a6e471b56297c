from __future__ import annotations

import logging
from datetime import datetime, timedelta

from delphi_bot.errors import DeliveryError
from delphi_bot.publisher import Notifier
from delphi_bot.storage.store import StateStore
from delphi_bot.telegram.render import render_digest
from delphi_bot.utils import now_utc


logger = logging.getLogger(__name__)


async def send_digest(
    store: StateStore,
    notifier: Notifier,
    lookback_hours: int,
    now: datetime | None = None,
) -> bool:
    """Send one roll-up message of reports processed since the previous digest.

    Without a previous digest the window is the last ``lookback_hours``. The
    digest timestamp only moves after a successful send.
    """
    now = now or now_utc()
    since = store.get_last_digest_at() or (now - timedelta(hours=lookback_hours))

    items = store.items_processed_since(since)
    message = render_digest(items, lookback_hours, now)
    if message is None:
        logger.info("no reports processed since %s, skipping digest", since.isoformat())
        return False

    try:
        message_id = await notifier.publish(message)
    except DeliveryError as e:
        logger.error("digest delivery failed: %s", e)
        return False

    store.set_last_digest_at(now)
    logger.info("digest with %s reports sent (message %s)", len(items), message_id)
    return True
