from __future__ import annotations

import logging
from typing import Callable, Protocol

from delphi_bot.errors import DeliveryError
from delphi_bot.storage.store import StateStore
from delphi_bot.storage.types import DeliveryRecord, Item, is_error_summary
from delphi_bot.telegram.render import render_item
from delphi_bot.utils import now_utc


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    channel: str

    async def publish(self, message: str) -> str: ...

    async def send_status(self, text: str) -> None: ...


class Publisher:
    """Delivers an item at most once per channel, recording every delivery."""

    def __init__(
        self,
        store: StateStore,
        notifier: Notifier,
        render: Callable[[Item], str] = render_item,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._render = render

    @property
    def channel(self) -> str:
        return self._notifier.channel

    async def maybe_publish(self, item: Item, resend: bool = False) -> bool:
        if is_error_summary(item.summary):
            logger.info("not publishing %s: no valid summary", item.key)
            return False

        if not resend and self._store.has_delivery(item.key, self.channel):
            logger.info("already delivered %s to %s", item.key, self.channel)
            return False

        try:
            message_id = await self._notifier.publish(self._render(item))
        except DeliveryError as e:
            logger.error("delivery of %s failed: %s", item.key, e)
            return False
        except Exception:
            logger.exception("notifier raised while delivering %s", item.key)
            return False

        # Store failures propagate so the caller never reports an unrecorded send.
        self._store.record_delivery(
            DeliveryRecord(
                item_key=item.key,
                channel=self.channel,
                delivered_at=now_utc(),
                message_id=message_id,
            )
        )
        logger.info("delivered %s to %s (message %s)", item.key, self.channel, message_id)
        return True
