from __future__ import annotations

import logging

from telegram import Bot, LinkPreviewOptions
from telegram.error import TelegramError

from delphi_bot.errors import DeliveryError


logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Delivers rendered messages to the target chat and status text to the alert chat."""

    def __init__(
        self,
        bot: Bot,
        target_chat_id: int,
        alert_chat_id: int = 0,
        parse_mode: str = "HTML",
    ) -> None:
        self._bot = bot
        self._target_chat_id = target_chat_id
        self._alert_chat_id = alert_chat_id
        self._parse_mode = parse_mode
        self._opened = False

    @classmethod
    def from_token(
        cls,
        token: str,
        target_chat_id: int,
        alert_chat_id: int = 0,
        parse_mode: str = "HTML",
    ) -> "TelegramNotifier":
        return cls(Bot(token), target_chat_id, alert_chat_id, parse_mode)

    @property
    def channel(self) -> str:
        return f"telegram:{self._target_chat_id}"

    async def open(self) -> None:
        if not self._opened:
            await self._bot.initialize()
            self._opened = True

    async def aclose(self) -> None:
        if self._opened:
            await self._bot.shutdown()
            self._opened = False

    async def publish(self, message: str) -> str:
        try:
            await self.open()
            sent = await self._bot.send_message(
                chat_id=self._target_chat_id,
                text=message,
                parse_mode=self._parse_mode,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as e:
            raise DeliveryError(f"telegram send to {self._target_chat_id} failed: {e}") from e
        return str(sent.message_id)

    async def send_status(self, text: str) -> None:
        """Operator-facing notice; failures are logged, never raised."""
        chat_id = self._alert_chat_id or self._target_chat_id
        if not chat_id:
            return
        try:
            await self.open()
            await self._bot.send_message(chat_id=chat_id, text=text)
        except TelegramError:
            logger.exception("failed to send status message")
