"""Telegram delivery for autonomous trading events."""

import logging
from typing import Any

from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(self, bot, storage: Any) -> None:
        self.bot = bot
        self.storage = storage

    async def send(self, user_id: int, message: str) -> bool:
        """Deliver ``message`` to the user's chat. Never raises; returns False when nothing was sent."""
        try:
            chat_id = self.storage.get_notification_chat_id(user_id)
        except Exception as exc:
            logger.warning("NOTIFY_FAIL user_id=%s lookup_error=%s", user_id, exc)
            return False
        if not chat_id:
            logger.debug("NOTIFY_SKIP user_id=%s reason=no_chat_or_muted", user_id)
            return False
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                parse_mode="HTML",
                disable_web_page_preview=True,
            )
        except TelegramError as exc:
            logger.warning("NOTIFY_FAIL user_id=%s chat_id=%s error=%s", user_id, chat_id, exc)
            return False
        except Exception:
            logger.exception("NOTIFY_FAIL user_id=%s chat_id=%s unexpected error", user_id, chat_id)
            return False
        return True
