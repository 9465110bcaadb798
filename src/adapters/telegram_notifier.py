"""Telegram push adapter — implements NotificationPort.

Wraps a telegram.Bot instance. A user's push token is the Telegram chat id
their client registered; Telegram failures are translated into
PushDeliveryError so core modules never see telegram exceptions.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import BadRequest, Forbidden, InvalidToken, TelegramError

from src.ports.notification_port import PushDeliveryError, PushFailure, PushMessage

logger = logging.getLogger(__name__)


def format_push(message: PushMessage) -> str:
    return f"{message.title}\n{message.body}"


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_push(self, token: str, message: PushMessage) -> None:
        try:
            await self._bot.send_message(chat_id=token, text=format_push(message))
        except InvalidToken as exc:
            raise PushDeliveryError(f"Bot token rejected: {exc}", PushFailure.PROVIDER_AUTH) from exc
        except Forbidden as exc:
            raise PushDeliveryError(f"Recipient unreachable: {exc}", PushFailure.INVALID_TOKEN) from exc
        except BadRequest as exc:
            if "chat not found" in str(exc).lower():
                raise PushDeliveryError(f"Unknown chat: {exc}", PushFailure.INVALID_TOKEN) from exc
            raise PushDeliveryError(f"Push rejected: {exc}") from exc
        except TelegramError as exc:
            raise PushDeliveryError(f"Push failed: {exc}") from exc
        logger.debug("Push delivered to %s (%s)", token, message.data.get("type", "?"))
