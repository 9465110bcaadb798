"""Tests for src.adapters.telegram_notifier — Telegram push adapter.

The telegram.Bot is mocked; only error translation is exercised.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import BadRequest, Forbidden, InvalidToken, TimedOut

from src.adapters.telegram_notifier import TelegramNotifier, format_push
from src.ports.notification_port import PushDeliveryError, PushFailure, PushMessage

MESSAGE = PushMessage(title="Task reminder", body="You have 2 task(s) today", data={"type": "scheduled_notification"})


def _notifier(side_effect=None):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=side_effect)
    return TelegramNotifier(bot), bot


class TestFormatPush:
    def test_title_then_body(self):
        assert format_push(MESSAGE) == "Task reminder\nYou have 2 task(s) today"


class TestSendPush:
    @pytest.mark.asyncio
    async def test_sends_to_chat(self):
        notifier, bot = _notifier()
        await notifier.send_push("12345", MESSAGE)
        bot.send_message.assert_awaited_once_with(chat_id="12345", text=format_push(MESSAGE))

    @pytest.mark.asyncio
    async def test_invalid_bot_token_is_provider_auth(self):
        notifier, _ = _notifier(InvalidToken())
        with pytest.raises(PushDeliveryError) as exc_info:
            await notifier.send_push("12345", MESSAGE)
        assert exc_info.value.failure is PushFailure.PROVIDER_AUTH

    @pytest.mark.asyncio
    async def test_blocked_bot_is_invalid_token(self):
        notifier, _ = _notifier(Forbidden("Forbidden: bot was blocked by the user"))
        with pytest.raises(PushDeliveryError) as exc_info:
            await notifier.send_push("12345", MESSAGE)
        assert exc_info.value.failure is PushFailure.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_unknown_chat_is_invalid_token(self):
        notifier, _ = _notifier(BadRequest("Chat not found"))
        with pytest.raises(PushDeliveryError) as exc_info:
            await notifier.send_push("12345", MESSAGE)
        assert exc_info.value.failure is PushFailure.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_other_bad_request(self):
        notifier, _ = _notifier(BadRequest("Message is too long"))
        with pytest.raises(PushDeliveryError) as exc_info:
            await notifier.send_push("12345", MESSAGE)
        assert exc_info.value.failure is PushFailure.OTHER

    @pytest.mark.asyncio
    async def test_network_error(self):
        notifier, _ = _notifier(TimedOut())
        with pytest.raises(PushDeliveryError) as exc_info:
            await notifier.send_push("12345", MESSAGE)
        assert exc_info.value.failure is PushFailure.OTHER
        assert isinstance(exc_info.value.__cause__, TimedOut)
