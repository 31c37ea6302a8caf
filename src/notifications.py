"""Best-effort Telegram delivery for messages sent outside a chat update."""

import asyncio
import logging

from aiogram import Bot
from aiogram.exceptions import (
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramNetworkError,
    TelegramRetryAfter,
)

from billing import SubscriberId

logger = logging.getLogger(__name__)

SEND_MAX_RETRIES = 1


async def safe_send_message(bot: Bot, telegram_id: int, text: str, *, retries: int = SEND_MAX_RETRIES) -> bool:
    """Надіслати повідомлення; помилки лише логуються, назовні не передаються."""
    attempt = 0
    while True:
        try:
            await bot.send_message(chat_id=telegram_id, text=text)
            return True
        except TelegramRetryAfter as exc:
            attempt += 1
            if attempt > retries:
                logger.warning("Telegram rate limit for %s, giving up: retry_after=%s", telegram_id, exc.retry_after)
                return False
            logger.warning(
                "Telegram rate limit: retry_after=%s chat_id=%s attempt=%s",
                exc.retry_after,
                telegram_id,
                attempt,
            )
            await asyncio.sleep(exc.retry_after)
        except TelegramForbiddenError:
            logger.warning("Bot blocked by user %s", telegram_id)
            return False
        except TelegramBadRequest as exc:
            if "chat not found" in str(exc.message).lower():
                logger.warning("Chat not found for user %s", telegram_id)
            else:
                logger.warning("Telegram sendMessage to %s rejected: %s", telegram_id, exc.message)
            return False
        except (TelegramNetworkError, asyncio.TimeoutError) as exc:
            logger.warning("Network timeout sending to %s: %s", telegram_id, exc)
            return False
        except Exception:
            logger.warning("Unexpected error sending to %s", telegram_id, exc_info=True)
            return False


class TelegramNotifier:
    """Delivers billing notices through the bot."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_message(self, subscriber_id: SubscriberId, text: str) -> bool:
        return await safe_send_message(self.bot, subscriber_id.telegram_id, text)
