"""
Best-effort wrapper around bot.send_message.

Notification delivery must never undo or block a committed ledger change, so
every Telegram failure is logged and converted into a None return.
"""
import logging
from typing import Optional

from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError, TelegramRetryAfter

logger = logging.getLogger(__name__)


async def safe_send_message(bot, chat_id: Optional[int], text: str, **kwargs):
    """
    Send a message, swallowing delivery errors.

    Returns:
        Message on success, None when there is no bot/chat or delivery failed.
    """
    if bot is None or chat_id is None:
        logger.debug(f"SAFE_SEND_SKIP_NO_TARGET chat={chat_id}")
        return None

    try:
        return await bot.send_message(chat_id, text, **kwargs)

    except TelegramBadRequest as e:
        if "chat not found" in str(e).lower():
            logger.warning(f"SAFE_SEND_SKIP_CHAT_NOT_FOUND chat={chat_id}")
            return None
        logger.exception(f"SAFE_SEND_BAD_REQUEST chat={chat_id}")
        return None

    except TelegramForbiddenError:
        logger.warning(f"SAFE_SEND_FORBIDDEN chat={chat_id}")
        return None

    except TelegramRetryAfter as e:
        logger.warning(f"SAFE_SEND_RATE_LIMITED chat={chat_id} retry_after={e.retry_after}")
        return None

    except Exception:
        logger.exception(f"SAFE_SEND_UNKNOWN_ERROR chat={chat_id}")
        return None
