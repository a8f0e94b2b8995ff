"""
Notification Dispatcher

Fire-and-forget Telegram messages for ledger events. Every function here runs
after the ledger transaction has committed and never raises: a failed send is
logged and dropped, the committed state stands.

Without a bot (no BOT_TOKEN) every send is skipped.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import config
from app.i18n import get_text
from app.utils.telegram_safe import safe_send_message

logger = logging.getLogger(__name__)

LANGUAGE = "en"

_bot = None


def set_bot(bot) -> None:
    """Register the aiogram Bot used for delivery (None disables delivery)"""
    global _bot
    _bot = bot


def get_bot():
    return _bot


# ====================================================================================
# Formatting
# ====================================================================================

def format_datetime(dt: Optional[datetime]) -> str:
    if dt is None:
        return "—"
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def describe_principal(principal: Optional[Dict[str, Any]]) -> str:
    """
    '@name (#id)' for operator messages.

    Accepts a principal row or any row owned by one (subscription, renewal
    request); an owned row's own id is never the principal's.
    """
    if not principal:
        return "unknown"
    if "principal_id" in principal:
        principal_id = principal["principal_id"]
    else:
        principal_id = principal.get("id")
    username = principal.get("username")
    if username:
        return f"@{username} (#{principal_id})"
    return f"#{principal_id}"


# ====================================================================================
# Transport
# ====================================================================================

async def notify_principal(chat_id: Optional[int], key: str, **kwargs) -> bool:
    """
    Send one localized message to a principal.

    Returns:
        True if Telegram accepted the message
    """
    if _bot is None:
        logger.debug(f"NOTIFY_SKIPPED_NO_BOT key={key}")
        return False
    if chat_id is None:
        logger.debug(f"NOTIFY_SKIPPED_NO_CHAT key={key}")
        return False
    try:
        text = get_text(LANGUAGE, key, currency=config.CURRENCY_SYMBOL, **kwargs)
    except (KeyError, IndexError, ValueError) as e:
        logger.error(f"NOTIFY_FORMAT_ERROR key={key} error={e}")
        return False
    sent = await safe_send_message(_bot, chat_id, text)
    if sent is not None:
        logger.info(f"NOTIFICATION_SENT key={key} chat={chat_id}")
        return True
    return False


async def notify_operator(key: str, **kwargs) -> bool:
    if config.OPERATOR_CHAT_ID is None:
        logger.debug(f"NOTIFY_SKIPPED_NO_OPERATOR key={key}")
        return False
    return await notify_principal(config.OPERATOR_CHAT_ID, key, **kwargs)


# ====================================================================================
# Ledger events
# ====================================================================================

async def notify_trial_granted(principal: Dict[str, Any], subscription: Dict[str, Any], days: int) -> None:
    await notify_principal(
        principal.get("chat_id"), "trial.granted",
        days=days, expires_at=format_datetime(subscription["expires_at"]),
    )


async def notify_activation(principal: Dict[str, Any], result: Dict[str, Any]) -> None:
    """Principal + operator messages, plus the referrer when a reward fired"""
    subscription = result["subscription"]
    split = result["split"]
    await notify_principal(
        principal.get("chat_id"), "subscription.activated",
        plan=subscription["tier"],
        expires_at=format_datetime(subscription["expires_at"]),
        price=split.final_price,
        consumed=split.consumed,
    )
    await notify_operator(
        "subscription.activated_operator",
        who=describe_principal(principal),
        plan=subscription["tier"],
        price=split.final_price,
        base_price=split.base_price,
        consumed=split.consumed,
        starts_at=format_datetime(subscription["starts_at"]),
        expires_at=format_datetime(subscription["expires_at"]),
    )
    reward = result.get("reward")
    if reward:
        await notify_principal(
            reward.get("referrer_chat_id"), "referral.reward", amount=reward["amount"],
        )


async def notify_gift(principal: Dict[str, Any], result: Dict[str, Any], days: int) -> None:
    expires_at = format_datetime(result["subscription"]["expires_at"])
    await notify_principal(principal.get("chat_id"), "subscription.gift", days=days, expires_at=expires_at)
    await notify_operator(
        "subscription.gift_operator", who=describe_principal(principal), days=days, expires_at=expires_at,
    )


async def notify_referral_joined(referrer: Dict[str, Any], principal: Dict[str, Any]) -> None:
    await notify_principal(referrer.get("chat_id"), "referral.joined", who=describe_principal(principal))


async def notify_renewal_requested(principal: Dict[str, Any], plan_key: str, price: int) -> None:
    await notify_principal(principal.get("chat_id"), "renewal.requested", plan=plan_key)
    await notify_operator(
        "renewal.requested_operator", who=describe_principal(principal), plan=plan_key, price=price,
    )


async def notify_renewal_rejected(principal: Dict[str, Any], plan_key: str) -> None:
    await notify_principal(principal.get("chat_id"), "renewal.rejected", plan=plan_key)


async def notify_expiry(row: Dict[str, Any]) -> None:
    """One principal message and one operator message for a swept subscription"""
    expires_at = format_datetime(row["expires_at"])
    await notify_principal(row.get("chat_id"), "expiry.expired", plan=row["tier"], expires_at=expires_at)
    await notify_operator(
        "expiry.expired_operator", who=describe_principal(row), plan=row["tier"], expires_at=expires_at,
    )
