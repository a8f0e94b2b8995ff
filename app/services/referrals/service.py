"""
Referral Service

Registration of principals with an optional referral code, and read access to
the referral discount ledger. Credits and debits themselves happen inside the
activation transaction (database._activate_in_transaction); nothing here
changes a balance.

Rules:
- referred_by is set only at registration, never overwritten
- unknown codes are ignored
- a reward fires at most once per relationship (referred_by is cleared on reward)
"""

import logging
from typing import Any, Dict, List, Optional

import database
from app.services import notifications
from app.services.subscriptions.exceptions import PrincipalNotFoundError
from app.services.subscriptions.service import call_ledger

logger = logging.getLogger(__name__)

REFERRAL_LINK_PREFIX = "ref_"


def normalize_referral_code(referral_code: Optional[str]) -> Optional[str]:
    """
    Canonical form of a code taken from a start payload or user input.

    Accepts "ref_ABC234", " abc234 ". Returns None for empty input.
    """
    if not referral_code:
        return None
    code = referral_code.strip()
    if code.lower().startswith(REFERRAL_LINK_PREFIX):
        code = code[len(REFERRAL_LINK_PREFIX):]
    code = code.strip().upper()
    return code or None


async def register_principal(
    chat_id: Optional[int],
    username: Optional[str] = None,
    referral_code: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create a principal with its own referral code.

    A valid foreign code is stored as referred_by and its owner is told someone
    joined. A new principal cannot refer itself: its code does not exist yet.

    Returns:
        The new principal row
    """
    code = normalize_referral_code(referral_code)
    referrer = None
    if code:
        referrer = await call_ledger(
            "register_principal", None, database.find_principal_by_referral_code(code)
        )
        if referrer is None:
            logger.info(f"REFERRAL_CODE_UNKNOWN code={code} chat={chat_id}")
            code = None

    principal = await call_ledger(
        "register_principal", None,
        database.create_principal(chat_id, username, referred_by=code),
    )

    if referrer is not None:
        logger.info(f"REFERRAL_REGISTERED referrer={referrer['id']} referred={principal['id']}")
        await notifications.notify_referral_joined(referrer, principal)
    return principal


async def get_discount_history(principal_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    """Credits (positive) and debits (negative), newest first"""
    principal = await database.get_principal(principal_id)
    if not principal:
        raise PrincipalNotFoundError(f"Principal {principal_id} not found")
    return await database.get_discount_transactions(principal_id, limit)
