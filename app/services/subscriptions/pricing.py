"""
Pure ledger arithmetic: discount consumption, period stacking and the derived
paid summary.

No database access here; database.py runs these inside its transactions and
the services reuse them for previews and tests.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountSplit:
    """How a base price is split between discount credit and the billed amount"""
    base_price: int
    consumed: int
    final_price: int


@dataclass(frozen=True)
class PaidSummary:
    """Derived principal fields recomputed from active subscriptions"""
    is_paid: bool
    paid_until: Optional[datetime]
    referral_enabled: bool


def split_discount(discount_balance: int, base_price: int) -> DiscountSplit:
    """
    Consume available discount credit against a base price.

    consumed = min(balance, base_price), final = base_price - consumed.
    The caller debits exactly `consumed` from the balance, so the ledger and the
    billed price always move by the same amount.

    Negative inputs indicate a misconfigured plan table or a corrupted balance;
    they are clamped to zero and logged instead of propagating a negative price.
    """
    if base_price < 0:
        logger.warning(f"NEGATIVE_PRICE_GUARD base_price={base_price} clamped to 0")
        base_price = 0
    if discount_balance < 0:
        logger.warning(f"NEGATIVE_PRICE_GUARD discount_balance={discount_balance} treated as 0")
        discount_balance = 0

    consumed = min(discount_balance, base_price)
    final_price = base_price - consumed
    return DiscountSplit(base_price=base_price, consumed=consumed, final_price=final_price)


def calculate_period(
    now: datetime,
    current_expires_at: Optional[datetime],
    days: int
) -> Tuple[datetime, datetime]:
    """
    Stack a new period after any unexpired one.

    Returns:
        (starts_at, expires_at) where starts_at = max(now, current_expires_at)
    """
    if days <= 0:
        raise ValueError(f"Subscription period must be positive, got {days} days")
    starts_at = now
    if current_expires_at is not None and current_expires_at > now:
        starts_at = current_expires_at
    return starts_at, starts_at + timedelta(days=days)


def is_subscription_active(subscription: Optional[Dict[str, Any]], now: datetime) -> bool:
    """Active means status 'active' and not yet past expires_at"""
    if not subscription:
        return False
    if subscription.get("status") != "active":
        return False
    expires_at = subscription.get("expires_at")
    if expires_at is None:
        return False
    return expires_at > now


def derive_paid_summary(subscriptions: Iterable[Dict[str, Any]], now: datetime) -> PaidSummary:
    """
    Recompute is_paid / paid_until / referral_enabled from a principal's rows.

    Only rows that are active at `now` count; paid_until is the latest expiry
    among them. referral_enabled requires an active row activated with
    referral enabled (trial rows never are).
    """
    paid_until = None
    referral_enabled = False
    for sub in subscriptions:
        if not is_subscription_active(sub, now):
            continue
        if paid_until is None or sub["expires_at"] > paid_until:
            paid_until = sub["expires_at"]
        if sub.get("referral_enabled"):
            referral_enabled = True
    return PaidSummary(
        is_paid=paid_until is not None,
        paid_until=paid_until,
        referral_enabled=referral_enabled,
    )
