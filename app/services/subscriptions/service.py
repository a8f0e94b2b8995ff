"""
Subscription Service Layer

Activation (with stacking and discount consumption), gift grants, price
preview and read models. Ledger writes are delegated to database.py, which
runs each one in a single locked transaction; this layer resolves plans,
converts storage failures into LedgerWriteError and dispatches notifications
once the transaction has committed.

No aiogram imports here: delivery goes through app.services.notifications.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional

import database
from app.services import notifications
from app.services.subscriptions.exceptions import (
    InvalidPlanError,
    LedgerWriteError,
    PrincipalNotFoundError,
    SubscriptionServiceError,
)
from app.services.subscriptions.plans import PlanTable, get_plan_table
from app.services.subscriptions.pricing import DiscountSplit, PaidSummary, split_discount

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class ActivationOutcome:
    """Committed activation: the new row, how it was priced, the new summary"""
    subscription: Dict[str, Any]
    split: DiscountSplit
    summary: PaidSummary
    reward: Optional[Dict[str, Any]] = None
    superseded: List[int] = field(default_factory=list)
    request: Optional[Dict[str, Any]] = None

    @classmethod
    def from_ledger(cls, result: Dict[str, Any]) -> "ActivationOutcome":
        return cls(
            subscription=result["subscription"],
            split=result["split"],
            summary=result["summary"],
            reward=result.get("reward"),
            superseded=list(result.get("superseded") or []),
            request=result.get("request"),
        )


@dataclass
class PricePreview:
    base_price: int
    consumed: int
    final_price: int
    discount_balance: int


# ====================================================================================
# Helpers
# ====================================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_plan_table(plan_table: Optional[PlanTable] = None) -> PlanTable:
    return plan_table if plan_table is not None else get_plan_table()


async def call_ledger(operation: str, principal_id: Optional[int], awaitable: Awaitable[Any]) -> Any:
    """
    Await a database ledger call, mapping storage failures to LedgerWriteError.

    Domain errors raised inside the transaction pass through unchanged; the
    transaction has already been rolled back by the time they arrive here.
    """
    try:
        return await awaitable
    except SubscriptionServiceError:
        raise
    except Exception as e:
        logger.error(
            f"LEDGER_WRITE_FAILED operation={operation} principal={principal_id} "
            f"error={type(e).__name__}: {e}"
        )
        raise LedgerWriteError(f"{operation} failed: {e}") from e


# ====================================================================================
# Activation
# ====================================================================================

async def activate(
    principal_id: int,
    plan_key: str,
    enable_referral: bool = True,
    plan_table: Optional[PlanTable] = None,
    now: Optional[datetime] = None
) -> ActivationOutcome:
    """
    Activate a paid plan.

    The new period starts at the later of now and the current paid-until.
    Available discount credit is consumed first; when the principal was
    referred and the billed price is positive, the referrer is credited the
    plan's referral bonus (once per relationship).

    Not idempotent: each call creates a new period.

    Raises:
        InvalidPlanError: Unknown plan key
        PrincipalNotFoundError: Unknown principal
        LedgerWriteError: Transaction failed and was rolled back
    """
    plan = resolve_plan_table(plan_table).get(plan_key)
    now = now or utc_now()

    result = await call_ledger(
        "activate", principal_id,
        database.activate_subscription_atomic(principal_id, plan, enable_referral, now),
    )
    await notifications.notify_activation(result["principal"], result)
    return ActivationOutcome.from_ledger(result)


async def grant_gift(
    principal_id: int,
    days: int,
    enable_referral: bool = True,
    now: Optional[datetime] = None
) -> ActivationOutcome:
    """
    Operator-issued free period. Stacks like a paid one; no discount, no reward.

    Raises:
        InvalidPlanError: days is not a positive integer
        PrincipalNotFoundError: Unknown principal
    """
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise InvalidPlanError(f"Gift duration must be a positive number of days, got {days!r}")
    now = now or utc_now()

    result = await call_ledger(
        "grant_gift", principal_id,
        database.grant_gift_atomic(principal_id, days, enable_referral, now),
    )
    await notifications.notify_gift(result["principal"], result, days)
    return ActivationOutcome.from_ledger(result)


async def preview_price(
    principal_id: int,
    plan_key: str,
    plan_table: Optional[PlanTable] = None
) -> PricePreview:
    """What activating plan_key would cost right now. Read-only."""
    plan = resolve_plan_table(plan_table).get(plan_key)
    principal = await database.get_principal(principal_id)
    if not principal:
        raise PrincipalNotFoundError(f"Principal {principal_id} not found")

    balance = principal.get("discount_balance") or 0
    split = split_discount(balance, plan.price)
    return PricePreview(
        base_price=split.base_price,
        consumed=split.consumed,
        final_price=split.final_price,
        discount_balance=balance,
    )


# ====================================================================================
# Read models
# ====================================================================================

async def get_status(principal_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Paid/referral summary of a principal as of now.

    The stored summary is only rewritten by ledger transactions and the
    sweeper, so a period that lapsed since the last sweep is still flagged
    paid there; it is reported unpaid (and referral disabled) here.
    paid_until keeps the stored value so callers can show when it lapsed.

    Raises:
        PrincipalNotFoundError: Unknown principal
    """
    now = now or utc_now()
    principal = await database.get_principal(principal_id)
    if not principal:
        raise PrincipalNotFoundError(f"Principal {principal_id} not found")

    paid_until = principal.get("paid_until")
    is_paid = bool(principal.get("is_paid")) and paid_until is not None and paid_until > now
    return {
        "is_paid": is_paid,
        "paid_until": paid_until,
        "referral_enabled": is_paid and bool(principal.get("referral_enabled")),
        "discount_balance": principal.get("discount_balance") or 0,
        "referral_count": principal.get("referral_count") or 0,
        "referral_code": principal.get("referral_code"),
    }


async def list_subscriptions(principal_id: int, limit: int = 20) -> List[Dict[str, Any]]:
    """Newest first"""
    limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
    return await database.get_subscription_history(principal_id, limit)


SUBSCRIPTION_STATUSES = ("active", "expired")


async def list_all_subscriptions(
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Every principal's subscriptions, newest first, one page at a time.

    Raises:
        ValueError: Negative offset or unknown status filter
    """
    if status is not None and status not in SUBSCRIPTION_STATUSES:
        raise ValueError(f"status must be one of {SUBSCRIPTION_STATUSES}, got {status!r}")
    offset = int(offset)
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")
    limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
    return await database.list_all_subscriptions(limit, offset, status)
