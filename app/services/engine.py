"""
Engine facade: the single entry point for callers (bot handlers, admin tools,
scheduled jobs).

Mutating operations never raise domain or storage errors; they return an
OperationResult instead. Read operations return plain values and raise
PrincipalNotFoundError / InvalidPlanError for bad input.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import config
from app.services import expiry, referrals, renewals, subscriptions, trials
from app.services.notifications.service import format_datetime
from app.services.subscriptions.exceptions import (
    DuplicatePendingRequestError,
    SubscriptionServiceError,
)
from app.services.subscriptions.plans import PlanTable
from app.services.subscriptions.service import ActivationOutcome
from app.utils.logging_helpers import (
    classify_error,
    generate_correlation_id,
    log_operation,
    set_correlation_id,
)

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of a mutating engine operation"""
    success: bool
    reason: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


async def _execute(
    operation: str,
    awaitable: Awaitable[Any],
    describe: Callable[[Any], OperationResult],
    **context
) -> OperationResult:
    set_correlation_id(generate_correlation_id())
    started = time.monotonic()

    def _elapsed() -> float:
        return round((time.monotonic() - started) * 1000, 2)

    try:
        value = await awaitable
    except DuplicatePendingRequestError as e:
        log_operation("engine", operation, "noop", duration_ms=_elapsed(), reason=e.reason, **context)
        return OperationResult(success=True, reason=e.reason, message=str(e))
    except SubscriptionServiceError as e:
        error_type = classify_error(e)
        outcome = "failed" if error_type == "infra_error" else "rejected"
        log_operation(
            "engine", operation, outcome,
            error_type=error_type, duration_ms=_elapsed(), reason=e.reason, **context
        )
        return OperationResult(success=False, reason=e.reason, message=str(e))
    except ValueError as e:
        log_operation(
            "engine", operation, "rejected",
            error_type="domain_error", duration_ms=_elapsed(), reason="invalid_argument", **context
        )
        return OperationResult(success=False, reason="invalid_argument", message=str(e))

    result = describe(value)
    log_operation("engine", operation, "success", duration_ms=_elapsed(), reason=result.reason, **context)
    return result


def _activation_data(outcome: ActivationOutcome) -> Dict[str, Any]:
    return {
        "subscription": outcome.subscription,
        "base_price": outcome.split.base_price,
        "consumed": outcome.split.consumed,
        "final_price": outcome.split.final_price,
        "reward": outcome.reward,
        "superseded": outcome.superseded,
        "request": outcome.request,
        "is_paid": outcome.summary.is_paid,
        "paid_until": outcome.summary.paid_until,
        "referral_enabled": outcome.summary.referral_enabled,
    }


def _activation_result(outcome: ActivationOutcome) -> OperationResult:
    sub = outcome.subscription
    return OperationResult(
        success=True,
        reason="activated",
        message=(
            f"{sub['tier']} active until {format_datetime(sub['expires_at'])}, "
            f"charged {config.CURRENCY_SYMBOL}{outcome.split.final_price}"
        ),
        data=_activation_data(outcome),
    )


def _count_result(reason: str, noun: str) -> Callable[[int], OperationResult]:
    def describe(count: int) -> OperationResult:
        return OperationResult(
            success=True, reason=reason, message=f"{count} {noun}", data={"count": count}
        )
    return describe


# ====================================================================================
# Mutating operations
# ====================================================================================

async def register_principal(
    chat_id: Optional[int],
    username: Optional[str] = None,
    referral_code: Optional[str] = None
) -> OperationResult:
    def describe(principal: Dict[str, Any]) -> OperationResult:
        return OperationResult(
            success=True,
            reason="registered",
            message=f"Principal {principal['id']} registered with code {principal['referral_code']}",
            data={"principal": principal},
        )

    return await _execute(
        "register_principal",
        referrals.register_principal(chat_id, username, referral_code),
        describe,
        chat_id=chat_id,
    )


async def ensure_trial(principal_id: int, now: Optional[datetime] = None) -> OperationResult:
    def describe(subscription: Optional[Dict[str, Any]]) -> OperationResult:
        if subscription is None:
            return OperationResult(
                success=True, reason="noop", message="Trial not available for this principal"
            )
        return OperationResult(
            success=True,
            reason="trial_granted",
            message=f"Trial active until {format_datetime(subscription['expires_at'])}",
            data={"subscription": subscription},
        )

    return await _execute(
        "ensure_trial", trials.ensure_trial(principal_id, now=now), describe,
        principal_id=principal_id,
    )


async def activate(
    principal_id: int,
    plan: str,
    enable_referral: bool = True,
    plan_table: Optional[PlanTable] = None,
    now: Optional[datetime] = None
) -> OperationResult:
    return await _execute(
        "activate",
        subscriptions.activate(principal_id, plan, enable_referral, plan_table=plan_table, now=now),
        _activation_result,
        principal_id=principal_id, plan=plan,
    )


async def grant_gift(
    principal_id: int,
    days: int,
    enable_referral: bool = True,
    now: Optional[datetime] = None
) -> OperationResult:
    return await _execute(
        "grant_gift",
        subscriptions.grant_gift(principal_id, days, enable_referral, now=now),
        _activation_result,
        principal_id=principal_id, days=days,
    )


async def request_renewal(
    principal_id: int,
    plan: str,
    plan_table: Optional[PlanTable] = None,
    now: Optional[datetime] = None
) -> OperationResult:
    def describe(request: Dict[str, Any]) -> OperationResult:
        return OperationResult(
            success=True,
            reason="requested",
            message=f"Renewal request for {request['plan']} is awaiting approval",
            data={"request": request},
        )

    return await _execute(
        "request_renewal",
        renewals.request_renewal(principal_id, plan, plan_table=plan_table, now=now),
        describe,
        principal_id=principal_id, plan=plan,
    )


async def approve_renewal(
    principal_id: int,
    plan: Optional[str] = None,
    plan_table: Optional[PlanTable] = None,
    now: Optional[datetime] = None
) -> OperationResult:
    return await _execute(
        "approve_renewal",
        renewals.approve_renewal(principal_id, plan, plan_table=plan_table, now=now),
        _activation_result,
        principal_id=principal_id, plan=plan,
    )


async def reject_renewal(
    principal_id: int,
    plan: Optional[str] = None,
    now: Optional[datetime] = None
) -> OperationResult:
    def describe(request: Dict[str, Any]) -> OperationResult:
        return OperationResult(
            success=True,
            reason="rejected",
            message=f"Renewal request for {request['plan']} rejected",
            data={"request": request},
        )

    return await _execute(
        "reject_renewal",
        renewals.reject_renewal(principal_id, plan, now=now),
        describe,
        principal_id=principal_id, plan=plan,
    )


async def sweep(now: Optional[datetime] = None) -> OperationResult:
    return await _execute("sweep", expiry.sweep(now), _count_result("swept", "subscriptions expired"))


async def reject_stale_renewals(now: Optional[datetime] = None) -> OperationResult:
    return await _execute(
        "reject_stale_renewals", renewals.reject_stale_renewals(now),
        _count_result("stale_rejected", "stale renewal requests rejected"),
    )


async def reconcile_paid_status(now: Optional[datetime] = None) -> OperationResult:
    return await _execute(
        "reconcile_paid_status", expiry.reconcile_paid_status(now),
        _count_result("reconciled", "principals reconciled"),
    )


async def purge_expired_subscriptions(
    older_than_days: Optional[int] = None,
    now: Optional[datetime] = None
) -> OperationResult:
    return await _execute(
        "purge_expired_subscriptions",
        expiry.purge_expired_subscriptions(older_than_days, now=now),
        _count_result("purged", "expired subscriptions purged"),
    )


# ====================================================================================
# Reads
# ====================================================================================

async def preview_price(
    principal_id: int,
    plan: str,
    plan_table: Optional[PlanTable] = None
) -> Dict[str, int]:
    preview = await subscriptions.preview_price(principal_id, plan, plan_table=plan_table)
    return {
        "base_price": preview.base_price,
        "consumed": preview.consumed,
        "final_price": preview.final_price,
        "discount_balance": preview.discount_balance,
    }


async def get_status(principal_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    return await subscriptions.get_status(principal_id, now=now)


async def list_subscriptions(principal_id: int, limit: int = 20) -> List[Dict[str, Any]]:
    return await subscriptions.list_subscriptions(principal_id, limit)


async def list_all_subscriptions(
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None
) -> List[Dict[str, Any]]:
    return await subscriptions.list_all_subscriptions(limit, offset, status)


async def list_pending_renewals(limit: int = 100) -> List[Dict[str, Any]]:
    return await renewals.list_pending_renewals(limit)
