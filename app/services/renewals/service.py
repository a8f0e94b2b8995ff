"""
Renewal Request Workflow

pending -> approved | rejected, nothing leaves a decided state.

Approval runs the activation inside the same transaction as the state change,
so an approved request always has exactly one subscription row pointing at it.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import config
import database
from app.services import notifications
from app.services.subscriptions.exceptions import (
    DuplicatePendingRequestError,
    PrincipalNotFoundError,
)
from app.services.subscriptions.plans import PlanTable
from app.services.subscriptions.pricing import split_discount
from app.services.subscriptions.service import (
    ActivationOutcome,
    call_ledger,
    resolve_plan_table,
    utc_now,
)

logger = logging.getLogger(__name__)


async def request_renewal(
    principal_id: int,
    plan_key: str,
    plan_table: Optional[PlanTable] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Queue a renewal for operator approval.

    Returns:
        The new pending request

    Raises:
        InvalidPlanError: Unknown plan key
        PrincipalNotFoundError: Unknown principal
        DuplicatePendingRequestError: Same plan already pending (no row written)
    """
    plan = resolve_plan_table(plan_table).get(plan_key)
    now = now or utc_now()

    principal = await call_ledger(
        "request_renewal", principal_id, database.get_principal(principal_id)
    )
    if not principal:
        raise PrincipalNotFoundError(f"Principal {principal_id} not found")

    request = await call_ledger(
        "request_renewal", principal_id,
        database.create_renewal_request(principal_id, plan.key, now),
    )
    if request is None:
        raise DuplicatePendingRequestError(
            f"A {plan.key} renewal request is already pending for principal {principal_id}"
        )

    quoted = split_discount(principal.get("discount_balance") or 0, plan.price)
    await notifications.notify_renewal_requested(principal, plan.key, quoted.final_price)
    return request


async def approve_renewal(
    principal_id: int,
    plan_key: Optional[str] = None,
    plan_table: Optional[PlanTable] = None,
    now: Optional[datetime] = None
) -> ActivationOutcome:
    """
    Approve the pending request for plan_key (most recent pending one if omitted).

    Periods still active are superseded and their remaining time carried
    forward; the new period keeps the principal's current referral setting.

    Raises:
        NoPendingRequestError: Nothing pending to approve
        InvalidPlanError: The requested plan is no longer in the plan table
        PrincipalNotFoundError: Unknown principal
    """
    table = resolve_plan_table(plan_table)
    now = now or utc_now()

    result = await call_ledger(
        "approve_renewal", principal_id,
        database.approve_renewal_atomic(principal_id, plan_key, table, now),
    )
    await notifications.notify_activation(result["principal"], result)
    return ActivationOutcome.from_ledger(result)


async def reject_renewal(
    principal_id: int,
    plan_key: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Reject the pending request for plan_key (most recent pending one if omitted).

    Returns:
        The rejected request, with the requester's chat_id and username

    Raises:
        NoPendingRequestError: Nothing pending to reject
    """
    now = now or utc_now()
    request = await call_ledger(
        "reject_renewal", principal_id,
        database.reject_renewal_atomic(principal_id, plan_key, now),
    )

    await notifications.notify_renewal_rejected(request, request["plan"])
    return request


async def reject_stale_renewals(
    now: Optional[datetime] = None,
    max_age_hours: Optional[int] = None
) -> int:
    """Reject requests pending longer than max_age_hours. No notifications."""
    now = now or utc_now()
    hours = max_age_hours if max_age_hours is not None else config.STALE_RENEWAL_HOURS
    cutoff = now - timedelta(hours=hours)

    count = await call_ledger(
        "reject_stale_renewals", None,
        database.reject_stale_renewals(cutoff, now),
    )
    if count:
        logger.info(f"STALE_RENEWALS_REJECTED count={count} cutoff={cutoff.isoformat()}")
    return count


async def list_pending_renewals(limit: int = 100) -> List[Dict[str, Any]]:
    """Oldest first, with the requester's username and chat"""
    return await database.list_pending_renewals(limit)
