"""
Expiry Sweeper and ledger maintenance.

sweep(now) is idempotent: rows are selected by status = 'active', so a second
run with the same `now` finds nothing to transition. Notifications are sent
after the transitions commit and are stamped per subscription, which makes
delivery at-least-once across crashes and never twice once stamped.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import config
import database
from app.services import notifications
from app.services.subscriptions.service import call_ledger, utc_now

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 500
NOTIFY_BATCH_SIZE = 200


async def sweep(now: Optional[datetime] = None) -> int:
    """
    Expire every lapsed active subscription and recompute each owner's summary.

    One transaction per principal; a failure for one principal is logged and
    the rest of the batch proceeds (the failed one is retried next tick).

    Returns:
        Number of subscriptions transitioned to expired
    """
    now = now or utc_now()
    principal_ids = await call_ledger(
        "sweep", None, database.get_due_principal_ids(now, SWEEP_BATCH_SIZE)
    )
    if len(principal_ids) >= SWEEP_BATCH_SIZE:
        logger.warning(f"EXPIRY_SWEEP_BATCH_FULL size={SWEEP_BATCH_SIZE} remainder deferred to next tick")

    transitioned = 0
    for principal_id in principal_ids:
        try:
            rows = await database.expire_due_subscriptions_for_principal(principal_id, now)
        except Exception as e:
            logger.error(
                f"EXPIRY_SWEEP_PRINCIPAL_FAILED principal={principal_id} "
                f"error={type(e).__name__}: {e}"
            )
            continue
        for row in rows:
            logger.info(
                f"SUBSCRIPTION_EXPIRED principal={principal_id} subscription={row['id']} "
                f"tier={row['tier']} expires_at={row['expires_at'].isoformat()}"
            )
        transitioned += len(rows)

    await dispatch_expiry_notifications(now)

    if transitioned:
        logger.info(f"EXPIRY_SWEEP_DONE transitioned={transitioned} principals={len(principal_ids)}")
    return transitioned


async def dispatch_expiry_notifications(now: Optional[datetime] = None) -> int:
    """
    Notify principal and operator for every expired row not yet stamped.

    Each row is stamped right after its messages are attempted, so a crash
    re-sends at most the row in flight.

    Returns:
        Number of rows stamped
    """
    now = now or utc_now()
    rows = await call_ledger(
        "dispatch_expiry_notifications", None,
        database.get_unnotified_expirations(NOTIFY_BATCH_SIZE),
    )
    stamped = 0
    for row in rows:
        await notifications.notify_expiry(row)
        stamped += await call_ledger(
            "dispatch_expiry_notifications", row["principal_id"],
            database.mark_expiry_notified([row["id"]], now),
        )
    return stamped


async def reconcile_paid_status(now: Optional[datetime] = None) -> int:
    """
    Rewrite the stored summary of every principal that disagrees with its ledger.

    Returns:
        Number of principals corrected
    """
    now = now or utc_now()
    principal_ids = await call_ledger(
        "reconcile_paid_status", None, database.get_principals_with_stale_summary(now)
    )
    corrected = 0
    for principal_id in principal_ids:
        try:
            summary = await database.reconcile_principal_summary(principal_id, now)
        except Exception as e:
            logger.error(
                f"RECONCILE_PRINCIPAL_FAILED principal={principal_id} "
                f"error={type(e).__name__}: {e}"
            )
            continue
        logger.warning(
            f"PAID_STATUS_RECONCILED principal={principal_id} is_paid={summary.is_paid} "
            f"paid_until={summary.paid_until} referral_enabled={summary.referral_enabled}"
        )
        corrected += 1
    return corrected


async def purge_expired_subscriptions(
    older_than_days: Optional[int] = None,
    now: Optional[datetime] = None
) -> int:
    """
    Delete expired, non-trial rows that lapsed more than older_than_days ago.

    Rows referenced by discount transactions are kept.
    """
    days = older_than_days if older_than_days is not None else config.RETENTION_DAYS
    if days < 0:
        raise ValueError(f"older_than_days must be >= 0, got {days}")
    now = now or utc_now()
    cutoff = now - timedelta(days=days)

    deleted = await call_ledger(
        "purge_expired_subscriptions", None, database.purge_expired_subscriptions(cutoff)
    )
    if deleted:
        logger.info(f"EXPIRED_SUBSCRIPTIONS_PURGED count={deleted} cutoff={cutoff.isoformat()}")
    return deleted
