"""
Scheduled jobs and the default scheduler wiring.

Each job returns the number of rows it touched; exceptions propagate to the
scheduler, which logs them and retries on the next tick.
"""

import logging

import config
from app.services import expiry, renewals
from app.workers.scheduler import Scheduler

logger = logging.getLogger(__name__)


async def expiry_sweep_job() -> int:
    return await expiry.sweep()


async def stale_renewals_job() -> int:
    return await renewals.reject_stale_renewals()


async def reconcile_paid_status_job() -> int:
    return await expiry.reconcile_paid_status()


async def retention_purge_job() -> int:
    return await expiry.purge_expired_subscriptions()


def build_scheduler(startup_jitter: float = 5.0) -> Scheduler:
    """Scheduler with every maintenance job registered at its configured interval"""
    scheduler = Scheduler(startup_jitter=startup_jitter)
    scheduler.add_job("expiry_sweep", expiry_sweep_job, config.SWEEP_INTERVAL_SECONDS)
    scheduler.add_job(
        "stale_renewals", stale_renewals_job, config.STALE_RENEWAL_INTERVAL_SECONDS, startup_delay=30,
    )
    scheduler.add_job(
        "reconcile_paid_status", reconcile_paid_status_job, config.RECONCILE_INTERVAL_SECONDS, startup_delay=60,
    )
    scheduler.add_job(
        "retention_purge", retention_purge_job, config.RETENTION_INTERVAL_SECONDS,
        timeout_seconds=600, startup_delay=300,
    )
    logger.info(
        f"SCHEDULER_CONFIGURED sweep={config.SWEEP_INTERVAL_SECONDS}s "
        f"stale={config.STALE_RENEWAL_INTERVAL_SECONDS}s reconcile={config.RECONCILE_INTERVAL_SECONDS}s "
        f"retention={config.RETENTION_INTERVAL_SECONDS}s"
    )
    return scheduler
