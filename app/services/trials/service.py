"""
Trial Service Layer

One lifetime trial per principal. Eligibility is checked and the trial row is
written under the principal lock, so concurrent calls create at most one trial;
every later call is a no-op.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import config
import database
from app.services import notifications
from app.services.subscriptions.service import call_ledger, utc_now

logger = logging.getLogger(__name__)


async def ensure_trial(
    principal_id: int,
    days: Optional[int] = None,
    now: Optional[datetime] = None
) -> Optional[Dict[str, Any]]:
    """
    Grant the trial if the principal never had one and holds no active paid period.

    Returns:
        The trial subscription row, or None when nothing was granted

    Raises:
        PrincipalNotFoundError: Unknown principal
        LedgerWriteError: Transaction failed and was rolled back
    """
    days = days or config.TRIAL_DAYS
    now = now or utc_now()

    result = await call_ledger(
        "ensure_trial", principal_id,
        database.grant_trial_atomic(principal_id, days, now),
    )
    if result is None:
        return None

    await notifications.notify_trial_granted(result["principal"], result["subscription"], days)
    return result["subscription"]
