"""
Subscription Service Package
"""

from app.services.subscriptions.service import (
    activate,
    grant_gift,
    preview_price,
    get_status,
    list_subscriptions,
    list_all_subscriptions,
    call_ledger,
    resolve_plan_table,
    utc_now,
    ActivationOutcome,
    PricePreview,
)
from app.services.subscriptions.exceptions import (
    SubscriptionServiceError,
    InvalidPlanError,
    PrincipalNotFoundError,
    NoPendingRequestError,
    DuplicatePendingRequestError,
    LedgerWriteError,
)

__all__ = [
    "activate",
    "grant_gift",
    "preview_price",
    "get_status",
    "list_subscriptions",
    "list_all_subscriptions",
    "call_ledger",
    "resolve_plan_table",
    "utc_now",
    "ActivationOutcome",
    "PricePreview",
    "SubscriptionServiceError",
    "InvalidPlanError",
    "PrincipalNotFoundError",
    "NoPendingRequestError",
    "DuplicatePendingRequestError",
    "LedgerWriteError",
]
