"""
Subscription service domain exceptions.
"""


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors"""
    reason = "subscription_error"


class InvalidPlanError(SubscriptionServiceError):
    """Raised when plan key is not in the plan table"""
    reason = "invalid_plan"


class PrincipalNotFoundError(SubscriptionServiceError):
    """Raised when principal does not exist"""
    reason = "principal_not_found"


class NoPendingRequestError(SubscriptionServiceError):
    """Raised when approval/rejection has no pending renewal request to act on"""
    reason = "no_pending_request"


class DuplicatePendingRequestError(SubscriptionServiceError):
    """Raised when a pending request already exists for (principal, plan)"""
    reason = "duplicate_pending_request"


class LedgerWriteError(SubscriptionServiceError):
    """Raised when a ledger transaction fails and is rolled back"""
    reason = "storage_error"
