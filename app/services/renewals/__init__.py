"""
Renewal Request Workflow Package
"""

from app.services.renewals.service import (
    request_renewal,
    approve_renewal,
    reject_renewal,
    reject_stale_renewals,
    list_pending_renewals,
)

__all__ = [
    "request_renewal",
    "approve_renewal",
    "reject_renewal",
    "reject_stale_renewals",
    "list_pending_renewals",
]
