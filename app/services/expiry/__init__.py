"""
Expiry Sweeper Package
"""

from app.services.expiry.service import (
    sweep,
    dispatch_expiry_notifications,
    reconcile_paid_status,
    purge_expired_subscriptions,
)

__all__ = [
    "sweep",
    "dispatch_expiry_notifications",
    "reconcile_paid_status",
    "purge_expired_subscriptions",
]
