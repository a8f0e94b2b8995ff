"""
Notification Dispatcher package
"""

from app.services.notifications.service import (
    set_bot,
    get_bot,
    notify_principal,
    notify_operator,
    notify_trial_granted,
    notify_activation,
    notify_gift,
    notify_referral_joined,
    notify_renewal_requested,
    notify_renewal_rejected,
    notify_expiry,
)

__all__ = [
    "set_bot",
    "get_bot",
    "notify_principal",
    "notify_operator",
    "notify_trial_granted",
    "notify_activation",
    "notify_gift",
    "notify_referral_joined",
    "notify_renewal_requested",
    "notify_renewal_rejected",
    "notify_expiry",
]
