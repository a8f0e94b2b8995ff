"""
Referral Service Package
"""

from app.services.referrals.service import (
    normalize_referral_code,
    register_principal,
    get_discount_history,
)

__all__ = [
    "normalize_referral_code",
    "register_principal",
    "get_discount_history",
]
