"""
Pytest configuration and shared fixtures for service layer tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict, Any
from unittest.mock import AsyncMock, MagicMock

import config
from app.services.subscriptions.plans import PlanTable
from app.services.subscriptions.pricing import DiscountSplit, PaidSummary


@pytest.fixture
def now():
    """Fixed aware-UTC datetime for deterministic tests"""
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def plan_table():
    """Plan table built from the default config prices"""
    return PlanTable.from_mapping("test-v1", config.PLANS)


@pytest.fixture
def principal() -> Dict[str, Any]:
    """Registered principal with no subscription history"""
    return {
        "id": 7,
        "chat_id": 12345,
        "username": "alice",
        "referral_code": "ABC234",
        "referred_by": None,
        "discount_balance": 0,
        "referral_count": 0,
        "is_paid": False,
        "paid_until": None,
        "referral_enabled": False,
        "trial_used_at": None,
        "version": 0,
    }


@pytest.fixture
def activation_result(now, principal):
    """Ledger result as returned by database.activate_subscription_atomic"""
    expires_at = now + timedelta(days=7)
    return {
        "subscription": {
            "id": 101,
            "principal_id": principal["id"],
            "tier": "weekly",
            "starts_at": now,
            "expires_at": expires_at,
            "base_price": 3000,
            "discount_applied": 1000,
            "price": 2000,
            "status": "active",
            "referral_enabled": True,
            "is_gift": False,
        },
        "split": DiscountSplit(base_price=3000, consumed=1000, final_price=2000),
        "reward": None,
        "summary": PaidSummary(is_paid=True, paid_until=expires_at, referral_enabled=True),
        "principal": principal,
    }


@pytest.fixture
def mock_database():
    """Mock database module"""
    db = MagicMock()
    db.DB_READY = True
    db.get_principal = AsyncMock()
    db.create_principal = AsyncMock()
    db.find_principal_by_referral_code = AsyncMock(return_value=None)
    db.grant_trial_atomic = AsyncMock()
    db.activate_subscription_atomic = AsyncMock()
    db.grant_gift_atomic = AsyncMock()
    db.create_renewal_request = AsyncMock()
    db.approve_renewal_atomic = AsyncMock()
    db.reject_renewal_atomic = AsyncMock()
    db.reject_stale_renewals = AsyncMock(return_value=0)
    db.list_pending_renewals = AsyncMock(return_value=[])
    db.get_due_principal_ids = AsyncMock(return_value=[])
    db.expire_due_subscriptions_for_principal = AsyncMock(return_value=[])
    db.get_unnotified_expirations = AsyncMock(return_value=[])
    db.mark_expiry_notified = AsyncMock(return_value=1)
    db.get_principals_with_stale_summary = AsyncMock(return_value=[])
    db.reconcile_principal_summary = AsyncMock()
    db.purge_expired_subscriptions = AsyncMock(return_value=0)
    db.get_subscription_history = AsyncMock(return_value=[])
    db.list_all_subscriptions = AsyncMock(return_value=[])
    db.get_discount_transactions = AsyncMock(return_value=[])
    return db


@pytest.fixture
def mock_notifications():
    """Mock notifications package (every notify_* is an AsyncMock)"""
    n = MagicMock()
    for name in (
        "notify_trial_granted",
        "notify_activation",
        "notify_gift",
        "notify_referral_joined",
        "notify_renewal_requested",
        "notify_renewal_rejected",
        "notify_expiry",
    ):
        setattr(n, name, AsyncMock())
    return n
