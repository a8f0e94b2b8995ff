"""
Unit tests for the engine facade: every mutating call returns an OperationResult.
"""
import asyncpg
import pytest
from unittest.mock import patch, AsyncMock

from app.services import engine
from app.services.subscriptions.exceptions import (
    DuplicatePendingRequestError,
    InvalidPlanError,
    LedgerWriteError,
    NoPendingRequestError,
    PrincipalNotFoundError,
)
from app.services.subscriptions.service import ActivationOutcome


class TestMutatingOperations:
    """Tests for result mapping"""

    @pytest.mark.asyncio
    async def test_activation_success(self, now, plan_table, activation_result):
        outcome = ActivationOutcome.from_ledger(activation_result)

        with patch('app.services.engine.subscriptions.activate', AsyncMock(return_value=outcome)) as mock_activate:
            result = await engine.activate(7, "weekly", plan_table=plan_table, now=now)

        assert result.success is True
        assert result.reason == "activated"
        assert result.data["final_price"] == 2000
        assert result.data["consumed"] == 1000
        assert result.data["paid_until"] == activation_result["summary"].paid_until
        assert "2000" in result.message
        mock_activate.assert_awaited_once_with(7, "weekly", True, plan_table=plan_table, now=now)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,reason", [
        (InvalidPlanError("bad plan"), "invalid_plan"),
        (PrincipalNotFoundError("gone"), "principal_not_found"),
        (LedgerWriteError("rolled back"), "storage_error"),
    ])
    async def test_activation_failures(self, error, reason):
        with patch('app.services.engine.subscriptions.activate', AsyncMock(side_effect=error)):
            result = await engine.activate(7, "weekly")

        assert result.success is False
        assert result.reason == reason
        assert result.data == {}

    @pytest.mark.asyncio
    async def test_duplicate_request_is_noop_success(self):
        with patch('app.services.engine.renewals.request_renewal',
                   AsyncMock(side_effect=DuplicatePendingRequestError("already pending"))):
            result = await engine.request_renewal(7, "weekly")

        assert result.success is True
        assert result.reason == "duplicate_pending_request"

    @pytest.mark.asyncio
    async def test_approve_nothing_pending(self):
        with patch('app.services.engine.renewals.approve_renewal',
                   AsyncMock(side_effect=NoPendingRequestError("none"))):
            result = await engine.approve_renewal(7)

        assert result.success is False
        assert result.reason == "no_pending_request"

    @pytest.mark.asyncio
    async def test_trial_noop(self):
        with patch('app.services.engine.trials.ensure_trial', AsyncMock(return_value=None)):
            result = await engine.ensure_trial(7)

        assert result.success is True
        assert result.reason == "noop"

    @pytest.mark.asyncio
    async def test_invalid_argument(self):
        with patch('app.services.engine.expiry.purge_expired_subscriptions',
                   AsyncMock(side_effect=ValueError("older_than_days must be >= 0"))):
            result = await engine.purge_expired_subscriptions(-1)

        assert result.success is False
        assert result.reason == "invalid_argument"

    @pytest.mark.asyncio
    async def test_sweep_count(self, now):
        with patch('app.services.engine.expiry.sweep', AsyncMock(return_value=4)):
            result = await engine.sweep(now)

        assert result.success is True
        assert result.data == {"count": 4}

    @pytest.mark.asyncio
    async def test_register(self, principal):
        with patch('app.services.engine.referrals.register_principal', AsyncMock(return_value=principal)):
            result = await engine.register_principal(12345, "alice", "ref_xyz567")

        assert result.success is True
        assert result.data["principal"] is principal

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self):
        with patch('app.services.engine.subscriptions.activate', AsyncMock(side_effect=RuntimeError("bug"))):
            with pytest.raises(RuntimeError):
                await engine.activate(7, "weekly")


class TestReads:
    """Reads return plain values and raise on bad input"""

    @pytest.mark.asyncio
    async def test_status_raises(self):
        with patch('app.services.engine.subscriptions.get_status',
                   AsyncMock(side_effect=PrincipalNotFoundError("gone"))):
            with pytest.raises(PrincipalNotFoundError):
                await engine.get_status(7)

    @pytest.mark.asyncio
    async def test_list_all_passthrough(self):
        rows = [{"id": 1, "username": "alice"}]
        with patch('app.services.engine.subscriptions.list_all_subscriptions',
                   AsyncMock(return_value=rows)) as mock_list:
            assert await engine.list_all_subscriptions(limit=10, offset=20, status="active") == rows

        mock_list.assert_awaited_once_with(10, 20, "active")

    @pytest.mark.asyncio
    async def test_preview(self, plan_table, principal, mock_database):
        mock_database.get_principal.return_value = dict(principal, discount_balance=200)

        with patch('app.services.subscriptions.service.database', mock_database):
            preview = await engine.preview_price(7, "daily", plan_table=plan_table)

        assert preview == {"base_price": 500, "consumed": 200, "final_price": 300, "discount_balance": 200}


class TestStorageFailuresBecomeResults:
    """asyncpg errors under a mutating call come back as storage_error results"""

    @pytest.mark.asyncio
    async def test_reject_committed_despite_dead_connection(self, now, mock_database, mock_notifications):
        mock_database.reject_renewal_atomic.return_value = {
            "id": 40, "principal_id": 7, "plan": "weekly", "status": "rejected",
            "chat_id": 12345, "username": "alice",
        }
        mock_database.get_principal.side_effect = asyncpg.ConnectionDoesNotExistError("closed")

        with patch('app.services.renewals.service.database', mock_database), \
             patch('app.services.renewals.service.notifications', mock_notifications):
            result = await engine.reject_renewal(7, now=now)

        assert result.success is True
        assert result.reason == "rejected"

    @pytest.mark.asyncio
    async def test_reject_storage_error(self, now, mock_database, mock_notifications):
        mock_database.reject_renewal_atomic.side_effect = asyncpg.ConnectionDoesNotExistError("closed")

        with patch('app.services.renewals.service.database', mock_database), \
             patch('app.services.renewals.service.notifications', mock_notifications):
            result = await engine.reject_renewal(7, now=now)

        assert result.success is False
        assert result.reason == "storage_error"

    @pytest.mark.asyncio
    async def test_request_renewal_read_failure(self, plan_table, mock_database, mock_notifications):
        mock_database.get_principal.side_effect = asyncpg.ConnectionDoesNotExistError("closed")

        with patch('app.services.renewals.service.database', mock_database), \
             patch('app.services.renewals.service.notifications', mock_notifications):
            result = await engine.request_renewal(7, "weekly", plan_table=plan_table)

        assert result.success is False
        assert result.reason == "storage_error"

    @pytest.mark.asyncio
    async def test_sweep_stamp_failure(self, now, mock_database, mock_notifications):
        mock_database.get_unnotified_expirations.return_value = [
            {"id": 10, "principal_id": 7, "tier": "weekly", "expires_at": now},
        ]
        mock_database.mark_expiry_notified.side_effect = asyncpg.ConnectionDoesNotExistError("closed")

        with patch('app.services.expiry.service.database', mock_database), \
             patch('app.services.expiry.service.notifications', mock_notifications):
            result = await engine.sweep(now)

        assert result.success is False
        assert result.reason == "storage_error"
