"""
In-memory stand-in for the asyncpg pool used by database.py.

FakeLedger answers exactly the statements database.py issues (matched on
whitespace-normalized SQL fragments), enforces the schema constraints that
matter for the ledger (CHECKs, partial unique indexes, foreign keys) and
rolls state back when a transaction block exits with an exception. This lets
the transaction functions run unmodified against observable state.
"""
import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest


def _norm(sql: str) -> str:
    return " ".join(sql.split())


def naive(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(tzinfo=None) if dt.tzinfo else dt


class FakeTransaction:
    def __init__(self, ledger: "FakeLedger"):
        self._ledger = ledger
        self._snapshot = None

    async def __aenter__(self):
        self._snapshot = copy.deepcopy(self._ledger.state)
        self._ledger.tx_depth += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._ledger.tx_depth -= 1
        if exc_type is not None:
            self._ledger.state = self._snapshot
            self._ledger.rollbacks += 1
        return False


class FakeConnection:
    def __init__(self, ledger: "FakeLedger"):
        self._ledger = ledger

    def transaction(self):
        return FakeTransaction(self._ledger)

    async def execute(self, sql, *args):
        return self._ledger.execute(_norm(sql), args)

    async def fetch(self, sql, *args):
        return self._ledger.fetch(_norm(sql), args)

    async def fetchrow(self, sql, *args):
        return self._ledger.fetchrow(_norm(sql), args)

    async def fetchval(self, sql, *args):
        return self._ledger.fetchval(_norm(sql), args)


class FakePool:
    def __init__(self, ledger: "FakeLedger"):
        self._ledger = ledger

    @asynccontextmanager
    async def _acquire(self):
        yield FakeConnection(self._ledger)

    def acquire(self):
        return self._acquire()


class FakeLedger:
    """Tables as lists of dicts; timestamps stored naive UTC like the real schema"""

    def __init__(self):
        self.state: Dict[str, Any] = {
            "principals": {},
            "subscriptions": {},
            "renewal_requests": {},
            "discount_transactions": [],
        }
        self._ids = itertools.count(1)
        self.tx_depth = 0
        self.rollbacks = 0
        self.locks: List[int] = []
        self.fail_on: Optional[str] = None
        # Called with the principal row right before the conditional debit
        self.before_debit: Optional[Callable[[Dict[str, Any]], None]] = None
        self.pool = FakePool(self)

    # ------------------------------------------------------------------ helpers

    def _next_id(self) -> int:
        return next(self._ids)

    def add_principal(self, **fields) -> Dict[str, Any]:
        pid = fields.pop("id", None) or self._next_id()
        row = {
            "id": pid,
            "chat_id": 1000 + pid,
            "username": f"user{pid}",
            "referral_code": f"CODE{pid}",
            "referred_by": None,
            "discount_balance": 0,
            "referral_count": 0,
            "is_paid": False,
            "paid_until": None,
            "referral_enabled": False,
            "trial_used_at": None,
            "version": 0,
            "created_at": datetime(2024, 1, 1),
        }
        row.update({k: naive(v) if isinstance(v, datetime) else v for k, v in fields.items()})
        self.state["principals"][pid] = row
        return row

    def add_subscription(self, principal_id: int, tier: str, starts_at: datetime, expires_at: datetime, **fields):
        sid = self._next_id()
        row = {
            "id": sid,
            "principal_id": principal_id,
            "tier": tier,
            "starts_at": naive(starts_at),
            "expires_at": naive(expires_at),
            "base_price": 0,
            "discount_applied": 0,
            "price": 0,
            "status": "active",
            "referral_enabled": False,
            "is_gift": False,
            "renewal_request_id": None,
            "expired_by": None,
            "expiry_notified_at": None,
            "created_at": naive(starts_at),
        }
        row.update({k: naive(v) if isinstance(v, datetime) else v for k, v in fields.items()})
        self.state["subscriptions"][sid] = row
        return row

    def add_request(self, principal_id: int, plan: str, created_at: datetime, status: str = "pending"):
        rid = self._next_id()
        row = {
            "id": rid,
            "principal_id": principal_id,
            "plan": plan,
            "status": status,
            "created_at": naive(created_at),
            "decided_at": None,
            "decided_by": None,
        }
        self.state["renewal_requests"][rid] = row
        return row

    def principal(self, pid: int) -> Dict[str, Any]:
        return self.state["principals"][pid]

    def subscriptions_of(self, pid: int) -> List[Dict[str, Any]]:
        return sorted(
            (s for s in self.state["subscriptions"].values() if s["principal_id"] == pid),
            key=lambda s: s["id"],
        )

    def requests_of(self, pid: int) -> List[Dict[str, Any]]:
        return [r for r in self.state["renewal_requests"].values() if r["principal_id"] == pid]

    def transactions_of(self, pid: int) -> List[Dict[str, Any]]:
        return [t for t in self.state["discount_transactions"] if t["principal_id"] == pid]

    def _maybe_fail(self, sql: str):
        if self.fail_on and self.fail_on in sql:
            raise asyncpg.PostgresError(f"injected failure on: {self.fail_on}")

    @staticmethod
    def _tag(verb: str, count: int) -> str:
        return f"{verb} {count}" if verb != "INSERT" else f"INSERT 0 {count}"

    # ------------------------------------------------------------------ execute

    def execute(self, sql: str, args) -> str:
        self._maybe_fail(sql)
        principals = self.state["principals"]
        subs = self.state["subscriptions"]
        requests = self.state["renewal_requests"]

        if "pg_advisory_xact_lock" in sql:
            assert self.tx_depth > 0, "advisory xact lock outside a transaction"
            self.locks.append(args[0])
            return "SELECT 1"

        if "SET is_paid = $1" in sql:
            is_paid, paid_until, referral_enabled, pid = args
            p = principals[pid]
            p.update(is_paid=is_paid, paid_until=paid_until, referral_enabled=referral_enabled)
            p["version"] += 1
            return "UPDATE 1"

        if "discount_balance = discount_balance - $1" in sql:
            amount, pid = args
            p = principals.get(pid)
            if p and self.before_debit:
                self.before_debit(p)
            if not p or p["discount_balance"] < amount:
                return "UPDATE 0"
            p["discount_balance"] -= amount
            p["version"] += 1
            return "UPDATE 1"

        if "INSERT INTO discount_transactions" in sql:
            pid, sid, amount = args
            if amount == 0:
                raise asyncpg.CheckViolationError("discount_transactions_amount_check")
            if sid not in subs:
                raise asyncpg.ForeignKeyViolationError("discount_transactions_subscription_id_fkey")
            kind = "activation_debit" if "'activation_debit'" in sql else "referral_credit"
            self.state["discount_transactions"].append({
                "id": self._next_id(), "principal_id": pid, "subscription_id": sid,
                "amount": amount, "kind": kind, "created_at": datetime(2024, 1, 1),
            })
            return "INSERT 0 1"

        if "discount_balance = discount_balance + $1" in sql:
            amount, pid = args
            p = principals[pid]
            p["discount_balance"] += amount
            p["referral_count"] += 1
            p["version"] += 1
            return "UPDATE 1"

        if "SET referred_by = NULL" in sql:
            principals[args[0]]["referred_by"] = None
            return "UPDATE 1"

        if "SET trial_used_at = $1" in sql:
            principals[args[1]]["trial_used_at"] = args[0]
            return "UPDATE 1"

        if "UPDATE renewal_requests SET status = 'approved'" in sql:
            decided_at, rid = args
            requests[rid].update(status="approved", decided_at=decided_at, decided_by="operator")
            return "UPDATE 1"

        if "UPDATE renewal_requests SET status = 'rejected'" in sql and "decided_by = 'stale'" in sql:
            cutoff, now = args
            count = 0
            for r in requests.values():
                if r["status"] == "pending" and r["created_at"] <= cutoff:
                    r.update(status="rejected", decided_at=now, decided_by="stale")
                    count += 1
            return f"UPDATE {count}"

        if "UPDATE renewal_requests SET status = 'rejected'" in sql:
            decided_at, rid = args
            requests[rid].update(status="rejected", decided_at=decided_at, decided_by="operator")
            return "UPDATE 1"

        if "SET expiry_notified_at = $2 WHERE id = ANY" in sql:
            ids, now = args
            count = 0
            for sid in ids:
                s = subs.get(sid)
                if s and s["expiry_notified_at"] is None:
                    s["expiry_notified_at"] = now
                    count += 1
            return f"UPDATE {count}"

        if "DELETE FROM subscriptions" in sql:
            cutoff, trial_tier = args
            referenced = {t["subscription_id"] for t in self.state["discount_transactions"]}
            doomed = [
                sid for sid, s in subs.items()
                if s["status"] == "expired" and s["tier"] != trial_tier
                and s["expires_at"] < cutoff and sid not in referenced
            ]
            for sid in doomed:
                del subs[sid]
            return f"DELETE {len(doomed)}"

        raise AssertionError(f"Unhandled execute: {sql}")

    # ------------------------------------------------------------------ fetchrow

    def fetchrow(self, sql: str, args):
        self._maybe_fail(sql)
        principals = self.state["principals"]
        subs = self.state["subscriptions"]
        requests = self.state["renewal_requests"]

        if "UPDATE principals SET referral_code = $1" in sql:
            code, pid = args
            if any(p["referral_code"] == code and p["id"] != pid for p in principals.values()):
                raise asyncpg.UniqueViolationError("principals_referral_code_key")
            principals[pid]["referral_code"] = code
            return dict(principals[pid])

        if "SELECT chat_id, username FROM principals WHERE id = $1" in sql:
            p = principals.get(args[0])
            return {"chat_id": p["chat_id"], "username": p["username"]} if p else None

        if "FROM principals WHERE id = $1 FOR UPDATE" in sql:
            p = principals.get(args[0])
            return dict(p) if p else None

        if "SELECT * FROM principals WHERE id = $1" in sql:
            p = principals.get(args[0])
            return dict(p) if p else None

        if "FROM principals WHERE referral_code = $1" in sql:
            for p in principals.values():
                if p["referral_code"] == args[0]:
                    return dict(p)
            return None

        if "INSERT INTO subscriptions" in sql:
            (pid, tier, starts_at, expires_at, base_price, discount_applied, price,
             referral_enabled, is_gift, renewal_request_id) = args
            if not expires_at > starts_at:
                raise asyncpg.CheckViolationError("subscriptions_check")
            if price != base_price - discount_applied or min(price, base_price, discount_applied) < 0:
                raise asyncpg.CheckViolationError("subscriptions_price_check")
            if tier == "trial" and any(s["principal_id"] == pid and s["tier"] == "trial" for s in subs.values()):
                raise asyncpg.UniqueViolationError("uq_subscriptions_trial")
            row = self.add_subscription(
                pid, tier, starts_at, expires_at,
                base_price=base_price, discount_applied=discount_applied, price=price,
                referral_enabled=referral_enabled, is_gift=is_gift,
                renewal_request_id=renewal_request_id,
            )
            return dict(row)

        if "INSERT INTO renewal_requests" in sql:
            pid, plan, created_at = args
            if pid not in principals:
                raise asyncpg.ForeignKeyViolationError("renewal_requests_principal_id_fkey")
            if any(r["principal_id"] == pid and r["plan"] == plan and r["status"] == "pending"
                   for r in requests.values()):
                return None
            return dict(self.add_request(pid, plan, created_at))

        if "FROM renewal_requests WHERE principal_id = $1 AND plan = $2 AND status = 'pending'" in sql:
            pid, plan = args
            for r in requests.values():
                if r["principal_id"] == pid and r["plan"] == plan and r["status"] == "pending":
                    return dict(r)
            return None

        if "FROM renewal_requests WHERE principal_id = $1 AND status = 'pending' ORDER BY" in sql:
            pending = [r for r in requests.values() if r["principal_id"] == args[0] and r["status"] == "pending"]
            if not pending:
                return None
            return dict(max(pending, key=lambda r: (r["created_at"], r["id"])))

        raise AssertionError(f"Unhandled fetchrow: {sql}")

    # ------------------------------------------------------------------ fetchval

    def fetchval(self, sql: str, args):
        self._maybe_fail(sql)
        principals = self.state["principals"]
        subs = self.state["subscriptions"].values()

        if "INSERT INTO principals" in sql:
            chat_id, username, referred_by = args
            row = self.add_principal(chat_id=chat_id, username=username, referred_by=referred_by, referral_code=None)
            return row["id"]

        if "AND tier = $2 LIMIT 1" in sql:
            pid, tier = args
            return 1 if any(s["principal_id"] == pid and s["tier"] == tier for s in subs) else None

        if "AND tier != $2 AND status = 'active'" in sql:
            pid, tier = args
            return 1 if any(
                s["principal_id"] == pid and s["tier"] != tier and s["status"] == "active" for s in subs
            ) else None

        raise AssertionError(f"Unhandled fetchval: {sql}")

    # ------------------------------------------------------------------ fetch

    def fetch(self, sql: str, args):
        self._maybe_fail(sql)
        principals = self.state["principals"]
        subs = self.state["subscriptions"]

        if "SELECT id, tier, starts_at, expires_at, status, referral_enabled FROM subscriptions" in sql:
            pid, now = args
            rows = [
                dict(s) for s in subs.values()
                if s["principal_id"] == pid and s["status"] == "active" and s["expires_at"] > now
            ]
            return sorted(rows, key=lambda s: s["expires_at"], reverse=True)

        if "expired_by = 'superseded'" in sql:
            pid, now = args
            out = []
            for s in subs.values():
                if s["principal_id"] == pid and s["status"] == "active" and s["expires_at"] > now:
                    s.update(status="expired", expired_by="superseded", expiry_notified_at=now)
                    out.append({"id": s["id"], "expires_at": s["expires_at"]})
            return out

        if "expired_by = 'sweep'" in sql:
            pid, now = args
            out = []
            for s in subs.values():
                if s["principal_id"] == pid and s["status"] == "active" and s["expires_at"] <= now:
                    s.update(status="expired", expired_by="sweep")
                    out.append({k: s[k] for k in ("id", "principal_id", "tier", "expires_at")})
            return out

        if "SELECT DISTINCT principal_id" in sql:
            now, limit = args
            ids = sorted({
                s["principal_id"] for s in subs.values()
                if s["status"] == "active" and s["expires_at"] <= now
            })
            return [{"principal_id": pid} for pid in ids[:limit]]

        if "s.expiry_notified_at IS NULL" in sql:
            (limit,) = args
            out = []
            for s in sorted(subs.values(), key=lambda s: s["id"]):
                if s["status"] == "expired" and s["expiry_notified_at"] is None:
                    p = principals[s["principal_id"]]
                    out.append({
                        "id": s["id"], "principal_id": s["principal_id"], "tier": s["tier"],
                        "expires_at": s["expires_at"], "chat_id": p["chat_id"],
                        "username": p["username"], "is_paid": p["is_paid"],
                    })
            return out[:limit]

        if "LEFT JOIN LATERAL" in sql:
            now, limit = args
            out = []
            for pid in sorted(principals):
                p = principals[pid]
                active = [
                    s for s in subs.values()
                    if s["principal_id"] == pid and s["status"] == "active" and s["expires_at"] > now
                ]
                until = max(s["expires_at"] for s in active) if active else None
                referral = any(s["referral_enabled"] for s in active)
                if (p["is_paid"] != (until is not None) or p["paid_until"] != until
                        or p["referral_enabled"] != referral):
                    out.append({"id": pid})
            return out[:limit]

        if "SELECT r.*, p.username, p.chat_id" in sql:
            (limit,) = args
            pending = sorted(
                (r for r in self.state["renewal_requests"].values() if r["status"] == "pending"),
                key=lambda r: r["created_at"],
            )
            return [
                dict(r, username=principals[r["principal_id"]]["username"],
                     chat_id=principals[r["principal_id"]]["chat_id"])
                for r in pending[:limit]
            ]

        if "SELECT s.*, p.username, p.chat_id FROM subscriptions s" in sql:
            limit, offset, status = args
            rows = sorted(
                (dict(s, username=principals[s["principal_id"]]["username"],
                      chat_id=principals[s["principal_id"]]["chat_id"])
                 for s in subs.values() if status is None or s["status"] == status),
                key=lambda s: (s["created_at"], s["id"]), reverse=True,
            )
            return rows[offset:offset + limit]

        if "SELECT * FROM subscriptions WHERE principal_id = $1" in sql:
            pid, limit = args
            rows = sorted(
                (dict(s) for s in subs.values() if s["principal_id"] == pid),
                key=lambda s: (s["starts_at"], s["id"]), reverse=True,
            )
            return rows[:limit]

        if "SELECT * FROM discount_transactions" in sql:
            pid, limit = args
            rows = [dict(t) for t in self.state["discount_transactions"] if t["principal_id"] == pid]
            return list(reversed(rows))[:limit]

        raise AssertionError(f"Unhandled fetch: {sql}")


@pytest.fixture
def ledger():
    """database.py wired to a fresh FakeLedger, notifications disabled"""
    fake = FakeLedger()
    with patch("database.get_pool", AsyncMock(return_value=fake.pool)), \
            patch("database.DB_READY", True), \
            patch("app.services.notifications.service._bot", None):
        yield fake
