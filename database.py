import asyncpg
import asyncio
import os
import sys
import hashlib
import base64
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable
import logging
import config
from app.utils.retry import retry_async
from app.services.subscriptions.exceptions import (
    LedgerWriteError,
    NoPendingRequestError,
    PrincipalNotFoundError,
)
from app.services.subscriptions.plans import Plan, PlanTable, GIFT_TIER, TRIAL_TIER
from app.services.subscriptions.pricing import (
    DiscountSplit,
    PaidSummary,
    calculate_period,
    derive_paid_summary,
    split_discount,
)

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: database readiness flag
# ====================================================================================
# False until init_db() has created the pool and applied migrations.
# Read-only helpers return empty results while False; scheduled jobs are skipped.
# ====================================================================================
DB_READY: bool = False


# ====================================================================================
# UTC HELPERS: DB boundary, TIMESTAMP WITHOUT TIME ZONE requires naive UTC
# ====================================================================================
# The schema stores naive UTC. The application works with timezone-aware UTC.
# Everything passed TO asyncpg goes through _to_db_utc, everything read FROM it
# through _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert aware UTC datetime to naive UTC for DB storage.
    Must raise if dt is not timezone-aware UTC.
    """
    if dt is None:
        return None
    assert dt.tzinfo == timezone.utc, f"Expected UTC, got tzinfo={dt.tzinfo}"
    return dt.replace(tzinfo=None)


def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive DB datetime (stored as UTC) to aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


_DATETIME_COLUMNS = (
    "starts_at", "expires_at", "created_at", "decided_at", "expiry_notified_at",
    "paid_until", "trial_used_at",
)


def _normalize_row(row: Optional[Any]) -> Optional[Dict[str, Any]]:
    """Row -> dict with naive DB timestamps converted to aware UTC."""
    if row is None:
        return None
    d = dict(row)
    for k in _DATETIME_COLUMNS:
        if k in d and isinstance(d[k], datetime):
            d[k] = _from_db_utc(d[k])
    return d


def _normalize_rows(rows: Iterable[Any]) -> List[Dict[str, Any]]:
    return [_normalize_row(row) for row in rows]


def _affected_rows(status: str) -> int:
    """asyncpg execute() returns a command tag like 'UPDATE 3'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, ValueError, IndexError):
        return 0


# ====================================================================================
# POOL
# ====================================================================================

DATABASE_URL = config.env("DATABASE_URL")


def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs. Single source of truth for all pool creation."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "10")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


if not DATABASE_URL:
    if config.APP_ENV == "prod":
        print(f"ERROR: {config.APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    else:
        logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Return the shared pool, creating it on first use.

    Pool creation is retried once on transient asyncpg errors.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        _pool = await retry_async(
            lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
            retries=1,
            base_delay=0.5,
            max_delay=5.0,
            retry_on=(asyncpg.PostgresError, OSError),
        )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db() -> bool:
    """
    Probe connectivity, create the pool and apply migrations.

    Idempotent: returns immediately once DB_READY is set.

    Returns:
        True when the database is ready, False otherwise
    """
    global DB_READY

    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not DATABASE_URL:
        logger.error("DATABASE_URL not configured")
        return False

    try:
        pool = await get_pool()
    except Exception as e:
        logger.error(f"Failed to create database pool: {e}")
        return False

    # Let the loop breathe between pool creation and DDL
    await asyncio.sleep(0)

    try:
        import migrations
        if not await migrations.run_migrations_safe(pool):
            logger.error("Migration execution failed")
            return False
    except Exception as e:
        logger.error(f"Migration execution failed: {e}")
        return False

    DB_READY = True
    logger.info("DB_READY=True")
    return True


# ====================================================================================
# PRINCIPALS
# ====================================================================================

REFERRAL_CODE_LENGTH = 6
REFERRAL_CODE_MAX_LENGTH = 12


def generate_referral_code(principal_id: int, length: int = REFERRAL_CODE_LENGTH) -> str:
    """
    Deterministic referral code for a principal.

    sha256(id) -> base32 (A-Z, 2-7), first `length` characters.
    """
    digest = hashlib.sha256(f"principal:{principal_id}".encode()).digest()
    encoded = base64.b32encode(digest).decode("ascii").rstrip("=")
    return encoded[:length].upper()


async def create_principal(
    chat_id: Optional[int],
    username: Optional[str] = None,
    referred_by: Optional[str] = None
) -> Dict[str, Any]:
    """
    Insert a principal and assign its referral code in one transaction.

    On a code collision the code is lengthened one character at a time
    (savepoint per attempt) until it is unique.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            principal_id = await conn.fetchval(
                """INSERT INTO principals (chat_id, username, referred_by)
                   VALUES ($1, $2, $3)
                   RETURNING id""",
                chat_id, username, referred_by
            )
            row = None
            for length in range(REFERRAL_CODE_LENGTH, REFERRAL_CODE_MAX_LENGTH + 1):
                try:
                    async with conn.transaction():
                        row = await conn.fetchrow(
                            "UPDATE principals SET referral_code = $1 WHERE id = $2 RETURNING *",
                            generate_referral_code(principal_id, length), principal_id
                        )
                    break
                except asyncpg.UniqueViolationError:
                    logger.warning(f"REFERRAL_CODE_COLLISION principal={principal_id} length={length}")
            if row is None:
                raise LedgerWriteError(f"Could not assign a unique referral code to principal {principal_id}")
    logger.info(f"PRINCIPAL_CREATED id={principal_id} referred_by={referred_by}")
    return _normalize_row(row)


async def get_principal(principal_id: int) -> Optional[Dict[str, Any]]:
    if not DB_READY:
        logger.warning("DB not ready, get_principal skipped")
        return None
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM principals WHERE id = $1", principal_id)
        return _normalize_row(row)


async def find_principal_by_referral_code(referral_code: str) -> Optional[Dict[str, Any]]:
    if not DB_READY:
        logger.warning("DB not ready (degraded mode), find_principal_by_referral_code skipped")
        return None
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT * FROM principals WHERE referral_code = $1", referral_code
        )
        return _normalize_row(row)


async def _lock_principal(conn: asyncpg.Connection, principal_id: int) -> Dict[str, Any]:
    """
    Serialize every ledger mutation of one principal.

    Advisory lock first (covers rows that do not exist yet, e.g. the new
    subscription), then the principal row itself. Must run inside a transaction.

    Raises:
        PrincipalNotFoundError: If the principal does not exist
    """
    await conn.execute("SELECT pg_advisory_xact_lock($1)", principal_id)
    row = await conn.fetchrow(
        "SELECT * FROM principals WHERE id = $1 FOR UPDATE", principal_id
    )
    if not row:
        raise PrincipalNotFoundError(f"Principal {principal_id} not found")
    return _normalize_row(row)


async def _fetch_active_subscriptions(
    conn: asyncpg.Connection,
    principal_id: int,
    now: datetime
) -> List[Dict[str, Any]]:
    rows = await conn.fetch(
        """SELECT id, tier, starts_at, expires_at, status, referral_enabled
           FROM subscriptions
           WHERE principal_id = $1
           AND status = 'active'
           AND expires_at > $2
           ORDER BY expires_at DESC""",
        principal_id, _to_db_utc(now)
    )
    return _normalize_rows(rows)


async def _recompute_summary(
    conn: asyncpg.Connection,
    principal_id: int,
    now: datetime
) -> PaidSummary:
    """
    Re-read the active set inside the caller's transaction and store the summary.

    The caller must hold the principal lock, so the rows read here are the rows
    that will be committed.
    """
    active = await _fetch_active_subscriptions(conn, principal_id, now)
    summary = derive_paid_summary(active, now)
    await conn.execute(
        """UPDATE principals
           SET is_paid = $1, paid_until = $2, referral_enabled = $3, version = version + 1
           WHERE id = $4""",
        summary.is_paid, _to_db_utc(summary.paid_until), summary.referral_enabled, principal_id
    )
    return summary


async def _insert_subscription(
    conn: asyncpg.Connection,
    principal_id: int,
    tier: str,
    starts_at: datetime,
    expires_at: datetime,
    split: DiscountSplit,
    referral_enabled: bool,
    is_gift: bool = False,
    renewal_request_id: Optional[int] = None
) -> Dict[str, Any]:
    row = await conn.fetchrow(
        """INSERT INTO subscriptions
               (principal_id, tier, starts_at, expires_at, base_price, discount_applied,
                price, status, referral_enabled, is_gift, renewal_request_id)
           VALUES ($1, $2, $3, $4, $5, $6, $7, 'active', $8, $9, $10)
           RETURNING *""",
        principal_id, tier, _to_db_utc(starts_at), _to_db_utc(expires_at),
        split.base_price, split.consumed, split.final_price,
        referral_enabled, is_gift, renewal_request_id
    )
    return _normalize_row(row)


# ====================================================================================
# TRIAL
# ====================================================================================

async def grant_trial_atomic(principal_id: int, days: int, now: datetime) -> Optional[Dict[str, Any]]:
    """
    Create the lifetime trial if the principal is eligible.

    Not eligible when a trial row exists in any status, trial_used_at is set, or
    a non-trial subscription is active.

    Returns:
        {"subscription": dict, "summary": PaidSummary, "principal": dict} or None (no-op)

    Raises:
        PrincipalNotFoundError: If the principal does not exist
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            principal = await _lock_principal(conn, principal_id)
            if principal.get("trial_used_at") is not None:
                logger.info(f"TRIAL_SKIPPED principal={principal_id} reason=trial_already_used")
                return None

            existing_trial = await conn.fetchval(
                "SELECT 1 FROM subscriptions WHERE principal_id = $1 AND tier = $2 LIMIT 1",
                principal_id, TRIAL_TIER
            )
            if existing_trial:
                logger.info(f"TRIAL_SKIPPED principal={principal_id} reason=trial_row_exists")
                return None

            active_paid = await conn.fetchval(
                """SELECT 1 FROM subscriptions
                   WHERE principal_id = $1 AND tier != $2 AND status = 'active'
                   LIMIT 1""",
                principal_id, TRIAL_TIER
            )
            if active_paid:
                logger.info(f"TRIAL_SKIPPED principal={principal_id} reason=has_active_subscription")
                return None

            starts_at, expires_at = calculate_period(now, None, days)
            subscription = await _insert_subscription(
                conn, principal_id, TRIAL_TIER, starts_at, expires_at,
                DiscountSplit(base_price=0, consumed=0, final_price=0),
                referral_enabled=False,
            )
            await conn.execute(
                "UPDATE principals SET trial_used_at = $1 WHERE id = $2",
                _to_db_utc(now), principal_id
            )
            summary = await _recompute_summary(conn, principal_id, now)

    logger.info(
        f"TRIAL_GRANTED principal={principal_id} subscription={subscription['id']} "
        f"expires_at={subscription['expires_at'].isoformat()}"
    )
    return {"subscription": subscription, "summary": summary, "principal": principal}


# ====================================================================================
# ACTIVATION
# ====================================================================================

async def _activate_in_transaction(
    conn: asyncpg.Connection,
    principal: Dict[str, Any],
    tier: str,
    days: int,
    base_price: int,
    referral_bonus: int,
    enable_referral: bool,
    now: datetime,
    is_gift: bool = False,
    anchor_expires_at: Optional[datetime] = None,
    renewal_request_id: Optional[int] = None
) -> Dict[str, Any]:
    """
    Activation body. Caller holds the principal lock inside a transaction.

    Order: stack period -> split discount -> insert row -> debit balance ->
    referral credit -> recompute summary. Any failure rolls back all of it.
    """
    principal_id = principal["id"]

    active = await _fetch_active_subscriptions(conn, principal_id, now)
    current_expires_at = active[0]["expires_at"] if active else None
    if anchor_expires_at is not None and (current_expires_at is None or anchor_expires_at > current_expires_at):
        current_expires_at = anchor_expires_at
    starts_at, expires_at = calculate_period(now, current_expires_at, days)

    if is_gift:
        split = DiscountSplit(base_price=0, consumed=0, final_price=0)
    else:
        split = split_discount(principal.get("discount_balance") or 0, base_price)

    subscription = await _insert_subscription(
        conn, principal_id, tier, starts_at, expires_at, split,
        referral_enabled=enable_referral,
        is_gift=is_gift,
        renewal_request_id=renewal_request_id,
    )

    if split.consumed > 0:
        status = await conn.execute(
            """UPDATE principals
               SET discount_balance = discount_balance - $1, version = version + 1
               WHERE id = $2 AND discount_balance >= $1""",
            split.consumed, principal_id
        )
        if _affected_rows(status) != 1:
            raise LedgerWriteError(
                f"Discount balance changed under lock for principal {principal_id}"
            )
        await conn.execute(
            """INSERT INTO discount_transactions (principal_id, subscription_id, amount, kind)
               VALUES ($1, $2, $3, 'activation_debit')""",
            principal_id, subscription["id"], -split.consumed
        )

    reward = None
    referred_by = principal.get("referred_by")
    if referred_by and split.final_price > 0 and not is_gift:
        referrer = await conn.fetchrow(
            "SELECT id, chat_id, username FROM principals WHERE referral_code = $1 FOR UPDATE",
            referred_by
        )
        if referrer and referrer["id"] != principal_id:
            await conn.execute(
                """UPDATE principals
                   SET discount_balance = discount_balance + $1,
                       referral_count = referral_count + 1,
                       version = version + 1
                   WHERE id = $2""",
                referral_bonus, referrer["id"]
            )
            if referral_bonus > 0:
                await conn.execute(
                    """INSERT INTO discount_transactions (principal_id, subscription_id, amount, kind)
                       VALUES ($1, $2, $3, 'referral_credit')""",
                    referrer["id"], subscription["id"], referral_bonus
                )
            reward = {
                "referrer_id": referrer["id"],
                "referrer_chat_id": referrer["chat_id"],
                "referrer_username": referrer["username"],
                "amount": referral_bonus,
            }
            logger.info(
                f"REFERRAL_REWARD_CREDITED referrer={referrer['id']} referred={principal_id} "
                f"subscription={subscription['id']} amount={referral_bonus}"
            )
        else:
            logger.warning(
                f"REFERRAL_REFERRER_NOT_FOUND principal={principal_id} code={referred_by}"
            )
        # One reward per relationship: the code is consumed either way
        await conn.execute(
            "UPDATE principals SET referred_by = NULL WHERE id = $1", principal_id
        )

    summary = await _recompute_summary(conn, principal_id, now)
    return {
        "subscription": subscription,
        "split": split,
        "reward": reward,
        "summary": summary,
        "principal": principal,
    }


async def activate_subscription_atomic(
    principal_id: int,
    plan: Plan,
    enable_referral: bool,
    now: datetime
) -> Dict[str, Any]:
    """
    Activate a paid plan for a principal in one transaction.

    Returns:
        {"subscription", "split", "reward", "summary", "principal"}

    Raises:
        PrincipalNotFoundError: If the principal does not exist
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            principal = await _lock_principal(conn, principal_id)
            result = await _activate_in_transaction(
                conn, principal, plan.key, plan.days, plan.price, plan.referral_bonus,
                enable_referral, now,
            )
    _log_activation("SUBSCRIPTION_ACTIVATED", principal_id, result)
    return result


async def grant_gift_atomic(
    principal_id: int,
    days: int,
    enable_referral: bool,
    now: datetime
) -> Dict[str, Any]:
    """Operator-issued free period. No discount consumption, no referral reward."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            principal = await _lock_principal(conn, principal_id)
            result = await _activate_in_transaction(
                conn, principal, GIFT_TIER, days, 0, 0, enable_referral, now, is_gift=True,
            )
    _log_activation("GIFT_GRANTED", principal_id, result)
    return result


def _log_activation(event: str, principal_id: int, result: Dict[str, Any]) -> None:
    subscription = result["subscription"]
    split = result["split"]
    logger.info(
        f"{event} principal={principal_id} subscription={subscription['id']} "
        f"tier={subscription['tier']} base_price={split.base_price} consumed={split.consumed} "
        f"price={split.final_price} starts_at={subscription['starts_at'].isoformat()} "
        f"expires_at={subscription['expires_at'].isoformat()}"
    )


# ====================================================================================
# RENEWAL REQUESTS
# ====================================================================================

async def create_renewal_request(principal_id: int, plan_key: str, now: datetime) -> Optional[Dict[str, Any]]:
    """
    Insert a pending request.

    Uniqueness of (principal, plan) among pending rows is enforced by the partial
    unique index; a conflict returns None instead of a second row.

    Raises:
        PrincipalNotFoundError: If the principal does not exist
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        try:
            row = await conn.fetchrow(
                """INSERT INTO renewal_requests (principal_id, plan, status, created_at)
                   VALUES ($1, $2, 'pending', $3)
                   ON CONFLICT (principal_id, plan) WHERE status = 'pending' DO NOTHING
                   RETURNING *""",
                principal_id, plan_key, _to_db_utc(now)
            )
        except asyncpg.ForeignKeyViolationError as e:
            raise PrincipalNotFoundError(f"Principal {principal_id} not found") from e
    if row is None:
        logger.info(f"RENEWAL_REQUEST_DUPLICATE principal={principal_id} plan={plan_key}")
        return None
    logger.info(f"RENEWAL_REQUESTED principal={principal_id} plan={plan_key} request={row['id']}")
    return _normalize_row(row)


async def _fetch_pending_request(
    conn: asyncpg.Connection,
    principal_id: int,
    plan_key: Optional[str]
) -> Dict[str, Any]:
    """
    Resolve the pending request to act on: the given plan's, or the most recent one.

    Raises:
        NoPendingRequestError: If nothing is pending
    """
    if plan_key:
        row = await conn.fetchrow(
            """SELECT * FROM renewal_requests
               WHERE principal_id = $1 AND plan = $2 AND status = 'pending'
               FOR UPDATE""",
            principal_id, plan_key
        )
    else:
        row = await conn.fetchrow(
            """SELECT * FROM renewal_requests
               WHERE principal_id = $1 AND status = 'pending'
               ORDER BY created_at DESC, id DESC
               LIMIT 1
               FOR UPDATE""",
            principal_id
        )
    if not row:
        raise NoPendingRequestError(f"No pending renewal request for principal {principal_id}")
    return _normalize_row(row)


async def approve_renewal_atomic(
    principal_id: int,
    plan_key: Optional[str],
    plan_table: PlanTable,
    now: datetime
) -> Dict[str, Any]:
    """
    Approve a pending request and activate its plan in one transaction.

    Still-active periods are marked expired ('superseded') so the old and new
    periods never look active together; the latest superseded expiry is carried
    forward as the stacking anchor so no paid time is lost.

    Returns:
        activation result plus "request" and "superseded" (list of ids)

    Raises:
        PrincipalNotFoundError, NoPendingRequestError, InvalidPlanError
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            principal = await _lock_principal(conn, principal_id)
            request = await _fetch_pending_request(conn, principal_id, plan_key)
            plan = plan_table.get(request["plan"])

            await conn.execute(
                """UPDATE renewal_requests
                   SET status = 'approved', decided_at = $1, decided_by = 'operator'
                   WHERE id = $2""",
                _to_db_utc(now), request["id"]
            )

            superseded = await conn.fetch(
                """UPDATE subscriptions
                   SET status = 'expired', expired_by = 'superseded', expiry_notified_at = $2
                   WHERE principal_id = $1 AND status = 'active' AND expires_at > $2
                   RETURNING id, expires_at""",
                principal_id, _to_db_utc(now)
            )
            superseded = _normalize_rows(superseded)
            anchor = max((row["expires_at"] for row in superseded), default=None)

            result = await _activate_in_transaction(
                conn, principal, plan.key, plan.days, plan.price, plan.referral_bonus,
                bool(principal.get("referral_enabled")), now,
                anchor_expires_at=anchor,
                renewal_request_id=request["id"],
            )

    request["status"] = "approved"
    result["request"] = request
    result["superseded"] = [row["id"] for row in superseded]
    _log_activation("RENEWAL_APPROVED", principal_id, result)
    return result


async def reject_renewal_atomic(
    principal_id: int,
    plan_key: Optional[str],
    now: datetime
) -> Dict[str, Any]:
    """
    Reject a pending request. No ledger changes.

    Returns the request with the requester's chat_id and username,
    read inside the same transaction.

    Raises:
        NoPendingRequestError: If nothing is pending
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            request = await _fetch_pending_request(conn, principal_id, plan_key)
            requester = await conn.fetchrow(
                "SELECT chat_id, username FROM principals WHERE id = $1", principal_id
            )
            await conn.execute(
                """UPDATE renewal_requests
                   SET status = 'rejected', decided_at = $1, decided_by = 'operator'
                   WHERE id = $2""",
                _to_db_utc(now), request["id"]
            )
    request["status"] = "rejected"
    request["chat_id"] = requester["chat_id"] if requester else None
    request["username"] = requester["username"] if requester else None
    logger.info(f"RENEWAL_REJECTED principal={principal_id} plan={request['plan']} request={request['id']}")
    return request


async def reject_stale_renewals(cutoff: datetime, now: datetime) -> int:
    """Silently reject requests still pending since before cutoff"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute(
            """UPDATE renewal_requests
               SET status = 'rejected', decided_at = $2, decided_by = 'stale'
               WHERE status = 'pending' AND created_at <= $1""",
            _to_db_utc(cutoff), _to_db_utc(now)
        )
    return _affected_rows(status)


async def list_pending_renewals(limit: int = 100) -> List[Dict[str, Any]]:
    if not DB_READY:
        logger.warning("DB not ready, list_pending_renewals skipped")
        return []
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT r.*, p.username, p.chat_id
               FROM renewal_requests r
               JOIN principals p ON p.id = r.principal_id
               WHERE r.status = 'pending'
               ORDER BY r.created_at ASC
               LIMIT $1""",
            limit
        )
        return _normalize_rows(rows)


# ====================================================================================
# EXPIRY
# ====================================================================================

async def get_due_principal_ids(now: datetime, limit: int = 500) -> List[int]:
    """Principals owning at least one active row with expires_at <= now"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT DISTINCT principal_id
               FROM subscriptions
               WHERE status = 'active' AND expires_at <= $1
               ORDER BY principal_id
               LIMIT $2""",
            _to_db_utc(now), limit
        )
    return [row["principal_id"] for row in rows]


async def expire_due_subscriptions_for_principal(principal_id: int, now: datetime) -> List[Dict[str, Any]]:
    """
    Transition one principal's lapsed rows and recompute its summary.

    Runs under the same principal lock as activation, so a concurrent activation
    either commits before (and its row is seen here) or after (and recomputes
    again itself). Rows already expired are excluded by the status filter.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await _lock_principal(conn, principal_id)
            rows = await conn.fetch(
                """UPDATE subscriptions
                   SET status = 'expired', expired_by = 'sweep'
                   WHERE principal_id = $1 AND status = 'active' AND expires_at <= $2
                   RETURNING id, principal_id, tier, expires_at""",
                principal_id, _to_db_utc(now)
            )
            if rows:
                await _recompute_summary(conn, principal_id, now)
    return _normalize_rows(rows)


async def get_unnotified_expirations(limit: int = 200) -> List[Dict[str, Any]]:
    """Swept rows whose expiry messages have not been dispatched yet"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT s.id, s.principal_id, s.tier, s.expires_at,
                      p.chat_id, p.username, p.is_paid
               FROM subscriptions s
               JOIN principals p ON p.id = s.principal_id
               WHERE s.status = 'expired' AND s.expiry_notified_at IS NULL
               ORDER BY s.id
               LIMIT $1""",
            limit
        )
    return _normalize_rows(rows)


async def mark_expiry_notified(subscription_ids: List[int], now: datetime) -> int:
    if not subscription_ids:
        return 0
    pool = await get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute(
            """UPDATE subscriptions
               SET expiry_notified_at = $2
               WHERE id = ANY($1::bigint[]) AND expiry_notified_at IS NULL""",
            subscription_ids, _to_db_utc(now)
        )
    return _affected_rows(status)


# ====================================================================================
# RECONCILIATION / RETENTION
# ====================================================================================

async def get_principals_with_stale_summary(now: datetime, limit: int = 500) -> List[int]:
    """Principals whose stored is_paid / paid_until / referral_enabled disagree with the ledger"""
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT p.id
               FROM principals p
               LEFT JOIN LATERAL (
                   SELECT MAX(s.expires_at) AS until,
                          COALESCE(bool_or(s.referral_enabled), FALSE) AS referral_enabled
                   FROM subscriptions s
                   WHERE s.principal_id = p.id AND s.status = 'active' AND s.expires_at > $1
               ) a ON TRUE
               WHERE p.is_paid IS DISTINCT FROM (a.until IS NOT NULL)
                  OR p.paid_until IS DISTINCT FROM a.until
                  OR p.referral_enabled IS DISTINCT FROM a.referral_enabled
               ORDER BY p.id
               LIMIT $2""",
            _to_db_utc(now), limit
        )
    return [row["id"] for row in rows]


async def reconcile_principal_summary(principal_id: int, now: datetime) -> PaidSummary:
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await _lock_principal(conn, principal_id)
            return await _recompute_summary(conn, principal_id, now)


async def purge_expired_subscriptions(cutoff: datetime) -> int:
    """
    Delete old expired rows.

    Trial rows stay forever (lifetime grant), as do rows referenced by the
    discount ledger.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute(
            """DELETE FROM subscriptions s
               WHERE s.status = 'expired'
               AND s.tier != $2
               AND s.expires_at < $1
               AND NOT EXISTS (
                   SELECT 1 FROM discount_transactions d WHERE d.subscription_id = s.id
               )""",
            _to_db_utc(cutoff), TRIAL_TIER
        )
    return _affected_rows(status)


# ====================================================================================
# READ MODELS
# ====================================================================================

async def get_subscription_history(principal_id: int, limit: int = 20) -> List[Dict[str, Any]]:
    if not DB_READY:
        logger.warning("DB not ready, get_subscription_history skipped")
        return []
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT * FROM subscriptions
               WHERE principal_id = $1
               ORDER BY starts_at DESC, id DESC
               LIMIT $2""",
            principal_id, limit
        )
        return _normalize_rows(rows)


async def list_all_subscriptions(
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Operator listing across principals, newest first, with the owner's username"""
    if not DB_READY:
        logger.warning("DB not ready, list_all_subscriptions skipped")
        return []
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT s.*, p.username, p.chat_id
               FROM subscriptions s
               JOIN principals p ON p.id = s.principal_id
               WHERE $3::text IS NULL OR s.status = $3
               ORDER BY s.created_at DESC, s.id DESC
               LIMIT $1 OFFSET $2""",
            limit, offset, status
        )
        return _normalize_rows(rows)


async def get_discount_transactions(principal_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    if not DB_READY:
        logger.warning("DB not ready, get_discount_transactions skipped")
        return []
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT * FROM discount_transactions
               WHERE principal_id = $1
               ORDER BY created_at DESC, id DESC
               LIMIT $2""",
            principal_id, limit
        )
        return _normalize_rows(rows)
