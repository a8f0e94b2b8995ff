import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation through prefixes
# ====================================================================================
# Every variable is read with the environment prefix:
#   - PROD: PROD_BOT_TOKEN, PROD_DATABASE_URL, PROD_OPERATOR_CHAT_ID
#   - STAGE: STAGE_BOT_TOKEN, STAGE_DATABASE_URL, STAGE_OPERATOR_CHAT_ID
#   - LOCAL: LOCAL_BOT_TOKEN, LOCAL_DATABASE_URL, LOCAL_OPERATOR_CHAT_ID
#
# A STAGE process can never pick up PROD_DATABASE_URL by accident.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "local").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "BOT_TOKEN")
        default: Value returned when the variable is not set

    Example:
        env("DATABASE_URL") -> value of STAGE_DATABASE_URL when APP_ENV=stage
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def env_int(key: str, default: int) -> int:
    raw = env(key, default=str(default))
    try:
        return int(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be an integer, got: {raw}", file=sys.stderr)
        sys.exit(1)


# Unprefixed secrets are refused so that environments never mix
_direct_usage_vars = ["BOT_TOKEN", "DATABASE_URL", "OPERATOR_CHAT_ID"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

# ====================================================================================
# Notifications
# ====================================================================================

# Telegram bot used only as the outbound notification transport.
# Without a token the engine keeps working and notifications are skipped.
BOT_TOKEN = env("BOT_TOKEN")
if not BOT_TOKEN:
    print(f"WARNING: {APP_ENV.upper()}_BOT_TOKEN is not set - notifications will be skipped", file=sys.stderr)

# Operator / owner channel for audit messages (new subscriptions, expiries, renewals)
OPERATOR_CHAT_ID_STR = env("OPERATOR_CHAT_ID")
OPERATOR_CHAT_ID = None
if OPERATOR_CHAT_ID_STR:
    try:
        OPERATOR_CHAT_ID = int(OPERATOR_CHAT_ID_STR)
    except ValueError:
        print(f"ERROR: OPERATOR_CHAT_ID must be a number, got: {OPERATOR_CHAT_ID_STR}", file=sys.stderr)
        sys.exit(1)

CURRENCY_SYMBOL = env("CURRENCY_SYMBOL", default="₦")

# Root log level (DEBUG, INFO, WARNING, ...)
LOG_LEVEL = env("LOG_LEVEL", default="INFO").upper()

# ====================================================================================
# Plans
# ====================================================================================

# Plan table: plan key -> price (naira), duration in days, referral bonus credited
# to whoever referred the buyer. Overridable with a JSON file via PLANS_FILE.
PLAN_TABLE_VERSION = "2024-11-tiered"
PLANS = {
    "daily": {"price": 500, "days": 1, "bonus": 100},
    "2days": {"price": 900, "days": 2, "bonus": 200},
    "weekly": {"price": 3000, "days": 7, "bonus": 500},
    "monthly": {"price": 10000, "days": 30, "bonus": 1500},
    "yearly": {"price": 100000, "days": 365, "bonus": 15000},
}
PLANS_FILE = env("PLANS_FILE")

# One lifetime trial per principal
TRIAL_DAYS = env_int("TRIAL_DAYS", 3)

# ====================================================================================
# Background jobs
# ====================================================================================

SWEEP_INTERVAL_SECONDS = env_int("SWEEP_INTERVAL_SECONDS", 600)
STALE_RENEWAL_HOURS = env_int("STALE_RENEWAL_HOURS", 48)
STALE_RENEWAL_INTERVAL_SECONDS = env_int("STALE_RENEWAL_INTERVAL_SECONDS", 3600)
RECONCILE_INTERVAL_SECONDS = env_int("RECONCILE_INTERVAL_SECONDS", 3600)
RETENTION_DAYS = env_int("RETENTION_DAYS", 180)
RETENTION_INTERVAL_SECONDS = env_int("RETENTION_INTERVAL_SECONDS", 86400)

# Redis is optional: with it, only one process runs each scheduled tick
REDIS_URL = env("REDIS_URL", default="")
