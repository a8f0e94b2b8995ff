"""
Structured JSON log lines for engine operations and scheduled jobs.

Logging contract:
- correlation_id: one per engine call or job iteration
- component: engine | job
- operation: activate, approve_renewal, expiry_sweep, ...
- outcome: success | noop | degraded | failed | skipped

Failure taxonomy:
- domain_error: rejected by ledger rules (invalid plan, nothing pending, ...)
- infra_error: database, Redis, network, timeouts
- dependency_error: Telegram Bot API
- unexpected_error: everything else
"""

import asyncio
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

import asyncpg
from aiogram.exceptions import TelegramAPIError
from redis.exceptions import RedisError

from app.services.subscriptions.exceptions import SubscriptionServiceError

_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _emit(log_data: dict, outcome: str) -> None:
    """Write one JSON line at the level matching the outcome"""
    if outcome == "failed":
        log_data["level"] = "ERROR"
        logger.error(json.dumps(log_data, default=str))
    elif outcome == "degraded":
        log_data["level"] = "WARNING"
        logger.warning(json.dumps(log_data, default=str))
    else:
        log_data["level"] = "INFO"
        logger.info(json.dumps(log_data, default=str))


def log_worker_iteration_start(
    worker_name: str,
    iteration_number: Optional[int] = None,
    **kwargs
) -> str:
    """
    Log the start of a job iteration.

    Returns:
        Correlation ID for this iteration
    """
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)

    log_data = {
        "event": "ITERATION_START",
        "worker": worker_name,
        "correlation_id": correlation_id,
        "component": "job",
        "operation": f"{worker_name}_iteration",
        "timestamp": _timestamp(),
    }
    if iteration_number is not None:
        log_data["iteration_number"] = iteration_number
    if kwargs:
        log_data.update(kwargs)

    _emit(log_data, "success")
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    log_data = {
        "event": "ITERATION_END",
        "worker": worker_name,
        "correlation_id": get_correlation_id(),
        "component": "job",
        "operation": f"{worker_name}_iteration",
        "outcome": outcome,
        "timestamp": _timestamp(),
    }
    if items_processed is not None:
        log_data["items_processed"] = items_processed
    if error_type:
        log_data["error_type"] = error_type
    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms
    if kwargs:
        log_data.update(kwargs)

    _emit(log_data, outcome)


def classify_error(exception: Exception) -> str:
    """
    Map an exception onto the failure taxonomy.

    Returns:
        "domain_error" | "infra_error" | "dependency_error" | "unexpected_error"
    """
    if isinstance(exception, SubscriptionServiceError):
        # storage_error wraps a rolled-back transaction: infrastructure, not a rule
        if exception.reason == "storage_error":
            return "infra_error"
        return "domain_error"

    if isinstance(exception, (
        asyncpg.PostgresError,
        asyncpg.InterfaceError,
        RedisError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    if isinstance(exception, TelegramAPIError):
        return "dependency_error"

    return "unexpected_error"


def log_operation(
    component: str,
    operation: str,
    outcome: str,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """Generic structured line for one engine operation"""
    log_data = {
        "event": "OPERATION",
        "correlation_id": get_correlation_id(),
        "component": component,
        "operation": operation,
        "outcome": outcome,
        "timestamp": _timestamp(),
    }
    if error_type:
        log_data["error_type"] = error_type
    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms
    if kwargs:
        log_data.update(kwargs)

    _emit(log_data, outcome)
