"""
Structured logging helpers for HTTP requests and queue consumers.

Logging contract:
- correlation_id: request id (HTTP) or job id (worker)
- component: http | worker | service
- operation: what is happening
- outcome: success | degraded | failed | skipped

Failure taxonomy:
- infra_error: database, Redis, network, timeouts
- domain_error: validation, conflicts, business rules
- unexpected_error: bugs, unhandled exceptions
"""

import asyncio
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

import asyncpg
import redis.exceptions

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set the correlation id for the current task context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """
    Mask a secret or token for logging.

    Example:
        mask_secret("SIGN-ABCDE-x9Yz1234") -> "SIGN***"
    """
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}***"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _emit(log_data: dict, outcome: str) -> None:
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
    correlation_id: Optional[str] = None,
    **kwargs
) -> str:
    """
    Log the start of one worker unit of work (a job or a maintenance pass).

    Args:
        worker_name: Name of the worker (e.g. "referral_worker")
        iteration_number: Iteration number (optional)
        correlation_id: Id to bind to the context; a UUID is generated if omitted
        **kwargs: Additional context to log

    Returns:
        Correlation ID bound for this iteration
    """
    if correlation_id is None:
        correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)

    log_data = {
        "event": "ITERATION_START",
        "worker": worker_name,
        "correlation_id": correlation_id,
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "timestamp": _utc_timestamp(),
    }
    if iteration_number is not None:
        log_data["iteration_number"] = iteration_number
    if kwargs:
        log_data.update(kwargs)

    log_data["level"] = "INFO"
    logger.info(json.dumps(log_data, default=str))
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,  # "success" | "degraded" | "failed" | "skipped"
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """
    Log the end of one worker unit of work.

    Args:
        worker_name: Name of the worker
        outcome: "success" | "degraded" | "failed" | "skipped"
        items_processed: Number of items processed (optional)
        error_type: Failure taxonomy bucket when outcome is "failed"
        duration_ms: Duration in milliseconds (optional)
        **kwargs: Additional context to log
    """
    log_data = {
        "event": "ITERATION_END",
        "worker": worker_name,
        "correlation_id": get_correlation_id(),
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "outcome": outcome,
        "timestamp": _utc_timestamp(),
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


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    **kwargs
) -> None:
    """Log one completed HTTP request."""
    if status_code >= 500:
        outcome = "failed"
    elif status_code >= 400:
        outcome = "degraded"
    else:
        outcome = "success"

    log_data = {
        "event": "HTTP_REQUEST",
        "correlation_id": get_correlation_id(),
        "component": "http",
        "operation": f"{method} {path}",
        "status_code": status_code,
        "outcome": outcome,
        "duration_ms": round(duration_ms, 2),
        "timestamp": _utc_timestamp(),
    }
    if kwargs:
        log_data.update(kwargs)

    # 4xx responses are caller errors; keep them at INFO
    _emit(log_data, "failed" if outcome == "failed" else "success")


def classify_error(exception: Exception) -> str:
    """
    Classify an exception into the failure taxonomy.

    Returns:
        "infra_error" | "domain_error" | "unexpected_error"
    """
    from app.core.exceptions import SignatureCampaignError

    if isinstance(exception, SignatureCampaignError):
        return "domain_error"

    if isinstance(exception, (
        asyncpg.PostgresError,
        redis.exceptions.RedisError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    return "unexpected_error"
