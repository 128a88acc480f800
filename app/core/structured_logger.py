"""
Structured lifecycle logging.

Single contract for sign-in, allocation and queue lifecycle logs:
- component   (signup, allocator, queue, worker, http, kol)
- operation
- correlation_id (optional, falls back to the context id)
- outcome     (success, deferred, failed, retry, skipped, ...)
- duration_ms (optional, omitted if None)
- reason      (optional, short and non-PII)

Do not log secrets, cookie values or full profiles.
"""
from logging import Logger
from typing import Optional

from app.utils.logging_helpers import get_correlation_id


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    correlation_id: Optional[str] = None,
    outcome: str,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields,
) -> None:
    """
    Emit a structured log event.

    Extra keyword `fields` (e.g. identity, position, job_id) are attached to
    the record and appended to the message as key=value pairs.
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    correlation_id = correlation_id or get_correlation_id()
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason

    msg = message or f"{component} {operation} outcome={outcome}"
    details = []
    if reason is not None:
        details.append(f"reason={reason}")
    if duration_ms is not None:
        details.append(f"duration_ms={duration_ms}")
    for key, value in fields.items():
        if value is None:
            continue
        extra.setdefault(key, value)
        details.append(f"{key}={value}")
    if details:
        msg = f"{msg} " + " ".join(details)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)
