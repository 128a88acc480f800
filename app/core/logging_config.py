"""
Logging configuration for the API and worker processes.

Routes logs by severity for container platforms:
- INFO, WARNING -> STDOUT
- ERROR, CRITICAL -> STDERR

Records go through a QueueHandler so request handlers and queue consumers
never block on stdout/stderr; a QueueListener thread does the writing.
Every record carries the current correlation id (request or job).
"""

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener

from app.utils.logging_helpers import get_correlation_id


class MaxLevelFilter(logging.Filter):
    """Pass only records up to `max_level` (inclusive)."""

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


class CorrelationIdFilter(logging.Filter):
    """Stamp the context correlation id onto records that do not carry one."""

    def filter(self, record):
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id() or "-"
        return True


_log_listener: QueueListener | None = None

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"


def setup_logging(level: int = logging.INFO):
    """
    Install the queue-based handlers on the root logger.

    Idempotent: a second call replaces the previous listener.
    Must be called before the first log line is written.
    """
    global _log_listener

    if _log_listener is not None:
        _stop_log_listener()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.DEBUG)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue = queue.Queue()
    queue_handler = QueueHandler(log_queue)
    # Correlation id must be captured on the producing task, not the listener thread
    queue_handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(queue_handler)

    _log_listener = QueueListener(
        log_queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(_stop_log_listener)

    # uvicorn installs its own handlers; route them through the root logger instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def _stop_log_listener():
    """Stop the queue listener (called at exit)."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
