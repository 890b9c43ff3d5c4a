"""Correlation-ID aware logging for PayAgent.

Every inbound API request runs inside a correlation context so that a single
payment (verification, fee quote, ledger write and the webhook fan-out that
follows it) can be traced through the logs.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


class CorrelationIdFilter(logging.Filter):
    """Stamp log records with the active correlation ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper()))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "name": "%(name)s", '
            '"message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)

    # httpx logs every request line at INFO, which drowns out webhook output
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_correlation_id() -> Optional[str]:
    """Return the correlation ID of the current context, if any."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    return f"req-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically ``__name__``)."""
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager binding a correlation ID to a block of code.

    Background tasks created inside the block inherit the ID, which is how
    webhook deliveries stay attached to the request that triggered them.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = correlation_id_var.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id_var.reset(self._token)
