"""Logging setup and structured log helpers for the transport."""

import logging
import sys
import time
from typing import Any, Dict, Optional


PACKAGE_LOGGER = "karaoke_realtime"

# Rendered after the message, in this order, when present on the record
STRUCTURED_FIELDS = ("connection_id", "generation", "topic", "event_type", "operation", "latency_ms")

CONNECTION_EVENT_LEVELS = {
    "connected": logging.INFO,
    "disconnected": logging.INFO,
    "switched": logging.INFO,
    "timeout": logging.WARNING,
    "error": logging.WARNING,
    "given_up": logging.WARNING,
    "retired": logging.WARNING,
    "credential_rejected": logging.WARNING,
    "rejected_frame": logging.WARNING,
}

SYNC_EVENT_LEVELS = {
    "mismatch": logging.WARNING,
    "integrity_failed": logging.WARNING,
    "resync_requested": logging.INFO,
    "resync_timeout": logging.WARNING,
}

SLOW_OPERATION_MS = 5000
NOTABLE_OPERATION_MS = 1000


class TransportEventFormatter(logging.Formatter):
    """Appends the structured transport fields of a record as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        return f"{line} [{', '.join(pairs)}]" if pairs else line


def _level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_transport_logging(log_level: Optional[str] = None) -> logging.Logger:
    """Attach the transport handler to the package logger once.

    Calling it again with a level changes the level of the existing setup.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(TransportEventFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(handler)
        logger.setLevel(_level(log_level or "INFO"))
    elif log_level is not None:
        logger.setLevel(_level(log_level))

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a transport module (usually ``__name__``)."""
    setup_transport_logging()
    return logging.getLogger(name)


def log_connection_event(logger: logging.Logger, connection_id: Optional[str],
                         generation: Optional[int], event: str, message: str,
                         **fields: Any) -> None:
    """Log a connection lifecycle event.

    Args:
        logger: Logger instance
        connection_id: Connection the event relates to, if any
        generation: Generation stamped on the connection
        event: Lifecycle event name, e.g. ``connected`` or ``retired``
        message: Human-readable message
        **fields: Extra record attributes
    """
    extra: Dict[str, Any] = {
        "connection_id": connection_id,
        "generation": generation,
        "event_type": f"connection_{event}",
        **fields,
    }
    logger.log(CONNECTION_EVENT_LEVELS.get(event, logging.DEBUG), message, extra=extra)


def log_sync_event(logger: logging.Logger, topic: str, event: str,
                   message: str, **fields: Any) -> None:
    """Log a topic synchronization event; ``topic`` is the string form of the topic key."""
    extra: Dict[str, Any] = {"topic": topic, "event_type": f"sync_{event}", **fields}
    logger.log(SYNC_EVENT_LEVELS.get(event, logging.DEBUG), message, extra=extra)


def log_performance_metrics(logger: logging.Logger, operation: str,
                            latency_ms: float, **fields: Any) -> None:
    """Log how long an operation took; slow operations are raised to WARNING."""
    extra: Dict[str, Any] = {
        "event_type": "performance_metrics",
        "operation": operation,
        "latency_ms": round(latency_ms, 2),
        **fields,
    }

    if latency_ms > SLOW_OPERATION_MS:
        logger.warning(f"Slow operation detected: {operation} took {latency_ms:.2f}ms", extra=extra)
    elif latency_ms > NOTABLE_OPERATION_MS:
        logger.info(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)
    else:
        logger.debug(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)


class PerformanceTimer:
    """Times a block and logs it with ``log_performance_metrics``.

    Usage::

        with PerformanceTimer(logger, "handshake", attempt=2) as timer:
            await handshake()
        timer.elapsed_ms
    """

    def __init__(self, logger: logging.Logger, operation: str, **fields: Any):
        self.logger = logger
        self.operation = operation
        self.fields = fields
        self.elapsed_ms: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "PerformanceTimer":
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.elapsed_ms = (time.monotonic() - self._started) * 1000
        if exc_type is not None:
            self.fields.update(error=str(exc_val), error_type=exc_type.__name__)
        log_performance_metrics(self.logger, self.operation, self.elapsed_ms, **self.fields)
