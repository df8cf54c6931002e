"""Core module for logging and request context."""

from .logging_config import configure_logging, get_logger
from .context import (
    CorrelationIdMiddleware,
    get_correlation_id,
    bind_context,
    unbind_context,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "CorrelationIdMiddleware",
    "get_correlation_id",
    "bind_context",
    "unbind_context",
]
