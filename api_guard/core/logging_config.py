"""
Structured logging for the middleware pipeline.

Every recovery event ("Middleware error:", "Rate limit middleware error:",
...) is a structlog event whose name is the error tag. The request's
correlation ID and the ``middleware`` currently running are merged in from
contextvars, and the exception travels as ``exc_info``.

Environment:
    LOG_FORMAT: "json" (default) or "console"
    LOG_LEVEL:  DEBUG, INFO (default), WARNING, ERROR
"""

import logging
import os
import sys
from typing import Any, List, Optional

import structlog

from api_guard.exceptions import ConfigurationError


LOG_FORMATS = ("json", "console")

# Noisy third-party loggers capped at WARNING
_QUIET_LOGGERS = ("uvicorn.access", "httpx")


def _processors(json_output: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    json_output: Optional[bool] = None,
    log_level: Optional[str] = None
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        json_output: JSON lines when True, console rendering when False.
            Read from LOG_FORMAT when None.
        log_level: Minimum level name. Read from LOG_LEVEL when None; unknown
            names fall back to INFO.

    Raises:
        ConfigurationError: If LOG_FORMAT is neither "json" nor "console".
    """
    if json_output is None:
        log_format = os.getenv("LOG_FORMAT", "json").lower()
        if log_format not in LOG_FORMATS:
            raise ConfigurationError(
                f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}",
                field="LOG_FORMAT",
                value=log_format,
            )
        json_output = log_format == "json"

    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None, **initial_values: Any) -> Any:
    """
    Get a structlog logger, optionally pre-bound with ``initial_values``.

    Middlewares bind ``component`` so their events can be filtered apart
    from application logs.
    """
    # Initial values keep the proxy lazy, so configure_logging may run later
    return structlog.get_logger(name, **initial_values)
