"""
Shared types for the middleware pipeline.

A pipeline middleware is a coroutine function taking the request, the
mutable response and a zero-argument ``call_next`` continuation:

    async def middleware(request, response, call_next) -> None

The same contract is used by every concern the pipeline composes, so any
of them can be reordered, skipped or replaced by a test double.
"""

from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple, Type, TypeVar

from starlette.requests import Request
from starlette.responses import Response

from api_guard.exceptions import ConfigurationError


NextFunction = Callable[[], Awaitable[None]]
MiddlewareFunction = Callable[[Request, Response, NextFunction], Awaitable[None]]
RequestHandler = Callable[[Request, Response], Awaitable[Any]]
MiddlewareFactory = Callable[..., MiddlewareFunction]
# Awaited once the handler outcome is known, with the final status code and
# the handler's exception, if any
Finalizer = Callable[[int, Optional[BaseException]], Awaitable[None]]

FINALIZERS_STATE_KEY = "api_guard_finalizers"

OptionsT = TypeVar("OptionsT")


class MiddlewareName(str, Enum):
    """Names of the cross-cutting concerns a pipeline can contain."""
    RATE_LIMIT = "rate_limit"
    SECURITY_HEADERS = "security_headers"
    AUDIT_LOG = "audit_log"


# Position in this tuple is the execution order. Configuration can remove
# entries but never move them.
CANONICAL_ORDER: Tuple[MiddlewareName, ...] = (
    MiddlewareName.RATE_LIMIT,
    MiddlewareName.SECURITY_HEADERS,
    MiddlewareName.AUDIT_LOG,
)


def register_finalizer(request: Request, finalizer: Finalizer) -> bool:
    """
    Defer work until the wrapped handler has finished.

    Only requests running under ``with_security`` carry a finalizer list.
    Returns False when there is none; the caller should then run its work
    immediately.
    """
    finalizers = getattr(request.state, FINALIZERS_STATE_KEY, None)
    if finalizers is None:
        return False
    finalizers.append(finalizer)
    return True


def build_options(
    options_cls: Type[OptionsT],
    options: Optional[Any],
) -> OptionsT:
    """
    Normalize a middleware options argument into its dataclass.

    Accepts ``None`` (defaults), an instance of ``options_cls`` (used as is)
    or a mapping of field names to values.

    Raises:
        ConfigurationError: If the mapping has unknown keys or the value is
            neither a mapping nor an ``options_cls`` instance.
    """
    if options is None:
        return options_cls()
    if isinstance(options, options_cls):
        return options
    if isinstance(options, Mapping):
        known = {f.name for f in fields(options_cls)} if is_dataclass(options_cls) else set()
        unknown = sorted(str(key) for key in options if key not in known)
        if unknown:
            raise ConfigurationError(
                f"Unknown {options_cls.__name__} field(s): {', '.join(unknown)}",
                field=unknown[0],
            )
        return options_cls(**options)
    raise ConfigurationError(
        f"{options_cls.__name__} must be a mapping or {options_cls.__name__} instance",
        value=options,
    )
