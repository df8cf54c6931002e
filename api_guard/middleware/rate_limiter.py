"""
Rate limiting middleware using the limits library.

Counts requests per client key in a moving window. Allowed requests get
X-RateLimit-* headers; once the budget is spent the request is answered
with 429 and the rest of the pipeline (including the handler) is skipped.

Storage is shared per process. For distributed deployments point
RATE_LIMIT_STORAGE_URI (or REDIS_URL) at a shared backend, e.g.
"redis://localhost:6379".
"""

import inspect
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from limits import RateLimitItemPerSecond
from limits.aio.storage import MemoryStorage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string
from starlette.requests import Request
from starlette.responses import Response

from api_guard.exceptions import ConfigurationError, RateLimitExceededError
from api_guard.middleware.guards import recover
from api_guard.middleware.types import MiddlewareFunction, NextFunction, build_options
from api_guard.utils.request import get_client_ip, write_json


RATE_LIMIT_ERROR_TAG = "Rate limit middleware error:"

DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW_SECONDS = 15 * 60

_default_storage = None


def get_default_storage():
    """
    Return the process-wide limits storage.

    Built on first use from RATE_LIMIT_STORAGE_URI, falling back to
    REDIS_URL, else in-memory.
    """
    global _default_storage
    if _default_storage is None:
        uri = os.getenv("RATE_LIMIT_STORAGE_URI") or os.getenv("REDIS_URL")
        if uri:
            # The middleware is async; limits registers async backends as "async+<scheme>"
            if not uri.startswith("async+"):
                uri = f"async+{uri}"
            _default_storage = storage_from_string(uri)
        else:
            _default_storage = MemoryStorage()
    return _default_storage


def reset_default_storage() -> None:
    """Drop the process-wide storage so the next limiter builds a new one."""
    global _default_storage
    _default_storage = None


def get_rate_limit_key(request: Request) -> str:
    """
    Get the rate limit key for a request.
    Uses the client IP address by default.
    """
    return f"rate-limit:{get_client_ip(request)}"


async def rate_limit_exceeded_handler(request: Request, response: Response) -> None:
    """
    Default handler for rate limit exceeded.
    Writes a 429 JSON body onto the response.
    """
    retry_after = response.headers.get("Retry-After")
    error = RateLimitExceededError(
        retry_after=int(retry_after) if retry_after else None,
    )
    write_json(response, 429, error.to_dict())


@dataclass
class RateLimitOptions:
    """
    Rate limit configuration.

    Attributes:
        max: Requests allowed per window and key.
        window_seconds: Window length.
        key_func: Maps a request to its counter key.
        on_limit_reached: Called with (request, response) instead of the
            rest of the pipeline once the limit is hit. May be sync or async.
            The response status is already 429 when it is called.
        storage: limits async storage. Defaults to get_default_storage().
    """
    max: int = DEFAULT_MAX_REQUESTS
    window_seconds: int = DEFAULT_WINDOW_SECONDS
    key_func: Callable[[Request], str] = get_rate_limit_key
    on_limit_reached: Callable[[Request, Response], Any] = rate_limit_exceeded_handler
    storage: Optional[Any] = None

    def __post_init__(self) -> None:
        for name in ("max", "window_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"{name} must be a positive integer",
                    field=name,
                    value=value,
                )


def rate_limit(
    options: Union[RateLimitOptions, Mapping[str, Any], None] = None,
    logger: Optional[Any] = None,
) -> MiddlewareFunction:
    """
    Create the rate limiting pipeline middleware.

    Storage errors are logged as "Rate limit middleware error:" and the
    request is let through.
    """
    opts = build_options(RateLimitOptions, options)
    limiter = MovingWindowRateLimiter(opts.storage or get_default_storage())
    item = RateLimitItemPerSecond(opts.max, opts.window_seconds)

    async def rate_limit_middleware(
        request: Request,
        response: Response,
        call_next: NextFunction,
    ) -> None:
        key = opts.key_func(request)
        allowed = await limiter.hit(item, key)
        reset_time, remaining = await limiter.get_window_stats(item, key)

        response.headers["X-RateLimit-Limit"] = str(opts.max)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(int(reset_time))

        if not allowed:
            response.status_code = 429
            response.headers["Retry-After"] = str(max(1, math.ceil(reset_time - time.time())))
            result = opts.on_limit_reached(request, response)
            if inspect.isawaitable(result):
                await result
            return

        await call_next()

    return recover(rate_limit_middleware, RATE_LIMIT_ERROR_TAG, logger)
