"""
Recovery guards for pipeline middlewares.

Errors in cross-cutting concerns are recovered at two independent layers:

    recover  - wraps a single middleware. Logs under the middleware's own
               tag and makes sure ``call_next`` has run, so the request
               proceeds as if the concern had succeeded.
    isolate  - wraps each position of a combined chain. Logs under
               "Middleware error:" and reports the failure to the chain so
               it can still fire the terminal handler.

Neither guard ever raises an ``Exception`` subclass.
"""

from typing import Any, Callable, Optional

from starlette.requests import Request
from starlette.responses import Response

from api_guard.core.logging_config import get_logger
from api_guard.middleware.types import MiddlewareFunction, NextFunction


MIDDLEWARE_ERROR_TAG = "Middleware error:"

_logger = get_logger(__name__, component="pipeline")


def recover(
    middleware: MiddlewareFunction,
    tag: str,
    logger: Optional[Any] = None,
) -> MiddlewareFunction:
    """
    Wrap a middleware so its failures never stop the request.

    On error the exception is logged at error level under ``tag``, then
    ``call_next`` is awaited unless an earlier call already completed. This
    covers both a middleware that failed before reaching ``call_next`` and a
    ``call_next`` that raised. A failure of that second call is logged under
    the same tag and dropped.

    Args:
        middleware: The middleware to protect.
        tag: Event name logged on failure.
        logger: structlog-compatible logger. Defaults to this module's logger.
    """
    log = logger or _logger

    async def recovering(request: Request, response: Response, call_next: NextFunction) -> None:
        next_completed = False

        async def tracked_next() -> None:
            nonlocal next_completed
            await call_next()
            next_completed = True

        try:
            await middleware(request, response, tracked_next)
        except Exception as exc:
            log.error(tag, error=str(exc), exc_info=exc)
            if next_completed:
                return
            try:
                await call_next()
            except Exception as retry_exc:
                log.error(tag, error=str(retry_exc), exc_info=retry_exc)

    return recovering


def isolate(
    middleware: MiddlewareFunction,
    on_error: Callable[[Exception], None],
    logger: Optional[Any] = None,
) -> MiddlewareFunction:
    """
    Wrap one position of a chain so its failure stays at that position.

    The exception is logged under ``"Middleware error:"`` and handed to
    ``on_error``. ``call_next`` is never invoked by the guard itself: the
    chain decides what runs after a failure.
    """
    log = logger or _logger

    async def isolated(request: Request, response: Response, call_next: NextFunction) -> None:
        try:
            await middleware(request, response, call_next)
        except Exception as exc:
            log.error(MIDDLEWARE_ERROR_TAG, error=str(exc), exc_info=exc)
            on_error(exc)

    return isolated
