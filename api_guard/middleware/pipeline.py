"""
Middleware pipeline composition.

Assembles the named cross-cutting concerns (rate limiting, security
headers, audit logging) into one ordered chain around a route handler.

Guarantees:
    - Execution order is CANONICAL_ORDER filtered by ``skip_middlewares``,
      whatever the configuration.
    - A failing concern is logged and never stops the other concerns from
      running when they were reached, nor the handler from running.
    - Errors raised by the handler itself propagate to the caller.

Usage:
    async def profile(request: Request, response: Response):
        ...

    router.add_api_route(
        "/api/profile",
        with_security(profile, rate_limit={"max": 50}),
        methods=["GET"],
    )
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import Response

from api_guard.core.context import bind_context, unbind_context
from api_guard.core.logging_config import get_logger
from api_guard.exceptions import ConfigurationError
from api_guard.middleware.audit_log import audit_log
from api_guard.middleware.guards import MIDDLEWARE_ERROR_TAG, isolate
from api_guard.middleware.rate_limiter import rate_limit
from api_guard.middleware.security_headers import security_headers
from api_guard.middleware.types import (
    CANONICAL_ORDER,
    FINALIZERS_STATE_KEY,
    Finalizer,
    MiddlewareFactory,
    MiddlewareFunction,
    MiddlewareName,
    NextFunction,
    RequestHandler,
)


_logger = get_logger(__name__, component="pipeline")

SKIP_KEY = "skip_middlewares"

DEFAULT_FACTORIES: Mapping[MiddlewareName, MiddlewareFactory] = {
    MiddlewareName.RATE_LIMIT: rate_limit,
    MiddlewareName.SECURITY_HEADERS: security_headers,
    MiddlewareName.AUDIT_LOG: audit_log,
}

_KNOWN_NAMES = {name.value for name in MiddlewareName}


def _name_of(key: Union[MiddlewareName, str]) -> str:
    return key.value if isinstance(key, MiddlewareName) else str(key)


def combine_middleware(
    middlewares: Sequence[MiddlewareFunction],
    logger: Optional[Any] = None,
) -> MiddlewareFunction:
    """
    Compose middlewares into a single middleware.

    The middlewares run strictly in list order; each one's ``call_next``
    starts the following one. ``call_next`` of the last one only records
    that the chain was completed.

    Every position is wrapped with :func:`isolate`, so an exception is
    caught where it happened and logged as "Middleware error:". After the
    chain returns, the terminal continuation is awaited exactly once when
    the chain was completed or any position failed. A middleware that
    returns without calling ``call_next`` and without failing (a rate limit
    rejection) prevents it.

    The terminal continuation runs outside every guard: its errors reach the
    caller.
    """
    steps: List[MiddlewareFunction] = list(middlewares)
    log = logger or _logger

    async def combined(request: Request, response: Response, terminal_next: NextFunction) -> None:
        completed = False
        failures: List[Exception] = []

        async def end_of_chain() -> None:
            nonlocal completed
            completed = True

        def continuation(index: int) -> NextFunction:
            if index == len(steps):
                return end_of_chain

            guarded = isolate(steps[index], failures.append, logger=log)

            async def run_step() -> None:
                await guarded(request, response, continuation(index + 1))

            return run_step

        await continuation(0)()

        if completed or failures:
            await terminal_next()

    return combined


def _scoped(name: str, middleware: MiddlewareFunction) -> MiddlewareFunction:
    """Bind ``middleware=<name>`` to the log context while ``middleware`` runs."""

    async def scoped(request: Request, response: Response, call_next: NextFunction) -> None:
        async def scoped_next() -> None:
            unbind_context("middleware")
            try:
                await call_next()
            finally:
                bind_context(middleware=name)

        bind_context(middleware=name)
        try:
            await middleware(request, response, scoped_next)
        finally:
            unbind_context("middleware")

    return scoped


def _resolve_skipped(raw: Any, log: Any) -> Set[str]:
    if raw is None:
        return set()
    if isinstance(raw, (str, MiddlewareName)):
        raw = [raw]
    elif not isinstance(raw, Iterable):
        raise ConfigurationError(
            f"{SKIP_KEY} must be an iterable of middleware names",
            field=SKIP_KEY,
            value=raw,
        )

    skipped: Set[str] = set()
    for entry in raw:
        name = _name_of(entry)
        if name not in _KNOWN_NAMES:
            log.warning("Ignoring unknown middleware in skip list", middleware=name)
            continue
        skipped.add(name)
    return skipped


def create_api_middleware(
    config: Optional[Mapping[str, Any]] = None,
    *,
    factories: Optional[Mapping[Union[MiddlewareName, str], MiddlewareFactory]] = None,
    logger: Optional[Any] = None,
    **options: Any,
) -> MiddlewareFunction:
    """
    Build the canonical middleware pipeline.

    Args:
        config: Mapping of middleware name to its options, plus an optional
            ``skip_middlewares`` iterable.
        factories: Middleware factories by name. Names not present use
            DEFAULT_FACTORIES.
        logger: Logger for chain-level recovery.
        **options: Same keys as ``config``; they take precedence.

    Returns:
        The combined middleware.

    Raises:
        ConfigurationError: For config keys that are neither a middleware
            name nor ``skip_middlewares``, or for malformed middleware
            options rejected by a factory.

    Each non-skipped factory is called once, with the options object exactly
    as supplied, or with no arguments when no options were given. While a
    middleware runs, its name is bound to the structlog context as
    ``middleware``, so its recovery events say which concern failed.
    """
    log = logger or _logger

    settings: Dict[str, Any] = {}
    for key, value in {**dict(config or {}), **options}.items():
        settings[_name_of(key)] = value

    skipped = _resolve_skipped(settings.pop(SKIP_KEY, None), log)

    unknown = sorted(key for key in settings if key not in _KNOWN_NAMES)
    if unknown:
        raise ConfigurationError(
            f"Unknown middleware option(s): {', '.join(unknown)}",
            field=unknown[0],
        )

    registry: Dict[str, MiddlewareFactory] = {
        _name_of(name): factory for name, factory in DEFAULT_FACTORIES.items()
    }
    for name, factory in (factories or {}).items():
        registry[_name_of(name)] = factory

    middlewares: List[MiddlewareFunction] = []
    for name in CANONICAL_ORDER:
        if name.value in skipped:
            continue
        factory = registry[name.value]
        middleware_options = settings.get(name.value)
        if middleware_options is None:
            middleware = factory()
        else:
            middleware = factory(middleware_options)
        middlewares.append(_scoped(name.value, middleware))

    log.debug(
        "api_pipeline_built",
        middlewares=[name.value for name in CANONICAL_ORDER if name.value not in skipped],
    )
    return combine_middleware(middlewares, logger=logger)


def with_security(
    handler: RequestHandler,
    config: Optional[Mapping[str, Any]] = None,
    *,
    factories: Optional[Mapping[Union[MiddlewareName, str], MiddlewareFactory]] = None,
    logger: Optional[Any] = None,
    **options: Any,
) -> RequestHandler:
    """
    Wrap a route handler with the middleware pipeline.

    The pipeline is built once, here. Each call runs it and then awaits
    ``handler(request, response)`` exactly once, so headers written by the
    middlewares are already on the response the handler sees.

    Middleware failures are recovered by the pipeline. Handler failures are
    not: they propagate to the caller unchanged.

    The wrapper returns the handler's result. If a middleware short-circuited
    the request, the handler is not called and the wrapper returns the
    response object that middleware filled in. Such a middleware must set
    the status code; the rate limiter sets 429 before its limit handler runs.

    Finalizers registered during the request (see
    :func:`~api_guard.middleware.types.register_finalizer`) are awaited last,
    in reverse registration order, with the final status code: the handler's
    exception status (500 unless it is an ``HTTPException``), the status of a
    returned ``Response``, the status set on the injected response, or the
    route's declared status code. Finalizer failures are logged and dropped.

    The wrapper signature is ``(request: Request, response: Response)``, so
    it can be registered directly as a FastAPI endpoint.
    """
    pipeline = create_api_middleware(config, factories=factories, logger=logger, **options)
    log = logger or _logger

    # No return annotation: FastAPI would turn it into a response model
    async def secure_handler(request: Request, response: Response):
        finalizers: List[Finalizer] = []
        setattr(request.state, FINALIZERS_STATE_KEY, finalizers)
        handled = False
        result: Any = None
        error: Optional[Exception] = None

        async def run_handler() -> None:
            nonlocal handled, result
            handled = True
            result = await handler(request, response)

        try:
            await pipeline(request, response, run_handler)
        except Exception as exc:
            error = exc
            raise
        finally:
            status_code = _final_status(request, response, result, error)
            for finalize in reversed(finalizers):
                try:
                    await finalize(status_code, error)
                except Exception as exc:
                    log.error(MIDDLEWARE_ERROR_TAG, error=str(exc), exc_info=exc)

        if not handled:
            return response
        return result

    secure_handler.__name__ = getattr(handler, "__name__", secure_handler.__name__)
    secure_handler.__qualname__ = getattr(handler, "__qualname__", secure_handler.__qualname__)
    secure_handler.__doc__ = getattr(handler, "__doc__", None)
    return secure_handler


def _final_status(
    request: Request,
    response: Response,
    result: Any,
    error: Optional[Exception],
) -> int:
    if error is not None:
        return error.status_code if isinstance(error, HTTPException) else 500
    if isinstance(result, Response):
        return result.status_code
    if response.status_code:
        return response.status_code
    # FastAPI puts the matched APIRoute in the scope
    route = request.scope.get("route")
    return getattr(route, "status_code", None) or 200
