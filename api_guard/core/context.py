"""
Request context management for correlation ID tracking.

The correlation ID is read by the audit log middleware and merged into
every structlog entry emitted while a request is being processed.
"""

import uuid
from contextvars import ContextVar

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
import structlog


CORRELATION_ID_HEADER = "X-Correlation-ID"

# Context variable for correlation ID - accessible throughout request lifecycle
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to handle correlation ID for request tracing.

    - Extracts correlation ID from X-Correlation-ID header or generates new one
    - Binds correlation ID to structlog context for all log messages
    - Adds correlation ID to response headers for client tracking
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        incoming = request.headers.get(CORRELATION_ID_HEADER)
        # Bound the length so the value is safe to echo back
        if incoming and len(incoming) <= 128:
            correlation_id = incoming
        else:
            correlation_id = str(uuid.uuid4())

        correlation_id_ctx.set(correlation_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            request_path=request.url.path,
            request_method=request.method,
        )

        response = await call_next(request)

        response.headers[CORRELATION_ID_HEADER] = correlation_id

        return response


def get_correlation_id() -> str:
    """
    Get current correlation ID from context.

    Returns:
        The correlation ID for the current request, or empty string if not set.
    """
    return correlation_id_ctx.get()


def bind_context(**kwargs) -> None:
    """
    Bind additional context variables for logging.

    Args:
        **kwargs: Key-value pairs to add to log context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """
    Remove context variables from logging context.

    Args:
        *keys: Keys to remove from context.
    """
    structlog.contextvars.unbind_contextvars(*keys)
