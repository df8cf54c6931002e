"""
FastAPI application wiring the security pipeline.

Routes are registered through ``with_security`` so each one carries its
own rate limit, security header and audit log configuration. App-wide
middlewares provide correlation IDs and a baseline set of security headers
for routes that do not use the pipeline.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from api_guard.core import configure_logging, get_logger, CorrelationIdMiddleware, get_correlation_id
from api_guard.middleware import MiddlewareName, SecurityHeadersMiddleware, with_security

# Configure structured logging
configure_logging()
logger = get_logger(__name__)


API_TITLE = "API Guard"
API_VERSION = "1.0.0"
API_DESCRIPTION = """
## API middleware pipeline

Every `/api` route runs a fixed pipeline before its handler:

1. **Rate limiting** - moving window per client IP, `X-RateLimit-*` headers, 429 when exceeded
2. **Security headers** - HSTS, CSP, X-Frame-Options and related hardening headers
3. **Audit logging** - one structured entry per request on the `audit` logger

A failure in any of these steps is logged and never blocks the request.
"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting API Guard...")
    yield
    logger.info("Shutting down API Guard...")


async def health_check() -> Dict[str, Any]:
    """Liveness probe. Not wrapped by the pipeline."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION,
    }


async def get_profile(request: Request, response: Response) -> Dict[str, Any]:
    """Profile of the calling client, with its remaining request budget."""
    user = getattr(request.state, "user", None)
    return {
        "user_id": getattr(user, "id", None),
        "rate_limit_remaining": response.headers.get("X-RateLimit-Remaining"),
        "correlation_id": get_correlation_id(),
    }


async def get_public_info(request: Request, response: Response) -> Dict[str, Any]:
    """Static service information."""
    return {
        "service": API_TITLE,
        "version": API_VERSION,
    }


def create_app(rate_limit_storage: Optional[Any] = None) -> FastAPI:
    """
    Build the application.

    Args:
        rate_limit_storage: limits async storage for the route rate limiters.
            Defaults to the process-wide storage.
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )

    # Middleware executes in LIFO order (last added = first to run).
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.add_api_route("/api/health", health_check, methods=["GET"], tags=["Health"])

    app.add_api_route(
        "/api/profile",
        with_security(
            get_profile,
            rate_limit={
                "max": int(os.getenv("PROFILE_RATE_LIMIT", "100")),
                "storage": rate_limit_storage,
            },
        ),
        methods=["GET"],
        tags=["Profile"],
    )

    app.add_api_route(
        "/api/public/info",
        with_security(
            get_public_info,
            skip_middlewares=[MiddlewareName.RATE_LIMIT, MiddlewareName.AUDIT_LOG],
            security_headers={"x_frame_options": "DENY"},
        ),
        methods=["GET"],
        tags=["Public"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Route-level error boundary for handler failures."""
        logger.error("Unhandled exception", error=str(exc), exc_info=exc)

        is_production = os.getenv("ENV") == "production"
        content = {
            "error": "Internal server error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if not is_production:
            content["message"] = str(exc)
            content["type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
