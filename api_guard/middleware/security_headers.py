"""
Security headers middleware for defense-in-depth HTTP response hardening.

Adds the headers computed by :mod:`api_guard.middleware.header_policy` to
mitigate common web attack vectors including XSS, clickjacking, MIME
sniffing, and protocol downgrade attacks.

Two forms are provided:
    security_headers()          - pipeline middleware, for routes wrapped
                                  with ``with_security``
    SecurityHeadersMiddleware   - Starlette middleware applying the same
                                  policy to every response of an app
"""

from typing import Any, Mapping, Optional, Union

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from api_guard.middleware.guards import recover
from api_guard.middleware.header_policy import (
    SecurityHeadersOptions,
    apply_headers,
    compute_headers,
)
from api_guard.middleware.types import MiddlewareFunction, NextFunction, build_options


SECURITY_HEADERS_ERROR_TAG = "Security headers middleware error:"


def security_headers(
    options: Union[SecurityHeadersOptions, Mapping[str, Any], None] = None,
    logger: Optional[Any] = None,
) -> MiddlewareFunction:
    """
    Create the security headers pipeline middleware.

    Options are validated here, so malformed configuration fails at route
    registration. At request time the headers are computed, written onto
    the response, and ``call_next`` is awaited. Any failure is logged as
    "Security headers middleware error:" and the request still proceeds.
    """
    opts = build_options(SecurityHeadersOptions, options)

    async def security_headers_middleware(
        request: Request,
        response: Response,
        call_next: NextFunction,
    ) -> None:
        apply_headers(response, compute_headers(opts))
        await call_next()

    return recover(security_headers_middleware, SECURITY_HEADERS_ERROR_TAG, logger)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware that injects security-related HTTP response headers.

    Uses the same policy as the pipeline middleware. Headers already set by
    the application (for example by a route-level pipeline with its own
    overrides) are left untouched.
    """

    def __init__(
        self,
        app: ASGIApp,
        options: Union[SecurityHeadersOptions, Mapping[str, Any], None] = None,
    ) -> None:
        super().__init__(app)
        self.headers = compute_headers(options)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        for header_name, header_value in self.headers.items():
            # Do not overwrite headers already set by the application
            if header_name not in response.headers:
                response.headers[header_name] = header_value

        return response
