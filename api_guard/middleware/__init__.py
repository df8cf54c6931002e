"""Middleware module: named cross-cutting concerns and their pipeline."""

from .types import CANONICAL_ORDER, MiddlewareFunction, MiddlewareName, NextFunction, register_finalizer
from .header_policy import (
    DEFAULT_CSP_DIRECTIVES,
    ExpectCTOptions,
    HSTSOptions,
    SecurityHeadersOptions,
    apply_headers,
    build_csp,
    compute_headers,
    merge_csp_directives,
)
from .guards import MIDDLEWARE_ERROR_TAG, isolate, recover
from .security_headers import SecurityHeadersMiddleware, security_headers
from .rate_limiter import RateLimitOptions, rate_limit
from .audit_log import AuditLogOptions, AuditSink, StructlogAuditSink, audit_log
from .pipeline import (
    DEFAULT_FACTORIES,
    combine_middleware,
    create_api_middleware,
    with_security,
)

__all__ = [
    "CANONICAL_ORDER",
    "MiddlewareFunction",
    "MiddlewareName",
    "NextFunction",
    "register_finalizer",
    "DEFAULT_CSP_DIRECTIVES",
    "ExpectCTOptions",
    "HSTSOptions",
    "SecurityHeadersOptions",
    "apply_headers",
    "build_csp",
    "compute_headers",
    "merge_csp_directives",
    "MIDDLEWARE_ERROR_TAG",
    "isolate",
    "recover",
    "SecurityHeadersMiddleware",
    "security_headers",
    "RateLimitOptions",
    "rate_limit",
    "AuditLogOptions",
    "AuditSink",
    "StructlogAuditSink",
    "audit_log",
    "DEFAULT_FACTORIES",
    "combine_middleware",
    "create_api_middleware",
    "with_security",
]
