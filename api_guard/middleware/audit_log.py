"""
Audit logging middleware for API request tracking.

Records one structured audit entry per request including:
    - Time of the request and pipeline duration
    - Authenticated user identity (from request.state.user)
    - Client metadata (IP, user-agent)
    - Request path and method, optionally query, body and headers
    - Correlation ID for traceability

Values of sensitive fields are redacted before the entry leaves the
process. Entries go to an AuditSink; the default sink writes to a
dedicated structlog logger ("audit") so they can be routed to a separate
log sink (file, SIEM, etc.) independent of application logs.
"""

import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Union

from starlette.requests import Request
from starlette.responses import Response
import structlog

from api_guard.core.context import get_correlation_id
from api_guard.core.logging_config import get_logger
from api_guard.middleware.guards import recover
from api_guard.middleware.types import MiddlewareFunction, NextFunction, build_options, register_finalizer
from api_guard.utils.request import get_client_ip


AUDIT_LOG_ERROR_TAG = "Audit log middleware error:"
AUDIT_SAVE_ERROR_TAG = "Error saving audit log:"

REDACTED = "[REDACTED]"

# Dedicated audit logger (separate from application logger)
audit_logger = structlog.get_logger("audit")

_logger = get_logger(__name__, component="audit_log")

# Always redacted when headers are logged
_SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key"}


class AuditSink(Protocol):
    """Destination for audit entries."""

    async def write(self, entry: Dict[str, Any]) -> None:
        ...


class StructlogAuditSink:
    """Writes audit entries to the "audit" structlog logger."""

    def __init__(self, logger: Optional[Any] = None) -> None:
        self.logger = logger or audit_logger

    async def write(self, entry: Dict[str, Any]) -> None:
        status_code = entry.get("status_code") or 0

        # Log level based on response status
        if status_code >= 500:
            self.logger.error("audit_request", **entry)
        elif status_code >= 400:
            self.logger.warning("audit_request", **entry)
        else:
            self.logger.info("audit_request", **entry)


def _audit_enabled_from_env() -> bool:
    return os.getenv("AUDIT_LOG_ENABLED", "true").lower() == "true"


@dataclass
class AuditLogOptions:
    """
    Audit log configuration.

    ``log_body`` reads and parses the JSON request body; use with caution.
    """
    exclude_paths: Sequence[str] = ("/api/health", "/api/metrics")
    exclude_methods: Sequence[str] = ("OPTIONS",)
    sensitive_fields: Sequence[str] = ("password", "token", "secret", "apiKey", "credit_card")
    log_query: bool = True
    log_body: bool = False
    log_headers: bool = False
    custom_fields: Optional[Callable[[Request], Dict[str, Any]]] = None
    sink: Optional[AuditSink] = None
    enabled: bool = field(default_factory=_audit_enabled_from_env)


def sanitize(data: Any, sensitive_fields: Sequence[str]) -> Any:
    """Replace values of sensitive keys with [REDACTED], recursively."""
    sensitive = {name.lower() for name in sensitive_fields}

    def _walk(value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                key: REDACTED if str(key).lower() in sensitive else _walk(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [_walk(item) for item in value]
        return value

    return _walk(data)


def _extract_user_id(request: Request) -> Optional[str]:
    """User ID set on request.state by the authentication layer, if any."""
    user = getattr(request.state, "user", None)
    if user is None:
        return None
    if isinstance(user, Mapping):
        return user.get("id")
    return getattr(user, "id", None)


async def _read_json_body(request: Request) -> Optional[Any]:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _is_excluded(request: Request, opts: AuditLogOptions) -> bool:
    path = request.url.path
    if any(path.startswith(prefix) for prefix in opts.exclude_paths):
        return True
    return request.method.upper() in {m.upper() for m in opts.exclude_methods}


def _elapsed_ms(start_time: float) -> float:
    return round((time.monotonic() - start_time) * 1000, 2)


def _base_entry(request: Request) -> Dict[str, Any]:
    return {
        "requested_at": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "user_id": _extract_user_id(request),
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("user-agent", "")[:256],  # Truncate to prevent log bloat
        "correlation_id": get_correlation_id() or None,
    }


async def _build_entry(request: Request, opts: AuditLogOptions) -> Dict[str, Any]:
    entry = _base_entry(request)

    if opts.log_query and request.query_params:
        entry["query_params"] = sanitize(dict(request.query_params), opts.sensitive_fields)

    if opts.log_body:
        body = await _read_json_body(request)
        if body is not None:
            entry["request_body"] = sanitize(body, opts.sensitive_fields)

    if opts.log_headers:
        entry["headers"] = sanitize(
            dict(request.headers),
            list(opts.sensitive_fields) + sorted(_SENSITIVE_HEADERS),
        )

    if opts.custom_fields is not None:
        entry.update(opts.custom_fields(request))

    return entry


async def save_audit_entry(sink: AuditSink, entry: Dict[str, Any], logger: Optional[Any] = None) -> None:
    """Write an entry to the sink. Sink failures are logged, never raised."""
    log = logger or _logger
    try:
        await sink.write(entry)
    except Exception as exc:
        log.error(AUDIT_SAVE_ERROR_TAG, error=str(exc), exc_info=exc)


def audit_log(
    options: Union[AuditLogOptions, Mapping[str, Any], None] = None,
    logger: Optional[Any] = None,
) -> MiddlewareFunction:
    """
    Create the audit logging pipeline middleware.

    Under ``with_security`` the entry is written once the handler has
    finished, with its final status code, the full response time and, when
    the handler raised, the error message. Called outside ``with_security``
    it is written as soon as ``call_next`` returns.

    If building the entry fails, a minimal entry with status 500 and the
    error is written instead, the failure is logged as
    "Audit log middleware error:" and the request proceeds.
    """
    opts = build_options(AuditLogOptions, options)
    sink: AuditSink = opts.sink or StructlogAuditSink()

    async def audit_log_middleware(
        request: Request,
        response: Response,
        call_next: NextFunction,
    ) -> None:
        if not opts.enabled or _is_excluded(request, opts):
            await call_next()
            return

        start_time = time.monotonic()

        try:
            entry = await _build_entry(request, opts)
        except Exception as exc:
            error_entry = _base_entry(request)
            error_entry.update(
                status_code=500,
                response_time_ms=_elapsed_ms(start_time),
                error=str(exc),
            )
            await save_audit_entry(sink, error_entry, logger)
            raise

        await call_next()

        async def write_entry(status_code: int, error: Optional[BaseException] = None) -> None:
            entry["status_code"] = status_code
            entry["response_time_ms"] = _elapsed_ms(start_time)
            if error is not None:
                entry["error"] = str(error)
            await save_audit_entry(sink, entry, logger)

        if not register_finalizer(request, write_entry):
            await write_entry(response.status_code)

    return recover(audit_log_middleware, AUDIT_LOG_ERROR_TAG, logger)
