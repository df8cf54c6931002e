"""
Helpers for reading requests and writing responses in place.

Pipeline middlewares receive the response object before the handler
produces anything, so short-circuiting middlewares fill it in directly
instead of returning a new response.
"""

from typing import Any, Dict, Optional

from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


def get_client_ip(request: Request) -> str:
    """
    Extract the real client IP, respecting X-Forwarded-For when
    the application is behind a reverse proxy.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Take the first (leftmost) IP which is the original client
        return forwarded_for.split(",")[0].strip()
    return get_remote_address(request)


def write_json(
    response: Response,
    status_code: int,
    content: Any,
    headers: Optional[Dict[str, str]] = None,
) -> None:
    """Render ``content`` as the JSON body of an existing response."""
    rendered = JSONResponse(content=content, status_code=status_code)
    response.status_code = status_code
    response.body = rendered.body
    response.headers["content-type"] = rendered.media_type
    response.headers["content-length"] = str(len(rendered.body))
    for name, value in (headers or {}).items():
        response.headers[name] = value
