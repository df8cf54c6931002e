"""
Common pytest fixtures for the api-guard test suite.

Provides shared fixtures for:
- Starlette request/response objects without a running server
- A mock structlog logger for asserting recovery events
- Fresh rate limit storage per test
"""

import os
from typing import Dict, Optional
from unittest.mock import MagicMock

import pytest
from limits.aio.storage import MemoryStorage
from starlette.requests import Request
from starlette.responses import Response


# ============================================
# Environment Setup
# ============================================

os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("AUDIT_LOG_ENABLED", "true")
os.environ.pop("RATE_LIMIT_STORAGE_URI", None)
os.environ.pop("REDIS_URL", None)


@pytest.fixture(autouse=True)
def reset_rate_limit_storage():
    """Give every test its own process-wide rate limit storage."""
    from api_guard.middleware.rate_limiter import reset_default_storage

    reset_default_storage()
    yield
    reset_default_storage()


# ============================================
# Request / Response Fixtures
# ============================================

@pytest.fixture
def make_request():
    """Factory building a Starlette Request from a minimal ASGI scope."""

    def _make(
        method: str = "GET",
        path: str = "/api/test",
        headers: Optional[Dict[str, str]] = None,
        query_string: str = "",
        client: Optional[tuple] = ("127.0.0.1", 50000),
        body: Optional[bytes] = None,
    ) -> Request:
        scope = {
            "type": "http",
            "method": method,
            "path": path,
            "scheme": "http",
            "server": ("testserver", 80),
            "query_string": query_string.encode(),
            "headers": [
                (name.lower().encode(), value.encode())
                for name, value in (headers or {}).items()
            ],
            "client": client,
        }
        if body is None:
            return Request(scope)

        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return _make


@pytest.fixture
def request_obj(make_request):
    """Plain GET request from 127.0.0.1."""
    return make_request()


@pytest.fixture
def response():
    """Empty mutable response the pipeline writes into."""
    return Response()


@pytest.fixture
def mock_logger():
    """Stand-in for a structlog logger."""
    return MagicMock()


@pytest.fixture
def memory_storage():
    """Isolated limits storage."""
    return MemoryStorage()
