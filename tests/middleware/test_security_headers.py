"""
Tests for the security headers middleware.

Tests cover:
- Pipeline middleware: default and custom headers, error recovery
- Starlette class middleware on a real application
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.responses import PlainTextResponse

from api_guard.exceptions import ConfigurationError
from api_guard.middleware.security_headers import (
    SECURITY_HEADERS_ERROR_TAG,
    SecurityHeadersMiddleware,
    security_headers,
)


class TestSecurityHeadersMiddleware:
    @pytest.mark.asyncio
    async def test_sets_default_headers(self, request_obj, response):
        call_next = AsyncMock()

        await security_headers()(request_obj, response, call_next)

        expected = {
            "X-DNS-Prefetch-Control": "on",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
            "X-Frame-Options": "SAMEORIGIN",
            "X-Content-Type-Options": "nosniff",
            "X-XSS-Protection": "1; mode=block",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Content-Security-Policy": (
                "default-src 'self'; base-uri 'self'; font-src 'self' https: data:; "
                "form-action 'self'; frame-ancestors 'self'; img-src 'self' data: https:; "
                "object-src 'none'; script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
                "script-src-attr 'none'; style-src 'self' 'unsafe-inline'; "
                "upgrade-insecure-requests"
            ),
            "X-Permitted-Cross-Domain-Policies": "none",
            "Expect-CT": "max-age=86400, enforce",
        }
        for name, value in expected.items():
            assert response.headers[name] == value
        call_next.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sets_custom_headers(self, request_obj, response):
        custom_csp = "default-src 'self'; script-src 'self'"
        middleware = security_headers({
            "content_security_policy": custom_csp,
            "x_frame_options": "DENY",
        })
        call_next = AsyncMock()

        await middleware(request_obj, response, call_next)

        assert response.headers["Content-Security-Policy"] == custom_csp
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        call_next.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_headers_written_once_in_order(self, request_obj):
        response = MagicMock()
        await security_headers()(request_obj, response, AsyncMock())

        written = [call.args[0] for call in response.headers.__setitem__.call_args_list]
        assert written == [
            "X-DNS-Prefetch-Control",
            "Strict-Transport-Security",
            "X-Frame-Options",
            "X-Content-Type-Options",
            "X-XSS-Protection",
            "Referrer-Policy",
            "Content-Security-Policy",
            "X-Permitted-Cross-Domain-Policies",
            "Expect-CT",
        ]

    @pytest.mark.asyncio
    async def test_handles_next_error_gracefully(self, request_obj, response, mock_logger):
        error = RuntimeError("Test error")
        call_next = AsyncMock(side_effect=error)

        # Must not raise
        await security_headers(logger=mock_logger)(request_obj, response, call_next)

        assert call_next.await_count >= 1
        first_call = mock_logger.error.call_args_list[0]
        assert first_call.args[0] == SECURITY_HEADERS_ERROR_TAG
        assert first_call.kwargs["exc_info"] is error

    @pytest.mark.asyncio
    async def test_header_write_failure_still_calls_next(self, request_obj, mock_logger):
        response = MagicMock()
        response.headers.__setitem__.side_effect = TypeError("immutable headers")
        call_next = AsyncMock()

        await security_headers(logger=mock_logger)(request_obj, response, call_next)

        call_next.assert_awaited_once()
        assert mock_logger.error.call_args.args[0] == SECURITY_HEADERS_ERROR_TAG

    def test_malformed_options_fail_at_construction(self):
        with pytest.raises(ConfigurationError):
            security_headers({"x_frame_options": 42})


class TestSecurityHeadersClassMiddleware:
    @pytest.fixture
    def app(self):
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware, options={"referrer_policy": "no-referrer"})

        @app.get("/plain")
        async def plain():
            return {"ok": True}

        @app.get("/framed")
        async def framed():
            return PlainTextResponse("ok", headers={"X-Frame-Options": "DENY"})

        return app

    def test_adds_headers_to_every_response(self, app):
        client = TestClient(app)
        response = client.get("/plain")

        assert response.status_code == 200
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["referrer-policy"] == "no-referrer"
        assert response.headers["content-security-policy"].startswith("default-src 'self'")

    def test_does_not_overwrite_route_headers(self, app):
        client = TestClient(app)
        response = client.get("/framed")

        assert response.headers["x-frame-options"] == "DENY"
