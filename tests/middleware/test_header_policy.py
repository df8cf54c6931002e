"""
Tests for the security header policy.

Tests cover:
- Exact default header set and order
- Literal overrides and disabled headers
- CSP directive merging
- Structured HSTS / Expect-CT values
- Validation of malformed options
"""

import pytest
from starlette.responses import Response

from api_guard.exceptions import ConfigurationError
from api_guard.middleware.header_policy import (
    DEFAULT_CSP_DIRECTIVES,
    ExpectCTOptions,
    HSTSOptions,
    SecurityHeadersOptions,
    apply_headers,
    build_csp,
    compute_headers,
    merge_csp_directives,
)


DEFAULT_CSP = (
    "default-src 'self'; base-uri 'self'; font-src 'self' https: data:; "
    "form-action 'self'; frame-ancestors 'self'; img-src 'self' data: https:; "
    "object-src 'none'; script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
    "script-src-attr 'none'; style-src 'self' 'unsafe-inline'; "
    "upgrade-insecure-requests"
)

EXPECTED_DEFAULTS = [
    ("X-DNS-Prefetch-Control", "on"),
    ("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload"),
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-Content-Type-Options", "nosniff"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
    ("Content-Security-Policy", DEFAULT_CSP),
    ("X-Permitted-Cross-Domain-Policies", "none"),
    ("Expect-CT", "max-age=86400, enforce"),
]


class TestDefaultHeaders:
    def test_defaults_match_exactly_and_in_order(self):
        assert list(compute_headers().items()) == EXPECTED_DEFAULTS

    def test_empty_mapping_is_default(self):
        assert compute_headers({}) == compute_headers()

    def test_csp_has_no_trailing_space(self):
        csp = compute_headers()["Content-Security-Policy"]
        assert csp.endswith("; upgrade-insecure-requests")

    def test_each_call_returns_new_dict(self):
        first = compute_headers()
        first["X-Frame-Options"] = "DENY"
        assert compute_headers()["X-Frame-Options"] == "SAMEORIGIN"


class TestOverrides:
    def test_literal_csp_and_frame_options(self):
        custom_csp = "default-src 'self'; script-src 'self'"
        headers = compute_headers({
            "content_security_policy": custom_csp,
            "x_frame_options": "DENY",
        })

        assert headers["Content-Security-Policy"] == custom_csp
        assert headers["X-Frame-Options"] == "DENY"

        untouched = {
            name: value for name, value in EXPECTED_DEFAULTS
            if name not in ("Content-Security-Policy", "X-Frame-Options")
        }
        assert len(untouched) == 7
        for name, value in untouched.items():
            assert headers[name] == value

    def test_false_disables_header(self):
        headers = compute_headers(SecurityHeadersOptions(expect_ct=False, x_xss_protection=False))
        assert "Expect-CT" not in headers
        assert "X-XSS-Protection" not in headers
        assert len(headers) == 7

    def test_order_kept_with_overrides(self):
        headers = compute_headers({"referrer_policy": "no-referrer", "x_dns_prefetch_control": False})
        assert list(headers) == [
            name for name, _ in EXPECTED_DEFAULTS if name != "X-DNS-Prefetch-Control"
        ]

    def test_structured_hsts(self):
        headers = compute_headers({"strict_transport_security": HSTSOptions(max_age=600, preload=False)})
        assert headers["Strict-Transport-Security"] == "max-age=600; includeSubDomains"

    def test_hsts_from_mapping(self):
        headers = compute_headers({"strict_transport_security": {"max_age": 60, "include_subdomains": False}})
        assert headers["Strict-Transport-Security"] == "max-age=60; preload"

    def test_expect_ct_report_uri(self):
        headers = compute_headers({
            "expect_ct": ExpectCTOptions(enforce=False, report_uri="https://example.com/ct"),
        })
        assert headers["Expect-CT"] == 'max-age=86400, report-uri="https://example.com/ct"'


class TestCSPDirectives:
    def test_partial_map_replaces_named_directive_only(self):
        headers = compute_headers({
            "content_security_policy": {"script-src": ["'self'", "https://cdn.example.com"]},
        })
        csp = headers["Content-Security-Policy"]

        assert "script-src 'self' https://cdn.example.com;" in csp
        assert "'unsafe-eval'" not in csp
        assert csp.startswith("default-src 'self'; base-uri 'self';")
        assert csp.endswith("upgrade-insecure-requests")

    def test_new_directive_is_appended(self):
        merged = merge_csp_directives({"connect-src": ["'self'", "wss:"]})
        assert list(merged)[-1] == "connect-src"
        assert list(merged)[:-1] == list(DEFAULT_CSP_DIRECTIVES)

    def test_merge_does_not_touch_defaults(self):
        merge_csp_directives({"default-src": ["'none'"]})
        assert DEFAULT_CSP_DIRECTIVES["default-src"] == ("'self'",)

    def test_build_csp_bare_directive(self):
        assert build_csp({"default-src": ["'self'"], "block-all-mixed-content": []}) == (
            "default-src 'self'; block-all-mixed-content"
        )

    def test_caller_directives_not_mutated(self):
        directives = {"img-src": ["'self'"]}
        compute_headers({"content_security_policy": directives})
        assert directives == {"img-src": ["'self'"]}


class TestValidation:
    def test_unknown_option_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            compute_headers({"x_frame_option": "DENY"})
        assert exc_info.value.error_code == "C001"

    def test_wrong_type_rejected(self):
        with pytest.raises(ConfigurationError):
            SecurityHeadersOptions(x_frame_options=1)

    def test_directive_tokens_must_be_sequence(self):
        with pytest.raises(ConfigurationError):
            SecurityHeadersOptions(content_security_policy={"default-src": "'self'"})

    def test_non_mapping_options_rejected(self):
        with pytest.raises(ConfigurationError):
            compute_headers(["x_frame_options"])


class TestApplyHeaders:
    def test_writes_every_header(self):
        response = Response()
        apply_headers(response, compute_headers())

        for name, value in EXPECTED_DEFAULTS:
            assert response.headers[name] == value

    def test_replaces_existing_value(self):
        response = Response()
        response.headers["X-Frame-Options"] = "ALLOWALL"
        apply_headers(response, {"X-Frame-Options": "DENY"})

        assert response.headers.getlist("X-Frame-Options") == ["DENY"]
