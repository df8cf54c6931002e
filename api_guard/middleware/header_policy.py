"""
Security header policy.

Computes the set of hardening headers for a response from a
:class:`SecurityHeadersOptions` object. Computation is pure: no I/O, a new
ordered dict per call, and no exceptions for options that passed
validation. Writing the result onto a response is a separate step
(:func:`apply_headers`) so the policy can be asserted on directly.

Default output:
    X-DNS-Prefetch-Control: on
    Strict-Transport-Security: max-age=31536000; includeSubDomains; preload
    X-Frame-Options: SAMEORIGIN
    X-Content-Type-Options: nosniff
    X-XSS-Protection: 1; mode=block
    Referrer-Policy: strict-origin-when-cross-origin
    Content-Security-Policy: built from DEFAULT_CSP_DIRECTIVES
    X-Permitted-Cross-Domain-Policies: none
    Expect-CT: max-age=86400, enforce

References:
    - OWASP Secure Headers Project
    - Mozilla Observatory recommendations
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from starlette.responses import Response

from api_guard.exceptions import ConfigurationError
from api_guard.middleware.types import build_options


CSPDirectives = Dict[str, List[str]]
HeaderSet = Dict[str, str]

DEFAULT_CSP_DIRECTIVES: Mapping[str, Tuple[str, ...]] = {
    "default-src": ("'self'",),
    "base-uri": ("'self'",),
    "font-src": ("'self'", "https:", "data:"),
    "form-action": ("'self'",),
    "frame-ancestors": ("'self'",),
    "img-src": ("'self'", "data:", "https:"),
    "object-src": ("'none'",),
    "script-src": ("'self'", "'unsafe-inline'", "'unsafe-eval'"),
    "script-src-attr": ("'none'",),
    "style-src": ("'self'", "'unsafe-inline'"),
    "upgrade-insecure-requests": (),
}


@dataclass(frozen=True)
class HSTSOptions:
    """Structured Strict-Transport-Security value."""
    max_age: int = 31536000
    include_subdomains: bool = True
    preload: bool = True

    def render(self) -> str:
        parts = [f"max-age={self.max_age}"]
        if self.include_subdomains:
            parts.append("includeSubDomains")
        if self.preload:
            parts.append("preload")
        return "; ".join(parts)


@dataclass(frozen=True)
class ExpectCTOptions:
    """Structured Expect-CT value."""
    max_age: int = 86400
    enforce: bool = True
    report_uri: Optional[str] = None

    def render(self) -> str:
        parts = [f"max-age={self.max_age}"]
        if self.enforce:
            parts.append("enforce")
        if self.report_uri:
            parts.append(f'report-uri="{self.report_uri}"')
        return ", ".join(parts)


HeaderToggle = Union[bool, str]


@dataclass
class SecurityHeadersOptions:
    """
    Per-header overrides.

    Every field accepts ``True`` (default value), ``False`` (header
    disabled) or a literal string used verbatim. HSTS and Expect-CT also
    accept their structured options (or a mapping of their fields), and the
    CSP accepts a partial directive map merged over the defaults.
    """
    x_dns_prefetch_control: HeaderToggle = True
    strict_transport_security: Union[HeaderToggle, HSTSOptions] = True
    x_frame_options: HeaderToggle = True
    x_content_type_options: HeaderToggle = True
    x_xss_protection: HeaderToggle = True
    referrer_policy: HeaderToggle = True
    content_security_policy: Union[HeaderToggle, Mapping[str, Sequence[str]]] = True
    x_permitted_cross_domain_policies: HeaderToggle = True
    expect_ct: Union[HeaderToggle, ExpectCTOptions] = True

    def __post_init__(self) -> None:
        for name, _header, _default in _HEADER_POLICY:
            value = getattr(self, name)
            if isinstance(value, (bool, str)):
                continue
            if name == "strict_transport_security":
                self.strict_transport_security = _structured(HSTSOptions, name, value)
            elif name == "expect_ct":
                self.expect_ct = _structured(ExpectCTOptions, name, value)
            elif name == "content_security_policy":
                self.content_security_policy = _validate_directives(value)
            else:
                raise ConfigurationError(
                    f"{name} must be a bool or a string",
                    field=name,
                    value=value,
                )


def _structured(options_cls, name: str, value: Any):
    if isinstance(value, options_cls):
        return value
    if isinstance(value, Mapping):
        return build_options(options_cls, value)
    raise ConfigurationError(
        f"{name} must be a bool, a string or {options_cls.__name__}",
        field=name,
        value=value,
    )


def _validate_directives(value: Any) -> CSPDirectives:
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            "content_security_policy must be a bool, a policy string or a directive map",
            field="content_security_policy",
            value=value,
        )
    directives: CSPDirectives = {}
    for name, tokens in value.items():
        if isinstance(tokens, str) or not all(isinstance(t, str) for t in tokens):
            raise ConfigurationError(
                f"CSP directive '{name}' must be a sequence of source tokens",
                field="content_security_policy",
                value=tokens,
            )
        directives[name] = list(tokens)
    return directives


def merge_csp_directives(
    overrides: Optional[Mapping[str, Sequence[str]]] = None,
) -> CSPDirectives:
    """
    Merge caller directives over the defaults.

    A supplied directive replaces the default tokens for that name in full.
    Defaults keep their position; new directive names are appended.
    """
    merged: CSPDirectives = {
        name: list(tokens) for name, tokens in DEFAULT_CSP_DIRECTIVES.items()
    }
    for name, tokens in (overrides or {}).items():
        merged[name] = list(tokens)
    return merged


def build_csp(directives: Mapping[str, Sequence[str]]) -> str:
    """Render a directive map as a Content-Security-Policy value."""
    return "; ".join(
        " ".join([name, *tokens]) for name, tokens in directives.items()
    )


# (option field, header name, default value factory) in emission order
_HEADER_POLICY: Tuple[Tuple[str, str, Callable[[], str]], ...] = (
    ("x_dns_prefetch_control", "X-DNS-Prefetch-Control", lambda: "on"),
    ("strict_transport_security", "Strict-Transport-Security", lambda: HSTSOptions().render()),
    ("x_frame_options", "X-Frame-Options", lambda: "SAMEORIGIN"),
    ("x_content_type_options", "X-Content-Type-Options", lambda: "nosniff"),
    ("x_xss_protection", "X-XSS-Protection", lambda: "1; mode=block"),
    ("referrer_policy", "Referrer-Policy", lambda: "strict-origin-when-cross-origin"),
    ("content_security_policy", "Content-Security-Policy", lambda: build_csp(DEFAULT_CSP_DIRECTIVES)),
    ("x_permitted_cross_domain_policies", "X-Permitted-Cross-Domain-Policies", lambda: "none"),
    ("expect_ct", "Expect-CT", lambda: ExpectCTOptions().render()),
)


def compute_headers(
    options: Union[SecurityHeadersOptions, Mapping[str, Any], None] = None,
) -> HeaderSet:
    """
    Compute the security headers for one response.

    Args:
        options: ``SecurityHeadersOptions``, a mapping of its fields, or
            None for the defaults.

    Returns:
        Header name to value, in the fixed emission order. Disabled headers
        are absent.
    """
    opts = build_options(SecurityHeadersOptions, options)
    headers: HeaderSet = {}

    for name, header, default in _HEADER_POLICY:
        value = getattr(opts, name)
        if value is False:
            continue
        if value is True:
            headers[header] = default()
        elif isinstance(value, str):
            headers[header] = value
        elif isinstance(value, (HSTSOptions, ExpectCTOptions)):
            headers[header] = value.render()
        else:
            headers[header] = build_csp(merge_csp_directives(value))

    return headers


def apply_headers(response: Response, headers: Mapping[str, str]) -> None:
    """Write each header onto the response once, in order."""
    for header, value in headers.items():
        response.headers[header] = value
