"""API middleware pipeline: rate limiting, security headers and audit logging."""

__version__ = "1.0.0"
