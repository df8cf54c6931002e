"""
Exception hierarchy for the middleware pipeline.

Middleware failures at request time are recovered and logged, never raised.
These exceptions cover the two paths that do surface: configuration
mistakes at construction time and the rate limit rejection payload.
"""
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ApiGuardException(Exception):
    """Base exception for the pipeline"""

    def __init__(
        self,
        message: str,
        error_code: str = "E000",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self):
        return f"[{self.error_code}] {self.message}"

    def __repr__(self):
        return f"{self.__class__.__name__}(code={self.error_code}, message={self.message})"


# ============================================
# Configuration errors (C001-C099)
# ============================================

class ConfigurationError(ApiGuardException):
    """Malformed pipeline or middleware options, raised at construction."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        details: Dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if value is not None:
            details["value"] = repr(value)[:100]
        super().__init__(message=message, error_code="C001", details=details)


# ============================================
# Rate limit errors (R001-R099)
# ============================================

class RateLimitExceededError(ApiGuardException):
    """Client exceeded its request budget for the current window."""

    code = "TOO_MANY_REQUESTS"

    def __init__(
        self,
        message: str = "Too many requests, please try again later.",
        limit: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        details: Dict[str, Any] = {}
        if limit is not None:
            details["limit"] = limit
        super().__init__(message=message, error_code="R001", details=details)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        """Body of the 429 response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retry_after": self.retry_after,
                "timestamp": self.timestamp.isoformat(),
            }
        }


__all__ = [
    "ApiGuardException",
    "ConfigurationError",
    "RateLimitExceededError",
]
