"""
Meta API Exceptions
===================

Typed error taxonomy for every call that crosses the Meta Graph API boundary.

WHY THIS FILE EXISTS
--------------------
Callers (tool handlers, the retry engine, the auth router) branch on the kind
of failure, not on message text:
- Authentication failures need re-login, never a retry
- Rate limits and server errors are transient and retried with backoff
- Validation / permission / not-found errors are the caller's problem

Every error keeps the provider's original code/subcode so callers can run
their own remediation (e.g. code 190 subcode 463 = expired token).

RELATED FILES
-------------
- services/error_handler.py: Builds these from HTTP responses
- services/retry.py: Uses `retryable` to decide whether to re-invoke
- services/rate_limiter.py: Raises MetaAdsRateLimitError on budget exhaustion
"""

from typing import Any, Dict, Optional

TOKEN_EXPIRED_CODE = 190
TOKEN_EXPIRED_SUBCODE = 463


class MetaAdsClientError(Exception):
    """
    Base exception for Meta Ads API errors.

    WHAT:
        Carries the human-readable message plus whatever the provider told us
        (HTTP status, error code/subcode/type, fbtrace id).

    WHY:
        Lets callers catch every provider failure with one except clause while
        still exposing the raw codes for remediation logic.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        error_code: Optional[int] = None,
        error_subcode: Optional[int] = None,
        error_type: Optional[str] = None,
        fbtrace_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.error_code = error_code
        self.error_subcode = error_subcode
        self.error_type = error_type
        self.fbtrace_id = fbtrace_id

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for tool responses and JSON error bodies."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "http_status": self.http_status,
            "error_code": self.error_code,
            "error_subcode": self.error_subcode,
            "error_type": self.error_type,
            "fbtrace_id": self.fbtrace_id,
        }

    def to_user_message(self) -> str:
        """Message with provider codes appended when known."""
        if self.error_code is None:
            return self.message
        codes = f"code {self.error_code}"
        if self.error_subcode is not None:
            codes += f", subcode {self.error_subcode}"
        return f"{self.message} ({codes})"


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Raised when the access token is invalid, expired or missing (401 / code 190)."""

    def __init__(self, message: str, error_code: Optional[int] = None, error_subcode: Optional[int] = None, **kwargs):
        kwargs.setdefault("http_status", 401)
        kwargs.setdefault("error_type", "OAuthException")
        super().__init__(message, error_code=error_code, error_subcode=error_subcode, **kwargs)

    @property
    def is_token_expired(self) -> bool:
        return self.error_code == TOKEN_EXPIRED_CODE and self.error_subcode == TOKEN_EXPIRED_SUBCODE

    def to_user_message(self) -> str:
        if self.is_token_expired:
            return "Your Meta access token has expired. Please log in again to re-authorize."
        return super().to_user_message()


class MetaAdsPermissionError(MetaAdsClientError):
    """Raised when permissions are insufficient (403 / codes 10, 200-299)."""

    def __init__(self, message: str, error_code: Optional[int] = None, error_subcode: Optional[int] = None, **kwargs):
        kwargs.setdefault("http_status", 403)
        super().__init__(message, error_code=error_code, error_subcode=error_subcode, **kwargs)


class MetaAdsValidationError(MetaAdsClientError):
    """Raised when the request is malformed (400 / code 100)."""

    def __init__(self, message: str, error_code: Optional[int] = None, error_subcode: Optional[int] = None, **kwargs):
        kwargs.setdefault("http_status", 400)
        super().__init__(message, error_code=error_code, error_subcode=error_subcode, **kwargs)


class MetaAdsNotFoundError(MetaAdsClientError):
    """Raised when the object does not exist or is not visible to the token."""

    def __init__(self, message: str, error_code: Optional[int] = None, error_subcode: Optional[int] = None, **kwargs):
        kwargs.setdefault("http_status", 404)
        super().__init__(message, error_code=error_code, error_subcode=error_subcode, **kwargs)


class MetaAdsRateLimitError(MetaAdsClientError):
    """
    Rate limit hit, either our own per-account budget or Meta's throttling.

    ATTRIBUTES:
        retry_after: Seconds the caller should wait (None if unknown)
        account_id: Ad account whose budget was exhausted (local limiter only)
    """

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        account_id: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault("http_status", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.account_id = account_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        data["account_id"] = self.account_id
        return data

    def to_user_message(self) -> str:
        if self.retry_after is not None and self.retry_after > 0:
            return f"{self.message} Retry after {int(self.retry_after)} seconds."
        return super().to_user_message()


class MetaAdsServerError(MetaAdsClientError):
    """Raised for 5xx responses and errors Meta flags as transient."""

    retryable = True


class MetaAdsNetworkError(MetaAdsClientError):
    """Raised when the request never got a response (timeout, DNS, connection reset)."""

    retryable = True
