"""Graph API response handling and error classification.

WHAT:
    Parses a provider response exactly once: success bodies are decoded to
    JSON, error bodies become a typed MetaAdsClientError.

WHY:
    Error type detection happens here and nowhere else. Downstream code
    branches on exception classes and never re-parses message strings.

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/guides/error-handling
    - https://developers.facebook.com/docs/marketing-api/overview/rate-limiting
    - exceptions.py
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..exceptions import (
    MetaAdsAuthenticationError,
    MetaAdsClientError,
    MetaAdsNetworkError,
    MetaAdsNotFoundError,
    MetaAdsPermissionError,
    MetaAdsRateLimitError,
    MetaAdsServerError,
    MetaAdsValidationError,
)

logger = logging.getLogger(__name__)

# (code, subcode) -> retry hint in seconds
RATE_LIMIT_HINTS: Dict[tuple, float] = {
    (17, 2446079): 300.0,   # ad account user request limit
    (613, 1487742): 60.0,   # too many calls from this ad account
    (4, 1504022): 300.0,    # app-level throttling
    (4, 1504039): 300.0,
}

# Codes that mean "throttled" even without a known subcode
RATE_LIMIT_CODES = {4, 17, 32, 341, 613}
BUSINESS_USE_CASE_CODES = range(80000, 80015)

AUTH_CODES = {102, 190}
PERMISSION_CODES = {10} | set(range(200, 300))
VALIDATION_CODE = 100
NOT_FOUND_SUBCODE = 33
TRANSIENT_CODES = {1, 2}


def _retry_after_header(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(
    http_status: int,
    body: Any,
    headers: Optional[Mapping[str, str]] = None,
) -> MetaAdsClientError:
    """Build the typed error for a failed response.

    Args:
        http_status: HTTP status code of the response
        body: Decoded JSON body, or the raw text when it was not JSON
        headers: Response headers (used for Retry-After)

    Returns:
        The most specific MetaAdsClientError subclass for the failure.
    """
    envelope = body.get("error") if isinstance(body, dict) else None
    if not isinstance(envelope, dict) or "code" not in envelope:
        return _classify_by_status(http_status, body, headers)

    message = envelope.get("message") or f"HTTP {http_status}"
    code = _as_int(envelope.get("code"))
    subcode = _as_int(envelope.get("error_subcode"))
    extra = {
        "error_type": envelope.get("type"),
        "fbtrace_id": envelope.get("fbtrace_id"),
    }

    if (code, subcode) in RATE_LIMIT_HINTS:
        return MetaAdsRateLimitError(
            message,
            retry_after=RATE_LIMIT_HINTS[(code, subcode)],
            error_code=code,
            error_subcode=subcode,
            **extra,
        )
    if code in RATE_LIMIT_CODES or code in BUSINESS_USE_CASE_CODES:
        return MetaAdsRateLimitError(
            message,
            retry_after=_retry_after_header(headers),
            error_code=code,
            error_subcode=subcode,
            **extra,
        )
    if code in AUTH_CODES:
        return MetaAdsAuthenticationError(message, code, subcode, **extra)
    if code in PERMISSION_CODES:
        return MetaAdsPermissionError(message, code, subcode, **extra)
    if http_status == 404 or (code == VALIDATION_CODE and subcode == NOT_FOUND_SUBCODE):
        return MetaAdsNotFoundError(message, code, subcode, **extra)
    if code == VALIDATION_CODE:
        return MetaAdsValidationError(message, code, subcode, **extra)
    if code in TRANSIENT_CODES or envelope.get("is_transient") or http_status >= 500:
        return MetaAdsServerError(
            message, http_status=http_status, error_code=code, error_subcode=subcode, **extra
        )
    return MetaAdsClientError(
        message, http_status=http_status, error_code=code, error_subcode=subcode, **extra
    )


def _classify_by_status(
    http_status: int,
    body: Any,
    headers: Optional[Mapping[str, str]],
) -> MetaAdsClientError:
    """Fallback when the body is not a Graph error envelope."""
    text = body if isinstance(body, str) else json.dumps(body)
    message = f"HTTP {http_status}: {text[:500]}"

    if http_status == 401:
        return MetaAdsAuthenticationError(message)
    if http_status == 403:
        return MetaAdsPermissionError(message)
    if http_status == 404:
        return MetaAdsNotFoundError(message)
    if http_status == 429:
        return MetaAdsRateLimitError(message, retry_after=_retry_after_header(headers))
    if http_status >= 500:
        return MetaAdsServerError(message, http_status=http_status)
    if http_status == 400:
        return MetaAdsValidationError(message)
    return MetaAdsClientError(message, http_status=http_status)


def parse_response(response: httpx.Response) -> Any:
    """Decode a Graph API response or raise its classified error.

    Returns:
        Decoded JSON for successful responses (raw text if the body is not JSON).

    Raises:
        MetaAdsClientError subclass for any non-2xx response.
    """
    text = response.text
    try:
        body: Any = json.loads(text) if text else {}
    except ValueError:
        body = text

    if response.is_success:
        return body

    error = classify_error(response.status_code, body, response.headers)
    logger.error(
        f"[META_ERROR] HTTP {response.status_code} -> {type(error).__name__}: "
        f"code={error.error_code} subcode={error.error_subcode} "
        f"fbtrace_id={error.fbtrace_id} message={error.message}"
    )
    raise error


async def send_request(
    method: str,
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
    **kwargs: Any,
) -> Any:
    """Dispatch one HTTP request and return its decoded body.

    Transport failures (timeouts, connection errors) become
    MetaAdsNetworkError; HTTP failures go through parse_response. The log
    label carries the path only, never the query string (it may hold
    secrets).
    """
    path = httpx.URL(url).path
    try:
        if client is not None:
            response = await client.request(method, url, timeout=timeout, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as session:
                response = await session.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning(f"[META_ERROR] {method} {path} timed out after {timeout}s")
        raise MetaAdsNetworkError(f"Request timed out: {method} {path}") from e
    except httpx.TransportError as e:
        logger.warning(f"[META_ERROR] {method} {path} transport error: {type(e).__name__}")
        raise MetaAdsNetworkError(f"Network error during {method} {path}: {type(e).__name__}") from e

    return parse_response(response)
