"""Per-user Meta credential holder.

WHAT:
    Wraps one user's access token (plus app credentials) and knows how to
    build auth headers, format account ids, detect expiry, and talk to the
    Graph OAuth endpoints (long-lived exchange, debug_token).

WHY:
    MetaApiClient asks this object for a valid token right before each
    dispatch and never touches raw token records. Each instance belongs to
    exactly one user; there is no shared credential state.

REFERENCES:
    - services/token_service.py (builds these per user)
    - https://developers.facebook.com/docs/facebook-login/guides/access-tokens/get-long-lived
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..exceptions import MetaAdsAuthenticationError, MetaAdsClientError
from .error_handler import send_request
from .retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "v23.0"
DEFAULT_BASE_URL = "https://graph.facebook.com"
USER_AGENT = "meta-ads-gateway/0.1.0"

# (new access token, expires_in seconds) -> None
TokenRefreshedCallback = Callable[[str, Optional[int]], Awaitable[None]]


class MetaAuthManager:
    """Credential holder for one user's Meta session.

    Usage:
        ```python
        auth = MetaAuthManager(access_token="EAAB...", app_id="123", app_secret="...")
        token = await auth.refresh_token_if_needed()
        headers = auth.get_auth_headers()
        ```
    """

    def __init__(
        self,
        access_token: str,
        *,
        refresh_token: Optional[str] = None,
        token_expiration: Optional[datetime] = None,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        auto_refresh: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        on_token_refreshed: Optional[TokenRefreshedCallback] = None,
    ):
        if not access_token:
            raise ValueError("Meta access token is required.")
        if len(access_token) < 10:
            raise ValueError("Invalid Meta access token format.")

        self.access_token = access_token
        self.refresh_token = refresh_token
        self.token_expiration = token_expiration
        self.app_id = app_id
        self.app_secret = app_secret
        self.redirect_uri = redirect_uri
        self.api_version = api_version or DEFAULT_API_VERSION
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.auto_refresh = auto_refresh
        self.http_client = http_client
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.on_token_refreshed = on_token_refreshed

    # --- Accessors ------------------------------------------------------

    def get_access_token(self) -> str:
        return self.access_token

    def get_api_version(self) -> str:
        return self.api_version

    def get_base_url(self) -> str:
        return self.base_url

    def graph_url(self, path: str = "") -> str:
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    @property
    def appsecret_proof(self) -> Optional[str]:
        """HMAC-SHA256 of the access token keyed by the app secret."""
        if not self.app_secret:
            return None
        return hmac.new(
            self.app_secret.encode("utf-8"),
            self.access_token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def get_auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "User-Agent": USER_AGENT,
        }

    @staticmethod
    def get_account_id(account_id_or_number: str) -> str:
        """Normalize to the `act_<number>` form."""
        if account_id_or_number.startswith("act_"):
            return account_id_or_number
        return f"act_{account_id_or_number}"

    @staticmethod
    def extract_account_number(account_id: str) -> str:
        if account_id.startswith("act_"):
            return account_id[len("act_"):]
        return account_id

    # --- Expiry & refresh -----------------------------------------------

    def is_token_expiring(self, buffer_minutes: int = 5) -> bool:
        """True when the token expires within `buffer_minutes`. Unknown expiry counts as valid."""
        if not self.token_expiration:
            return False
        return datetime.now(timezone.utc) >= self.token_expiration - timedelta(minutes=buffer_minutes)

    async def refresh_token_if_needed(self) -> str:
        """Return a usable access token, refreshing it first if it is expiring.

        Checked synchronously right before a request is dispatched. A failed
        refresh raises for the current request only; the stored token is
        left alone.

        Raises:
            MetaAdsAuthenticationError: Token expired and could not be refreshed
        """
        if not self.is_token_expiring():
            return self.access_token

        if not self.auto_refresh or not (self.app_id and self.app_secret):
            raise MetaAdsAuthenticationError(
                "Access token is expired. Please re-authenticate.",
                error_code=190,
                error_subcode=463,
            )

        logger.info("[META_AUTH] Token is expiring, attempting long-lived exchange")
        try:
            result = await self.exchange_for_long_lived_token()
        except MetaAdsClientError as e:
            logger.error(f"[META_AUTH] Auto-refresh failed: {type(e).__name__}: {e}")
            raise MetaAdsAuthenticationError(
                "Token expired and auto-refresh failed. Please re-authenticate.",
                error_code=e.error_code,
                error_subcode=e.error_subcode,
            ) from e

        logger.info("[META_AUTH] Token refreshed successfully")
        if self.on_token_refreshed is not None:
            await self.on_token_refreshed(result["access_token"], result.get("expires_in"))
        return self.access_token

    # --- OAuth endpoints ------------------------------------------------

    async def _token_endpoint(self, method: str, path: str, params: Dict[str, Any], label: str) -> Dict[str, Any]:
        url = self.graph_url(path)

        async def _call():
            if method == "GET":
                return await send_request(method, url, client=self.http_client, timeout=self.timeout, params=params)
            return await send_request(method, url, client=self.http_client, timeout=self.timeout, data=params)

        return await retry_with_backoff(_call, label=label, policy=self.retry_policy)

    def _require_app_credentials(self) -> None:
        if not self.app_id or not self.app_secret:
            raise ValueError("App ID and app secret are required for this token operation")

    def _apply_token(self, data: Dict[str, Any]) -> Dict[str, Any]:
        access_token = data.get("access_token")
        if not access_token:
            raise MetaAdsAuthenticationError("Token endpoint response did not include an access token")
        expires_in = data.get("expires_in")
        self.access_token = access_token
        if expires_in:
            self.token_expiration = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        return {
            "access_token": access_token,
            "token_type": data.get("token_type") or "bearer",
            "expires_in": int(expires_in) if expires_in else None,
        }

    async def exchange_for_long_lived_token(self, short_lived_token: Optional[str] = None) -> Dict[str, Any]:
        """Exchange a (short-lived) token for a ~60-day long-lived token."""
        self._require_app_credentials()
        data = await self._token_endpoint(
            "GET",
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": short_lived_token or self.access_token,
            },
            label="GET oauth/access_token (fb_exchange_token)",
        )
        return self._apply_token(data)

    async def validate_token(self) -> bool:
        """True if Graph accepts the token for /me."""
        try:
            await self._token_endpoint(
                "GET", "me", {"access_token": self.access_token, "fields": "id"}, label="GET me (validate)"
            )
            return True
        except MetaAdsAuthenticationError:
            return False

    async def get_token_info(self) -> Dict[str, Any]:
        """Inspect the token via debug_token. Never raises for provider errors."""
        try:
            result = await self._token_endpoint(
                "GET",
                "debug_token",
                {"input_token": self.access_token, "access_token": self.access_token},
                label="GET debug_token",
            )
        except MetaAdsClientError as e:
            logger.warning(f"[META_AUTH] Token info retrieval failed: {type(e).__name__}")
            return {"app_id": "", "user_id": None, "scopes": [], "expires_at": None, "is_valid": False}

        data = result.get("data") or {}
        expires_at = data.get("expires_at")
        return {
            "app_id": data.get("app_id", ""),
            "user_id": data.get("user_id"),
            "scopes": data.get("scopes") or [],
            "expires_at": datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
            "is_valid": bool(data.get("is_valid")),
        }

    def generate_auth_url(self, scopes: Optional[List[str]] = None, state: Optional[str] = None) -> str:
        """Authorization dialog URL for user consent."""
        if not self.app_id or not self.redirect_uri:
            raise ValueError("App ID and redirect URI are required for OAuth flow")
        params = {
            "client_id": self.app_id,
            "redirect_uri": self.redirect_uri,
            "scope": ",".join(scopes or ["ads_management"]),
            "response_type": "code",
        }
        if state:
            params["state"] = state
        return f"https://www.facebook.com/{self.api_version}/dialog/oauth?{urlencode(params)}"
