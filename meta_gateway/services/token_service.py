"""Session and token lifecycle manager.

WHAT:
    - Issues and verifies this system's session tokens (JWT)
    - Persists user sessions and Meta OAuth tokens in the KV store, each
      under its own key and TTL (sessions 7 days, tokens 60 days)
    - Runs the OAuth code exchange and token refresh against Graph
    - Builds a per-user MetaAuthManager for MetaApiClient

WHY:
    - Every lookup is keyed strictly by user id; nothing about one user's
      credentials is cached on this object
    - Provider tokens are Fernet-encrypted before they reach the store
    - A token can outlive its session, so a returning user gets a fresh
      session without repeating the OAuth dance

REFERENCES:
    - security.py (JWT + encrypt_secret / decrypt_secret)
    - services/kv_store.py (store handle passed in at construction)
    - routers/auth.py (HTTP surface for login/callback/logout/refresh)
"""

import hmac
import json
import logging
import secrets
from typing import Any, Optional, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..exceptions import MetaAdsAuthenticationError, MetaAdsClientError
from ..schemas import MetaUserInfo, UserSession, UserTokenData, utcnow
from ..security import create_access_token, decrypt_secret, encrypt_secret, verify_token_subject
from .auth_manager import MetaAuthManager
from .error_handler import send_request
from .kv_store import KeyValueStore
from .retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

SESSION_PREFIX = "user_session:"
TOKEN_PREFIX = "user_tokens:"

# Tokens shorter-lived than this get swapped for a long-lived one at login
LONG_LIVED_THRESHOLD_SECONDS = 60 * 24 * 60 * 60


class UserAuthManager:
    """Owns sessions and provider tokens for every user.

    Usage:
        ```python
        manager = UserAuthManager(store=RedisKeyValueStore.from_url(url), settings=get_settings())
        token = await manager.create_session_token("meta_123")
        user_id = await manager.verify_session_token(token)
        auth = await manager.create_user_auth_manager(user_id)
        ```
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if not settings.JWT_SECRET:
            raise RuntimeError("JWT_SECRET is not set. Export a random secret or add it to .env.")
        if not settings.TOKEN_ENCRYPTION_KEY:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a Fernet key and export it "
                "or add it to .env."
            )
        self.store = store
        self.settings = settings
        self.http_client = http_client
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    # --- Keys -----------------------------------------------------------

    @staticmethod
    def session_key(user_id: str) -> str:
        return f"{SESSION_PREFIX}{user_id}"

    @staticmethod
    def token_key(user_id: str) -> str:
        return f"{TOKEN_PREFIX}{user_id}"

    # --- Session tokens -------------------------------------------------

    async def create_session_token(self, user_id: str) -> str:
        """Signed session credential for `user_id`, valid JWT_EXPIRES_MINUTES."""
        return create_access_token(
            user_id,
            secret=self.settings.JWT_SECRET,
            expires_minutes=self.settings.JWT_EXPIRES_MINUTES,
        )

    async def verify_session_token(self, token: Optional[str]) -> Optional[str]:
        """Return the user id for a valid token, else None (whatever the reason)."""
        user_id = verify_token_subject(token, secret=self.settings.JWT_SECRET)
        if user_id is None:
            logger.info("[USER_AUTH] Session token rejected")
        return user_id

    # --- Sessions -------------------------------------------------------

    async def store_user_session(self, session: UserSession) -> None:
        await self.store.set(
            self.session_key(session.user_id),
            session.model_dump_json(),
            ex=self.settings.SESSION_TTL_SECONDS,
        )

    async def get_user_session(self, user_id: str) -> Optional[UserSession]:
        """Load a session and stamp `last_used`.

        The re-write keeps the key's remaining TTL and only lands if the key
        still exists, so usage never pushes the hard expiry out or revives
        a session that expired mid-lookup.
        """
        key = self.session_key(user_id)
        raw = await self.store.get(key)
        if raw is None:
            return None

        try:
            session = UserSession.model_validate_json(raw)
        except ValidationError:
            logger.error(f"[USER_AUTH] Corrupt session record for {user_id}")
            return None

        if session.user_id != user_id:
            logger.error(f"[USER_AUTH] Session key/user mismatch for {user_id}")
            return None

        session.last_used = utcnow()
        await self.store.set(key, session.model_dump_json(), keep_ttl=True, xx=True)
        return session

    # --- Tokens ---------------------------------------------------------

    def _encode_tokens(self, user_id: str, tokens: UserTokenData) -> str:
        key = self.settings.TOKEN_ENCRYPTION_KEY
        record = tokens.model_dump(mode="json")
        record["user_id"] = user_id
        record["access_token"] = encrypt_secret(tokens.access_token, key=key, context=f"{user_id}:access")
        if tokens.refresh_token:
            record["refresh_token"] = encrypt_secret(tokens.refresh_token, key=key, context=f"{user_id}:refresh")
        record["updated_at"] = utcnow().isoformat()
        return json.dumps(record, sort_keys=True)

    def _decode_tokens(self, user_id: str, raw: str) -> Optional[UserTokenData]:
        key = self.settings.TOKEN_ENCRYPTION_KEY
        try:
            record = json.loads(raw)
        except ValueError:
            record = None
        if not isinstance(record, dict) or record.get("user_id") != user_id:
            logger.error(f"[USER_AUTH] Token record for {user_id} is unreadable or belongs to another user")
            return None
        try:
            record["access_token"] = decrypt_secret(record["access_token"], key=key, context=f"{user_id}:access")
            if record.get("refresh_token"):
                record["refresh_token"] = decrypt_secret(record["refresh_token"], key=key, context=f"{user_id}:refresh")
            return UserTokenData.model_validate(record)
        except (KeyError, ValueError, ValidationError) as e:
            logger.error(f"[USER_AUTH] Failed to restore tokens for {user_id}: {type(e).__name__}")
            return None

    async def store_user_tokens(self, user_id: str, tokens: UserTokenData) -> None:
        await self.store.set(
            self.token_key(user_id),
            self._encode_tokens(user_id, tokens),
            ex=self.settings.TOKEN_TTL_SECONDS,
        )
        logger.info(f"[USER_AUTH] Stored encrypted tokens for {user_id}")

    async def get_user_tokens(self, user_id: str) -> Optional[UserTokenData]:
        raw = await self.store.get(self.token_key(user_id))
        if raw is None:
            return None
        return self._decode_tokens(user_id, raw)

    async def delete_user_data(self, user_id: str) -> None:
        removed = await self.store.delete(self.session_key(user_id), self.token_key(user_id))
        logger.info(f"[USER_AUTH] Deleted session and tokens for {user_id} ({removed} keys)")

    # --- Credential holder ----------------------------------------------

    async def create_user_auth_manager(self, user_id: str) -> Optional[MetaAuthManager]:
        """Credential holder for `user_id`, or None when no tokens are stored.

        Refreshed tokens are written back under this same user id.
        """
        tokens = await self.get_user_tokens(user_id)
        if tokens is None:
            return None

        async def _persist_refresh(access_token: str, expires_in: Optional[int]) -> None:
            current = await self.get_user_tokens(user_id) or tokens
            updated = current.model_copy(
                update={"access_token": access_token, "expires_in": expires_in, "issued_at": utcnow()}
            )
            await self.store_user_tokens(user_id, updated)

        return self._credential_holder(
            tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expiration=tokens.expires_at,
            on_token_refreshed=_persist_refresh,
        )

    def _credential_holder(self, access_token: str, **kwargs: Any) -> MetaAuthManager:
        return MetaAuthManager(
            access_token,
            app_id=self.settings.META_APP_ID,
            app_secret=self.settings.META_APP_SECRET,
            redirect_uri=self.settings.META_REDIRECT_URI,
            api_version=self.settings.META_API_VERSION,
            base_url=self.settings.META_BASE_URL,
            auto_refresh=True,
            http_client=self.http_client,
            retry_policy=self.retry_policy,
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            **kwargs,
        )

    # --- OAuth ----------------------------------------------------------

    def _graph_url(self, path: str) -> str:
        return f"{self.settings.META_BASE_URL.rstrip('/')}/{self.settings.META_API_VERSION}/{path}"

    async def _graph_call(self, method: str, path: str, label: str, **kwargs: Any) -> Any:
        url = self._graph_url(path)

        async def _call():
            return await send_request(
                method, url, client=self.http_client, timeout=self.settings.HTTP_TIMEOUT_SECONDS, **kwargs
            )

        return await retry_with_backoff(_call, label=label, policy=self.retry_policy)

    @staticmethod
    def generate_oauth_state() -> str:
        """Random CSRF state for the OAuth round trip."""
        return secrets.token_hex(32)

    @staticmethod
    def validate_oauth_state(state: Optional[str], session_state: Optional[str]) -> bool:
        if not state or not session_state:
            return False
        return hmac.compare_digest(state, session_state)

    def generate_meta_oauth_url(self, state: str) -> str:
        if not self.settings.META_APP_ID or not self.settings.META_REDIRECT_URI:
            raise ValueError("META_APP_ID and META_REDIRECT_URI must be configured")
        params = {
            "client_id": self.settings.META_APP_ID,
            "redirect_uri": self.settings.META_REDIRECT_URI,
            "scope": ",".join(self.settings.oauth_scopes),
            "response_type": "code",
            "state": state,
        }
        return f"https://www.facebook.com/{self.settings.META_API_VERSION}/dialog/oauth?{urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str) -> UserTokenData:
        """Trade an authorization code for tokens, upgrading to long-lived when possible.

        Raises:
            ValueError: App credentials not configured
            MetaAdsClientError: Token endpoint failure after retries
        """
        s = self.settings
        if not s.META_APP_ID or not s.META_APP_SECRET or not s.META_REDIRECT_URI:
            raise ValueError("META_APP_ID, META_APP_SECRET, and META_REDIRECT_URI must be configured")

        data = await self._graph_call(
            "POST",
            "oauth/access_token",
            "POST oauth/access_token (code)",
            data={
                "client_id": s.META_APP_ID,
                "client_secret": s.META_APP_SECRET,
                "redirect_uri": s.META_REDIRECT_URI,
                "code": code,
            },
        )
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise MetaAdsAuthenticationError("Token exchange response did not include an access token")

        expires_in = data.get("expires_in")
        if expires_in and int(expires_in) < LONG_LIVED_THRESHOLD_SECONDS:
            logger.info(f"[USER_AUTH] Token is short-lived ({expires_in}s), exchanging for long-lived token")
            try:
                exchanged = await self._credential_holder(access_token).exchange_for_long_lived_token()
                data = {**data, **exchanged}
            except (MetaAdsClientError, ValueError) as e:
                logger.warning(f"[USER_AUTH] Long-lived exchange failed, keeping short-lived token: {e}")

        return UserTokenData(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "bearer",
            expires_in=int(data["expires_in"]) if data.get("expires_in") else None,
            scope=set(),  # Meta does not return scopes from the token endpoint
        )

    async def get_meta_user_info(self, access_token: str) -> MetaUserInfo:
        data = await self._graph_call(
            "GET",
            "me",
            "GET me",
            params={"fields": "id,name,email"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return MetaUserInfo.model_validate(data)

    async def complete_oauth_login(self, code: str) -> Tuple[UserSession, str]:
        """Code exchange -> user info -> stored session + tokens -> session token."""
        tokens = await self.exchange_code_for_tokens(code)
        info = await self.get_meta_user_info(tokens.access_token)

        user_id = f"meta_{info.id}"
        session = UserSession(user_id=user_id, email=info.email, name=info.name, meta_user_id=info.id)
        await self.store_user_session(session)
        await self.store_user_tokens(user_id, tokens)

        session_token = await self.create_session_token(user_id)
        logger.info(f"[USER_AUTH] OAuth login completed for {user_id}")
        return session, session_token

    async def refresh_user_token(self, user_id: str) -> bool:
        """Swap the user's token for a fresh long-lived one. True on success."""
        auth = await self.create_user_auth_manager(user_id)
        if auth is None:
            return False

        try:
            result = await auth.exchange_for_long_lived_token()
        except (MetaAdsClientError, ValueError) as e:
            logger.error(f"[USER_AUTH] Token refresh failed for {user_id}: {type(e).__name__}: {e}")
            return False

        tokens = await self.get_user_tokens(user_id)
        if tokens is None:
            return False
        updated = tokens.model_copy(
            update={
                "access_token": result["access_token"],
                "expires_in": result.get("expires_in"),
                "issued_at": utcnow(),
            }
        )
        await self.store_user_tokens(user_id, updated)
        logger.info(f"[USER_AUTH] Refreshed token for {user_id}")
        return True

    # --- Inbound requests -----------------------------------------------

    @staticmethod
    def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
        if not auth_header or not auth_header.startswith("Bearer "):
            return None
        token = auth_header[len("Bearer "):].strip()
        return token or None

    async def authenticate_user(self, auth_header: Optional[str]) -> Optional[UserSession]:
        """Session for an `Authorization: Bearer <token>` header, or None."""
        token = self.extract_bearer_token(auth_header)
        if not token:
            return None
        user_id = await self.verify_session_token(token)
        if not user_id:
            return None
        return await self.get_user_session(user_id)
