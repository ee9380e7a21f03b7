"""Settings management.

Loaded from environment or a local .env file; cached process-wide.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Meta app credentials (OAuth)
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_REDIRECT_URI: Optional[str] = None
    META_OAUTH_SCOPES: str = "ads_management,ads_read,business_management,read_insights"

    # Graph API
    META_API_VERSION: str = "v23.0"
    META_BASE_URL: str = "https://graph.facebook.com"
    # "development" or "standard" access tier; static, never auto-detected
    META_API_TIER: str = "standard"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Sessions
    JWT_SECRET: str = ""
    JWT_EXPIRES_MINUTES: int = 10080  # 7 days
    TOKEN_ENCRYPTION_KEY: str = ""
    SESSION_TTL_SECONDS: int = 7 * 24 * 60 * 60
    TOKEN_TTL_SECONDS: int = 60 * 24 * 60 * 60

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    RETRY_JITTER_SECONDS: float = 1.0
    RETRY_MAX_RETRY_AFTER_SECONDS: float = 300.0

    # Cookies
    COOKIE_SECURE: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def oauth_scopes(self) -> List[str]:
        return [s.strip() for s in self.META_OAUTH_SCOPES.split(",") if s.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
