"""Dependency providers for the FastAPI surface."""

from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException, status

from . import state
from .schemas import UserSession
from .services.rate_limiter import RateLimiter
from .services.token_service import UserAuthManager


def get_user_auth_manager() -> UserAuthManager:
    """Return the process-wide session manager (built lazily by state)."""
    return state.get_user_auth_manager()


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide rate limiter owned by state."""
    return state.get_rate_limiter()


async def get_current_session(
    authorization: Optional[str] = Header(default=None),
    session_token: Optional[str] = Cookie(default=None),
    auth_manager: UserAuthManager = Depends(get_user_auth_manager),
) -> UserSession:
    """Resolve the caller's session from `Authorization: Bearer <token>`.

    Falls back to the `session_token` cookie set by /auth/callback. Every
    rejection reason (missing header, bad signature, expired token, session
    evicted from the store) produces the same 401.
    """
    if not authorization and session_token:
        authorization = f"Bearer {session_token}"

    session = await auth_manager.authenticate_user(authorization)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session
