"""Meta OAuth login and session endpoints.

WHAT:
    /auth/login     -> authorization URL + CSRF state cookie
    /auth/callback  -> code exchange, session + token persistence, session token
    /auth/logout    -> delete session and tokens
    /auth/profile   -> session details and token status
    /auth/refresh   -> swap the stored Meta token for a fresh long-lived one

WHY:
    Tool callers authenticate with the session token issued here. The Meta
    token never leaves the server.

REFERENCES:
    - services/token_service.py
    - https://developers.facebook.com/docs/facebook-login/guides/advanced/manual-flow
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Request, Response, status

from .. import schemas
from ..config import Settings, get_settings
from ..deps import get_current_session, get_user_auth_manager
from ..exceptions import MetaAdsAuthenticationError, MetaAdsClientError
from ..services.token_service import UserAuthManager

logger = logging.getLogger(__name__)

STATE_COOKIE = "oauth_state"
SESSION_COOKIE = "session_token"
STATE_COOKIE_MAX_AGE = 600

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Bad Request"},
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        500: {"model": schemas.ErrorResponse, "description": "Internal Server Error"},
    },
)


def _cookie_kwargs(request: Request, settings: Settings, key: str, value: str, max_age: int) -> Dict[str, Any]:
    cookie_kwargs: Dict[str, Any] = {
        "key": key,
        "value": value,
        "httponly": True,
        "samesite": "none",
        "secure": settings.COOKIE_SECURE,
        "max_age": max_age,
        "path": "/",
    }
    # Browsers drop SameSite=None cookies without Secure, which plain HTTP can't set
    if request.url.scheme == "http" or not settings.COOKIE_SECURE:
        cookie_kwargs["samesite"] = "lax"
        cookie_kwargs["secure"] = False
    return cookie_kwargs


def _user_out(session: schemas.UserSession) -> schemas.UserOut:
    return schemas.UserOut(
        id=session.user_id,
        name=session.name,
        email=session.email,
        meta_user_id=session.meta_user_id,
    )


@router.get("/login", response_model=schemas.LoginResponse)
async def login(
    request: Request,
    response: Response,
    auth_manager: UserAuthManager = Depends(get_user_auth_manager),
    settings: Settings = Depends(get_settings),
):
    """Start the OAuth flow.

    WHAT:
        Generates a CSRF state, stores it in an HTTP-only cookie and returns
        the Meta consent URL.
    """
    state = auth_manager.generate_oauth_state()
    try:
        auth_url = auth_manager.generate_meta_oauth_url(state)
    except ValueError as e:
        logger.error(f"[AUTH_ROUTER] OAuth not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Meta OAuth not configured. Missing META_APP_ID or META_REDIRECT_URI.",
        )

    response.set_cookie(**_cookie_kwargs(request, settings, STATE_COOKIE, state, STATE_COOKIE_MAX_AGE))
    logger.info("[AUTH_ROUTER] Issued OAuth authorization URL")
    return schemas.LoginResponse(auth_url=auth_url)


@router.get("/callback", response_model=schemas.CallbackResponse)
async def callback(
    request: Request,
    response: Response,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    oauth_state: Optional[str] = Cookie(None),
    auth_manager: UserAuthManager = Depends(get_user_auth_manager),
    settings: Settings = Depends(get_settings),
):
    """Complete the OAuth flow.

    WHAT:
        Checks the CSRF state, exchanges the code, fetches the Meta profile,
        persists session and tokens, and issues the session token.
    WHY:
        The session token is the only credential tool callers ever hold.
    """
    if error:
        logger.error(f"[AUTH_ROUTER] OAuth error from Meta: {error} - {error_description}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"OAuth error: {error}")

    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing authorization code")

    if not auth_manager.validate_oauth_state(state, oauth_state):
        logger.warning("[AUTH_ROUTER] OAuth state mismatch")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")

    try:
        session, session_token = await auth_manager.complete_oauth_login(code)
    except ValueError as e:
        logger.error(f"[AUTH_ROUTER] OAuth not configured: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except MetaAdsAuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.to_user_message())
    except MetaAdsClientError as e:
        logger.error(f"[AUTH_ROUTER] OAuth completion failed: {type(e).__name__}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_user_message())

    response.set_cookie(
        **_cookie_kwargs(request, settings, SESSION_COOKIE, session_token, settings.SESSION_TTL_SECONDS)
    )
    response.set_cookie(**_cookie_kwargs(request, settings, STATE_COOKIE, "", 0))
    return schemas.CallbackResponse(user=_user_out(session), session_token=session_token)


@router.post("/logout", response_model=schemas.MessageResponse)
async def logout(
    request: Request,
    response: Response,
    session: schemas.UserSession = Depends(get_current_session),
    auth_manager: UserAuthManager = Depends(get_user_auth_manager),
    settings: Settings = Depends(get_settings),
):
    await auth_manager.delete_user_data(session.user_id)
    response.set_cookie(**_cookie_kwargs(request, settings, SESSION_COOKIE, "", 0))
    logger.info(f"[AUTH_ROUTER] Logged out {session.user_id}")
    return schemas.MessageResponse(message="Logged out successfully")


@router.get("/profile", response_model=schemas.ProfileResponse)
async def profile(
    session: schemas.UserSession = Depends(get_current_session),
    auth_manager: UserAuthManager = Depends(get_user_auth_manager),
):
    tokens = await auth_manager.get_user_tokens(session.user_id)
    token_status = schemas.TokenStatus(
        has_token=tokens is not None,
        expires_at=tokens.expires_at if tokens else None,
        is_expired=tokens.is_expired() if tokens else False,
    )
    return schemas.ProfileResponse(
        user=_user_out(session),
        created_at=session.created_at,
        last_used=session.last_used,
        token_status=token_status,
    )


@router.post("/refresh", response_model=schemas.MessageResponse)
async def refresh(
    session: schemas.UserSession = Depends(get_current_session),
    auth_manager: UserAuthManager = Depends(get_user_auth_manager),
):
    refreshed = await auth_manager.refresh_user_token(session.user_id)
    if not refreshed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Token refresh failed. Please re-authenticate.",
        )
    return schemas.MessageResponse(message="Token refreshed successfully")
