"""User routes: login, refresh, me."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.auth.dependencies import get_current_user, get_hub
from filehub.auth.jwt import create_access_token, create_refresh_token, get_subject_from_refresh
from filehub.db.session import get_db
from filehub.errors import Unauthenticated
from filehub.hub import Hub
from filehub.limiter import LOGIN_RATE, REFRESH_RATE, limiter
from filehub.users.models import RefreshRequest, TokenPair, User, UserLogin, UserResponse
from filehub.users.service import authenticate, get_user_by_username, touch_last_login

router = APIRouter(prefix="/api", tags=["users"])
log = logging.getLogger(__name__)


def _token_pair(hub: Hub, username: str) -> TokenPair:
    auth = hub.settings.auth
    return TokenPair(
        access_token=create_access_token(username, auth),
        refresh_token=create_refresh_token(username, auth),
        expires_in=auth.access_token_expire_minutes * 60,
    )


@router.post("/auth/login", response_model=TokenPair)
@limiter.limit(LOGIN_RATE)
async def login(
    request: Request,
    body: UserLogin,
    hub: Annotated[Hub, Depends(get_hub)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> TokenPair:
    """Login with username and password; returns access and refresh tokens."""
    user = await authenticate(session, body.username, body.password, hub.settings.web.realm)
    if user is None:
        log.warning("Login failed for username=%s", body.username)
        raise Unauthenticated("Invalid username or password", headers={"WWW-Authenticate": "Bearer"})
    await touch_last_login(session, user)
    log.info("Login successful for username=%s", user.username)
    return _token_pair(hub, user.username)


@router.post("/auth/refresh", response_model=TokenPair)
@limiter.limit(REFRESH_RATE)
async def refresh(
    request: Request,
    body: RefreshRequest,
    hub: Annotated[Hub, Depends(get_hub)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> TokenPair:
    """Exchange refresh token for new access and refresh tokens."""
    username = get_subject_from_refresh(body.refresh_token, hub.settings.auth)
    if not username:
        log.warning("Refresh failed: invalid or expired token")
        raise Unauthenticated("Invalid or expired refresh token", headers={"WWW-Authenticate": "Bearer"})
    user = await get_user_by_username(session, username)
    if user is None:
        log.warning("Refresh failed: user not found username=%s", username)
        raise Unauthenticated("User not found", headers={"WWW-Authenticate": "Bearer"})
    log.info("Refresh successful for username=%s", user.username)
    return _token_pair(hub, user.username)


@router.get("/users/me", response_model=UserResponse)
async def me(
    current_user: Annotated[User, Depends(get_current_user)],
) -> UserResponse:
    """Return current authenticated user."""
    return UserResponse.model_validate(current_user)
