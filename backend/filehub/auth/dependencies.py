"""FastAPI dependencies for auth."""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.auth.jwt import get_subject_from_access
from filehub.db.session import get_db
from filehub.errors import Unauthenticated
from filehub.hub import Hub
from filehub.users.models import User
from filehub.users.service import authenticate, get_user_by_username

bearer = HTTPBearer(auto_error=False)
basic = HTTPBasic(auto_error=False)
log = logging.getLogger(__name__)


def get_hub(request: Request) -> Hub:
    """The Hub the app was built around."""
    return request.app.state.hub


def _challenge(request: Request, hub: Hub) -> dict:
    if request.url.path.startswith("/dav"):
        return {"WWW-Authenticate": f'Basic realm="{hub.settings.web.realm}"'}
    return {"WWW-Authenticate": "Bearer"}


async def get_current_user(
    request: Request,
    hub: Annotated[Hub, Depends(get_hub)],
    session: Annotated[AsyncSession, Depends(get_db)],
    token: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
    credentials: Annotated[Optional[HTTPBasicCredentials], Depends(basic)],
) -> User:
    """Resolve a Bearer token or Basic credentials to the current user; raise Unauthenticated otherwise."""
    if token is not None:
        username = get_subject_from_access(token.credentials, hub.settings.auth)
        if not username:
            log.debug("Invalid or expired access token")
            raise Unauthenticated("Invalid or expired token", headers=_challenge(request, hub))
        user = await get_user_by_username(session, username)
        if user is None:
            log.warning("Token valid but user not found: username=%s", username)
            raise Unauthenticated("User not found", headers=_challenge(request, hub))
        return user
    if credentials is not None:
        user = await authenticate(
            session, credentials.username, credentials.password, hub.settings.web.realm
        )
        if user is None:
            log.warning("Basic auth failed for username=%s", credentials.username)
            raise Unauthenticated("Invalid username or password", headers=_challenge(request, hub))
        return user
    log.debug("Request missing credentials path=%s", request.url.path)
    raise Unauthenticated("Not authenticated", headers=_challenge(request, hub))
