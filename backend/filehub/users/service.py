"""User service: lookups, creation with home repository and quota, bootstrap admin."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.auth.jwt import hash_credential, verify_credential
from filehub.config import Settings
from filehub.db.session import utcnow
from filehub.errors import BadRequest, Conflict
from filehub.files.quota import ensure_quota
from filehub.files.storage import FilesystemStorage
from filehub.repos.service import create_repository, validate_repo_name
from filehub.users.models import User, UserCreate

log = logging.getLogger(__name__)


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    """Return the active user called username, or None."""
    result = await session.execute(
        select(User).where(User.username == username, User.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    """Return the active user with email, or None."""
    result = await session.execute(
        select(User).where(User.email == email, User.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    result = await session.execute(
        select(User).where(User.id == user_id, User.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def authenticate(
    session: AsyncSession, username: str, password: str, realm: str
) -> Optional[User]:
    """Return the active user if password matches their stored digest, else None."""
    user = await get_user_by_username(session, username)
    if user is None or not verify_credential(username, password, realm, user.ha1):
        return None
    return user


async def create_user(
    session: AsyncSession,
    storage: FilesystemStorage,
    settings: Settings,
    payload: UserCreate,
    is_admin: bool = False,
) -> User:
    """
    Create a user with their quota row and home repository (named after the username).
    Raises Conflict if username or email is taken, inactive users included. Caller must commit session.
    """
    try:
        validate_repo_name(payload.username)
    except BadRequest as e:
        raise BadRequest(f"Invalid username: {payload.username!r}") from e
    result = await session.execute(
        select(User.id).where(
            (User.username == payload.username) | (User.email == payload.email)
        )
    )
    if result.first() is not None:
        raise Conflict(f"User already exists: {payload.username}")
    user = User(
        username=payload.username,
        email=payload.email,
        ha1=hash_credential(payload.username, payload.password, settings.web.realm),
        first_name=payload.first_name,
        last_name=payload.last_name,
        is_admin=is_admin,
    )
    session.add(user)
    await session.flush()
    await ensure_quota(session, user.id, settings.quota.default_bytes)
    await create_repository(session, storage, user, user.username)
    log.info("Created user username=%s admin=%s", user.username, is_admin)
    return user


async def touch_last_login(session: AsyncSession, user: User) -> None:
    user.last_login = utcnow()
    await session.flush()


async def ensure_admin_exists(
    session: AsyncSession, storage: FilesystemStorage, settings: Settings
) -> None:
    """
    If admin_username, admin_email and admin_initial_password are set and no user has that
    username, create the first admin user.
    """
    if not settings.admin_username or not settings.admin_email or not settings.admin_initial_password:
        return
    result = await session.execute(select(User.id).where(User.username == settings.admin_username))
    if result.first() is not None:
        return
    log.info("Creating bootstrap admin user username=%s", settings.admin_username)
    payload = UserCreate(
        username=settings.admin_username,
        email=settings.admin_email,
        password=settings.admin_initial_password,
        first_name="Admin",
        last_name="User",
    )
    await create_user(session, storage, settings, payload, is_admin=True)
