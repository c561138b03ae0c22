"""Read/write/delete decisions for (user, repository, path)."""

import enum
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.errors import Forbidden
from filehub.repos.models import Repository, Share
from filehub.repos.service import find_share
from filehub.users.models import User

log = logging.getLogger(__name__)


class Permission(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


async def has_permission(
    session: AsyncSession, user: User, repo: Repository, path: str, perm: Permission
) -> bool:
    """
    Owners and admins may do anything. Otherwise a share of a subtree containing path is
    required; a share grants all of read, write and delete.
    """
    if repo.owner_id == user.id or user.is_admin:
        return True
    share = await find_share(session, repo.id, user.id, path)
    return share is not None


async def check_permission(
    session: AsyncSession, user: User, repo: Repository, path: str, perm: Permission
) -> None:
    """Raise Forbidden unless user holds perm on path in repo."""
    if not await has_permission(session, user, repo, path, perm):
        log.warning(
            "Permission denied user=%s repo=%s path=%s perm=%s",
            user.username, repo.name, path, perm.value,
        )
        raise Forbidden("Permission denied")


async def check_repo_access(session: AsyncSession, user: User, repo: Repository) -> None:
    """Raise Forbidden unless user owns repo, is an admin, or holds any share in it."""
    if repo.owner_id == user.id or user.is_admin:
        return
    result = await session.execute(
        select(Share.id).where(Share.repo_id == repo.id, Share.user_id == user.id).limit(1)
    )
    if result.first() is None:
        log.warning("Repository access denied user=%s repo=%s", user.username, repo.name)
        raise Forbidden("Permission denied")
