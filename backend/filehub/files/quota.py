"""Per-user storage quota: admission check before writes, usage accounting with them."""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.db.session import utcnow
from filehub.errors import QuotaExceeded
from filehub.files.models import FileObject
from filehub.repos.models import Repository
from filehub.users.models import UserQuota

log = logging.getLogger(__name__)


async def get_quota(session: AsyncSession, user_id: int) -> Optional[UserQuota]:
    """Return the user's quota row or None (no quota enforced)."""
    result = await session.execute(select(UserQuota).where(UserQuota.user_id == user_id))
    return result.scalar_one_or_none()


async def ensure_quota(session: AsyncSession, user_id: int, total_bytes: int) -> UserQuota:
    """Return the user's quota row, creating it with total_bytes if missing."""
    quota = await get_quota(session, user_id)
    if quota is None:
        quota = UserQuota(user_id=user_id, total_bytes=total_bytes, used_bytes=0)
        session.add(quota)
        await session.flush()
    return quota


async def quota_admit(session: AsyncSession, user_id: int, delta: int) -> None:
    """
    Raise QuotaExceeded if adding delta bytes would take the user over their limit.
    Non-positive deltas are always admitted. Users without a quota row are unlimited.
    """
    if delta <= 0:
        return
    quota = await get_quota(session, user_id)
    if quota is None:
        return
    if quota.used_bytes + delta > quota.total_bytes:
        log.warning(
            "Quota exceeded user_id=%s used=%d delta=%d total=%d",
            user_id, quota.used_bytes, delta, quota.total_bytes,
        )
        raise QuotaExceeded("Storage quota exceeded")


async def charge(session: AsyncSession, user_id: int, delta: int) -> None:
    """Adjust used_bytes by delta (never below zero). Runs in the caller's transaction."""
    if delta == 0:
        return
    quota = await get_quota(session, user_id)
    if quota is None:
        return
    quota.used_bytes = max(0, quota.used_bytes + delta)
    quota.updated_at = utcnow()
    await session.flush()


async def recalculate_used_bytes(session: AsyncSession, user_id: int) -> int:
    """Rebuild used_bytes from the sizes of files in repositories the user owns."""
    result = await session.execute(
        select(func.coalesce(func.sum(FileObject.size), 0))
        .join(Repository, Repository.id == FileObject.repo_id)
        .where(Repository.owner_id == user_id, FileObject.is_dir.is_(False))
    )
    used = int(result.scalar_one())
    quota = await get_quota(session, user_id)
    if quota is not None:
        quota.used_bytes = used
        quota.updated_at = utcnow()
        await session.flush()
    return used
