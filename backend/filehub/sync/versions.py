"""
Version tokens and the per-repository change log.

A token is "v<seconds>-<nanoseconds>" with both parts zero-padded to fixed width, so byte-wise
comparison of two tokens orders them by time. Within a repository each recorded change gets a
token strictly greater than the previous current_version.
"""

import logging
import re
import threading
import time
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.db.session import utcnow
from filehub.errors import BadRequest, NotFound
from filehub.files.store import clamp_limit
from filehub.sync.models import OPERATIONS, ChangeLog, RepositoryVersion

log = logging.getLogger(__name__)

NS_PER_SECOND = 1_000_000_000
ZERO_VERSION = "v0000000000-000000000"

_VERSION_RE = re.compile(r"^v(\d{1,10})-(\d{1,9})$")


def format_version(ns: int) -> str:
    """Token for a nanosecond timestamp."""
    seconds, nanos = divmod(ns, NS_PER_SECOND)
    return f"v{seconds:010d}-{nanos:09d}"


def parse_version(token: str) -> int:
    """Nanosecond timestamp of a token. Accepts unpadded forms such as "v0-0"."""
    match = _VERSION_RE.match(token or "")
    if not match:
        raise BadRequest(f"Invalid version token: {token!r}")
    return int(match.group(1)) * NS_PER_SECOND + int(match.group(2))


def normalize_version(token: str) -> str:
    """Padded form of token, comparable byte-wise with stored tokens."""
    return format_version(parse_version(token))


class VersionClock:
    """
    Issues strictly increasing tokens for this process. Equal or backwards clock reads are
    bumped to one nanosecond past the last issued token.
    """

    def __init__(self, clock: Callable[[], int] = time.time_ns) -> None:
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def new_version(self, after: Optional[str] = None) -> str:
        """Next token; also strictly greater than after when given."""
        floor = parse_version(after) if after else 0
        with self._lock:
            ns = max(self._clock(), self._last + 1, floor + 1)
            self._last = ns
        return format_version(ns)


async def init_repository_version(session: AsyncSession, repo_id: int) -> RepositoryVersion:
    """Create the version row of a new repository at ZERO_VERSION."""
    rv = RepositoryVersion(repo_id=repo_id, current_version=ZERO_VERSION, version_vector="{}")
    session.add(rv)
    await session.flush()
    return rv


async def get_current_version(session: AsyncSession, repo_id: int) -> RepositoryVersion:
    result = await session.execute(
        select(RepositoryVersion).where(RepositoryVersion.repo_id == repo_id)
    )
    rv = result.scalar_one_or_none()
    if rv is None:
        raise NotFound("Repository version not found")
    return rv


async def lock_repository(session: AsyncSession, repo_id: int) -> None:
    """
    Take repo_id's write lock until session commits or rolls back. Call it before anything
    else in the transaction: on SQLite the UPDATE also takes the database's RESERVED lock, so
    reads that follow see every earlier writer's commit.
    """
    result = await session.execute(
        update(RepositoryVersion)
        .where(RepositoryVersion.repo_id == repo_id)
        .values(current_version=RepositoryVersion.current_version)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await init_repository_version(session, repo_id)


async def record_change_and_bump_version(
    session: AsyncSession,
    clock: VersionClock,
    repo_id: int,
    operation: str,
    path: str,
    user_id: int,
    old_path: Optional[str] = None,
) -> ChangeLog:
    """
    Append a ChangeLog row and move the repository's current_version to its token.
    Both land in the caller's transaction; the version row is locked for the duration.
    """
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown operation: {operation}")
    result = await session.execute(
        select(RepositoryVersion)
        .where(RepositoryVersion.repo_id == repo_id)
        .with_for_update()
    )
    rv = result.scalar_one_or_none()
    if rv is None:
        rv = await init_repository_version(session, repo_id)
    version = clock.new_version(after=rv.current_version)
    entry = ChangeLog(
        repo_id=repo_id,
        operation=operation,
        path=path,
        old_path=old_path,
        user_id=user_id,
        version=version,
    )
    session.add(entry)
    rv.current_version = version
    rv.updated_at = utcnow()
    await session.flush()
    log.debug("Recorded %s repo_id=%s path=%s version=%s", operation, repo_id, path, version)
    return entry


async def list_changes(
    session: AsyncSession, repo_id: int, since: Optional[str] = None, limit: Optional[int] = None
) -> List[ChangeLog]:
    """Changes of repo_id with a token greater than since (all when empty), in id order."""
    stmt = select(ChangeLog).where(ChangeLog.repo_id == repo_id)
    if since:
        stmt = stmt.where(ChangeLog.version > normalize_version(since))
    stmt = stmt.order_by(ChangeLog.id).limit(clamp_limit(limit))
    result = await session.execute(stmt)
    return list(result.scalars().all())
