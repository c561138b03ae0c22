"""FileObject queries: get, upsert by (repo, path), children and subtree. Caller must commit session."""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.db.session import utcnow
from filehub.files.models import FileObject
from filehub.files.paths import ROOT, base_name, rebase


async def get_file(session: AsyncSession, repo_id: int, path: str) -> Optional[FileObject]:
    """Return the FileObject at (repo_id, path) or None."""
    result = await session.execute(
        select(FileObject).where(FileObject.repo_id == repo_id, FileObject.path == path)
    )
    return result.scalar_one_or_none()


async def create_root(session: AsyncSession, repo_id: int, owner_id: int) -> FileObject:
    """Insert the "/" directory of a new repository."""
    root = FileObject(
        repo_id=repo_id,
        parent_id=None,
        owner_id=owner_id,
        name=ROOT,
        path=ROOT,
        size=0,
        mod_time=utcnow(),
        is_dir=True,
    )
    session.add(root)
    await session.flush()
    return root


async def upsert_file(
    session: AsyncSession,
    repo_id: int,
    path: str,
    parent: FileObject,
    owner_id: int,
    *,
    size: int,
    is_dir: bool,
    mod_time: Optional[datetime] = None,
    mime_type: Optional[str] = None,
    checksum: Optional[str] = None,
) -> Tuple[FileObject, bool]:
    """
    Insert or update the row at (repo_id, path). Returns (row, created).
    Updating keeps id, owner and created_at.
    """
    obj = await get_file(session, repo_id, path)
    created = obj is None
    if created:
        obj = FileObject(
            repo_id=repo_id,
            parent_id=parent.id,
            owner_id=owner_id,
            name=base_name(path),
            path=path,
        )
        session.add(obj)
    obj.size = 0 if is_dir else size
    obj.is_dir = is_dir
    obj.mod_time = mod_time or utcnow()
    obj.mime_type = mime_type
    obj.checksum = checksum
    obj.updated_at = utcnow()
    await session.flush()
    return obj, created


async def list_children(
    session: AsyncSession, parent_id: int, offset: int = 0, limit: Optional[int] = None
) -> List[FileObject]:
    """Direct children of parent_id ordered by name (id breaks ties)."""
    stmt = (
        select(FileObject)
        .where(FileObject.parent_id == parent_id)
        .order_by(FileObject.name, FileObject.id)
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_children(session: AsyncSession, parent_id: int) -> int:
    result = await session.execute(
        select(func.count()).select_from(FileObject).where(FileObject.parent_id == parent_id)
    )
    return int(result.scalar_one())


def _subtree_clause(prefix: str):
    if prefix == ROOT:
        return true()
    return or_(
        FileObject.path == prefix,
        FileObject.path.startswith(prefix + "/", autoescape=True),
    )


async def list_subtree(session: AsyncSession, repo_id: int, prefix: str) -> List[FileObject]:
    """prefix and everything below it, shallowest paths first."""
    result = await session.execute(
        select(FileObject)
        .where(FileObject.repo_id == repo_id, _subtree_clause(prefix))
        .order_by(func.length(FileObject.path), FileObject.path)
    )
    return list(result.scalars().all())


async def subtree_file_bytes(session: AsyncSession, repo_id: int, prefix: str) -> int:
    """Sum of file sizes at or below prefix."""
    result = await session.execute(
        select(func.coalesce(func.sum(FileObject.size), 0)).where(
            FileObject.repo_id == repo_id,
            FileObject.is_dir.is_(False),
            _subtree_clause(prefix),
        )
    )
    return int(result.scalar_one())


async def delete_subtree(session: AsyncSession, repo_id: int, prefix: str) -> int:
    """Hard-delete prefix and all descendants. Returns the number of rows removed."""
    result = await session.execute(
        delete(FileObject)
        .where(FileObject.repo_id == repo_id, _subtree_clause(prefix))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def move_subtree(
    session: AsyncSession, obj: FileObject, new_path: str, new_parent: FileObject
) -> None:
    """Re-home obj under new_parent at new_path and rewrite the path prefix of its descendants."""
    old_path = obj.path
    now = utcnow()
    if obj.is_dir:
        descendants = await list_subtree(session, obj.repo_id, old_path)
        for row in descendants:
            if row.id == obj.id:
                continue
            row.path = rebase(row.path, old_path, new_path)
            row.updated_at = now
    obj.path = new_path
    obj.name = base_name(new_path)
    obj.parent_id = new_parent.id
    obj.updated_at = now
    await session.flush()


async def copy_subtree(
    session: AsyncSession, src: FileObject, dst_path: str, dst_parent: FileObject, owner_id: int
) -> FileObject:
    """Deep-copy src (and, for directories, its descendants) to dst_path. Returns the new top row."""
    now = utcnow()
    rows = await list_subtree(session, src.repo_id, src.path) if src.is_dir else [src]
    # Old id -> new row; list_subtree yields parents before children
    copies = {}
    top = None
    for row in rows:
        new_path = rebase(row.path, src.path, dst_path)
        parent_id = dst_parent.id if row.id == src.id else copies[row.parent_id].id
        clone = FileObject(
            repo_id=dst_parent.repo_id,
            parent_id=parent_id,
            owner_id=owner_id,
            name=base_name(new_path),
            path=new_path,
            size=row.size,
            mod_time=now,
            is_dir=row.is_dir,
            mime_type=row.mime_type,
            checksum=row.checksum,
        )
        session.add(clone)
        await session.flush()
        copies[row.id] = clone
        if row.id == src.id:
            top = clone
    return top


DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


def clamp_limit(limit: Optional[int]) -> int:
    """Page size capped at MAX_LIMIT; missing or non-positive means DEFAULT_LIMIT."""
    if limit is None or limit <= 0:
        return DEFAULT_LIMIT
    return min(MAX_LIMIT, limit)


def clamp_offset(offset: Optional[int]) -> int:
    return max(0, offset or 0)
