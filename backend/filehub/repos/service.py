"""Repository resolution and lifecycle, and shares. Functions taking a session leave commit to the caller."""

import logging
from pathlib import Path
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.db.session import Database
from filehub.errors import BadRequest, Conflict, NotFound
from filehub.files.paths import is_within, validate_path, validate_segment
from filehub.files.storage import FilesystemStorage
from filehub.files.store import create_root
from filehub.repos.models import Repository, Share
from filehub.sync.models import UploadSession
from filehub.sync.staging import ChunkStore
from filehub.sync.versions import init_repository_version
from filehub.users.models import User

log = logging.getLogger(__name__)


def validate_repo_name(name: str) -> str:
    """Repository names are single path segments and may not start with "."."""
    validate_segment(name)
    if name.startswith("."):
        raise BadRequest(f"Invalid repository name: {name!r}")
    return name


async def get_repository(
    session: AsyncSession, name: str, owner_id: Optional[int] = None
) -> Repository:
    """
    Return the repository called name. With owner_id only that owner's repository matches;
    without it the oldest repository of that name does. Raises NotFound.
    """
    stmt = select(Repository).where(Repository.name == name)
    if owner_id is not None:
        stmt = stmt.where(Repository.owner_id == owner_id)
    result = await session.execute(stmt.order_by(Repository.id).limit(1))
    repo = result.scalar_one_or_none()
    if repo is None:
        raise NotFound(f"Repository not found: {name}")
    return repo


async def resolve_for_principal(session: AsyncSession, name: str, user: User) -> Repository:
    """
    Repository named name as seen by user: their own first, then one shared with them,
    then any other of that name (the permission check decides access).
    """
    if not name:
        raise BadRequest("Repository name is required")
    try:
        return await get_repository(session, name, owner_id=user.id)
    except NotFound:
        pass
    result = await session.execute(
        select(Repository)
        .join(Share, Share.repo_id == Repository.id)
        .where(Repository.name == name, Share.user_id == user.id)
        .order_by(Repository.id)
        .limit(1)
    )
    shared = result.scalar_one_or_none()
    if shared is not None:
        return shared
    return await get_repository(session, name)


async def get_home_repository(session: AsyncSession, user: User) -> Repository:
    return await get_repository(session, user.username, owner_id=user.id)


async def list_repositories(session: AsyncSession, owner_id: int) -> List[Repository]:
    result = await session.execute(
        select(Repository).where(Repository.owner_id == owner_id).order_by(Repository.name)
    )
    return list(result.scalars().all())


def default_repo_root(storage: FilesystemStorage, owner: User, name: str) -> Path:
    """Home repositories live at <root_dir>/<username>; others at <root_dir>/.repos/<username>/<name>."""
    if name == owner.username:
        return storage.repo_root_for(name)
    return storage.root_dir / ".repos" / validate_segment(owner.username) / name


async def create_repository(
    session: AsyncSession,
    storage: FilesystemStorage,
    owner: User,
    name: str,
    root: Optional[Path] = None,
) -> Repository:
    """
    Create a repository with its "/" directory and version row, and make its backing directory.
    Raises Conflict if owner already has a repository called name.
    """
    validate_repo_name(name)
    existing = await session.execute(
        select(Repository.id).where(Repository.owner_id == owner.id, Repository.name == name)
    )
    if existing.scalar_one_or_none() is not None:
        raise Conflict(f"Repository already exists: {name}")
    backing = Path(root) if root is not None else default_repo_root(storage, owner, name)
    repo = Repository(owner_id=owner.id, name=name, root=str(backing.absolute()))
    session.add(repo)
    await session.flush()
    await create_root(session, repo.id, owner.id)
    await init_repository_version(session, repo.id)
    await storage.init_repo(repo)
    log.info("Created repository name=%s owner=%s root=%s", name, owner.username, repo.root)
    return repo


async def delete_repository(
    db: Database, storage: FilesystemStorage, chunks: ChunkStore, repo_id: int
) -> None:
    """
    Delete a repository. Its files, shares, change log, version row and upload sessions go with
    it (FK cascade); staged chunks and the backing directory are removed after the commit.
    """
    async with db.session() as session:
        repo = await session.get(Repository, repo_id)
        if repo is None:
            raise NotFound("Repository not found")
        result = await session.execute(
            select(UploadSession.upload_id).where(UploadSession.repo_id == repo_id)
        )
        upload_ids = list(result.scalars().all())
        await session.delete(repo)
    for upload_id in upload_ids:
        await chunks.remove_session(upload_id)
    await storage.remove_repo(repo)
    log.info("Deleted repository name=%s id=%s", repo.name, repo_id)


async def create_share(session: AsyncSession, repo: Repository, grantee: User, path: str) -> Share:
    """Grant grantee access to the subtree of repo rooted at path."""
    validate_path(path)
    if grantee.id == repo.owner_id:
        raise BadRequest("Cannot share a repository with its owner")
    result = await session.execute(
        select(Share).where(
            Share.repo_id == repo.id, Share.user_id == grantee.id, Share.path == path
        )
    )
    if result.scalar_one_or_none() is not None:
        raise Conflict("Share already exists")
    share = Share(repo_id=repo.id, owner_id=repo.owner_id, user_id=grantee.id, path=path)
    session.add(share)
    await session.flush()
    log.info("Shared repo=%s path=%s with user_id=%s", repo.name, path, grantee.id)
    return share


async def delete_share(session: AsyncSession, share_id: int) -> None:
    share = await session.get(Share, share_id)
    if share is None:
        raise NotFound("Share not found")
    await session.delete(share)
    await session.flush()


async def list_shares_for_user(session: AsyncSession, user_id: int) -> List[Share]:
    """Shares granted to user_id."""
    result = await session.execute(
        select(Share).where(Share.user_id == user_id).order_by(Share.repo_id, Share.path)
    )
    return list(result.scalars().all())


async def find_share(
    session: AsyncSession, repo_id: int, user_id: int, path: str
) -> Optional[Share]:
    """The share of repo_id granted to user_id with the longest path containing path, if any."""
    result = await session.execute(
        select(Share).where(Share.repo_id == repo_id, Share.user_id == user_id)
    )
    best = None
    for share in result.scalars().all():
        if not is_within(path, share.path):
            continue
        if best is None or len(share.path) > len(best.path):
            best = share
    return best
