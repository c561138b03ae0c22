"""
File object layer: the operations both protocol fronts call.

Mutations run as: repository write lock, permission check, input validation, quota admission,
storage I/O, then the metadata updates and the change record, committed in the same transaction
that holds the lock. Writers to one repository are therefore serialized, and the order of their
storage changes matches the order of their commits. When the transaction fails after storage was
touched, the storage change is undone before the lock is released; if undoing fails too, the
operation surfaces as Internal.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.db.session import Database, utcnow
from filehub.errors import BadRequest, Conflict, Internal, NotFound, NotModified
from filehub.files import quota
from filehub.files.models import FileObject
from filehub.files.paths import ROOT, base_name, is_within, parent_path, validate_path
from filehub.files.storage import FilesystemStorage, StorageNotFound, guess_mime_type
from filehub.files.store import (
    clamp_limit,
    clamp_offset,
    copy_subtree,
    count_children,
    delete_subtree,
    get_file,
    list_children,
    move_subtree,
    subtree_file_bytes,
    upsert_file,
)
from filehub.repos.models import Repository
from filehub.repos.permissions import Permission, check_permission
from filehub.sync.versions import VersionClock, lock_repository, record_change_and_bump_version
from filehub.users.models import User

log = logging.getLogger(__name__)

OnCommit = Callable[[AsyncSession, FileObject], Awaitable[None]]


@dataclass
class Resource:
    """A (repository, path) pair; the file it names may not exist yet."""

    repo: Repository
    path: str


@dataclass
class PutResult:
    file: FileObject
    checksum: str
    version: str
    size: int
    created: bool


@dataclass
class ListResult:
    items: List[FileObject]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


async def _iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    yield data


class FileService:
    def __init__(self, db: Database, storage: FilesystemStorage, clock: VersionClock) -> None:
        self.db = db
        self.storage = storage
        self.clock = clock

    @asynccontextmanager
    async def _locked(self, repo: Repository) -> AsyncIterator[AsyncSession]:
        """Session holding repo's write lock until it commits or rolls back."""
        async with self.db.session() as session:
            await lock_repository(session, repo.id)
            yield session

    async def _compensate(self, what: str, undo: Awaitable[None]) -> None:
        """Run a storage undo step; failure leaves storage and metadata disagreeing."""
        try:
            await undo
        except Exception as e:
            log.exception("Could not undo %s", what)
            raise Internal(f"Storage and metadata are out of sync: {what}") from e

    async def _parent_dir(self, session: AsyncSession, repo: Repository, path: str) -> FileObject:
        parent = await get_file(session, repo.id, parent_path(path))
        if parent is None:
            raise NotFound(f"Parent directory not found: {parent_path(path)}")
        if not parent.is_dir:
            raise Conflict(f"Parent is not a directory: {parent_path(path)}")
        return parent

    async def _record(
        self,
        session: AsyncSession,
        user: User,
        repo: Repository,
        operation: str,
        path: str,
        old_path: Optional[str] = None,
    ) -> str:
        entry = await record_change_and_bump_version(
            session, self.clock, repo.id, operation, path, user.id, old_path=old_path
        )
        return entry.version

    async def get_info(self, user: User, resource: Resource) -> FileObject:
        path = validate_path(resource.path)
        async with self.db.session() as session:
            await check_permission(session, user, resource.repo, path, Permission.READ)
            obj = await get_file(session, resource.repo.id, path)
        if obj is None:
            raise NotFound(f"Not found: {path}")
        return obj

    async def list(
        self,
        user: User,
        resource: Resource,
        offset: Optional[int] = 0,
        limit: Optional[int] = None,
    ) -> ListResult:
        """Direct children of a directory by name, one page at a time."""
        path = validate_path(resource.path)
        offset = clamp_offset(offset)
        limit = clamp_limit(limit)
        async with self.db.session() as session:
            await check_permission(session, user, resource.repo, path, Permission.READ)
            obj = await get_file(session, resource.repo.id, path)
            if obj is None:
                raise NotFound(f"Not found: {path}")
            if not obj.is_dir:
                raise BadRequest(f"Not a directory: {path}")
            items = await list_children(session, obj.id, offset=offset, limit=limit)
            total = await count_children(session, obj.id)
        return ListResult(items=items, total=total, offset=offset, limit=limit)

    async def create_dir(self, user: User, resource: Resource) -> Tuple[FileObject, str]:
        """Create one directory. Returns (row, version)."""
        repo = resource.repo
        path = validate_path(resource.path)
        if path == ROOT:
            raise Conflict("Already exists: /")
        try:
            async with self._locked(repo) as session:
                await check_permission(session, user, repo, path, Permission.WRITE)
                if await get_file(session, repo.id, path) is not None:
                    raise Conflict(f"Already exists: {path}")
                parent = await self._parent_dir(session, repo, path)
                made = not await self.storage.exists(repo, path)
                await self.storage.mkdir_all(repo, path)
                try:
                    obj, _ = await upsert_file(
                        session, repo.id, path, parent, user.id, size=0, is_dir=True
                    )
                    version = await self._record(session, user, repo, "create", path)
                    await session.commit()
                except BaseException:
                    if made:
                        await self._compensate(f"mkdir {path}", self.storage.remove(repo, path))
                    raise
        except IntegrityError as e:
            raise Conflict(f"Already exists: {path}") from e
        log.info("mkdir user=%s repo=%s path=%s version=%s", user.username, repo.name, path, version)
        return obj, version

    async def check_put(
        self,
        session: AsyncSession,
        user: User,
        repo: Repository,
        path: str,
        size: Optional[int],
        parent_id: Optional[int] = None,
    ) -> Tuple[FileObject, Optional[FileObject]]:
        """
        Checks shared by the admission and commit phases of put. Returns (parent, existing).
        With parent_id (the parent seen at admission) a parent that was since moved, deleted or
        replaced is a Conflict rather than NotFound.
        """
        await check_permission(session, user, repo, path, Permission.WRITE)
        if parent_id is None:
            parent = await self._parent_dir(session, repo, path)
        else:
            parent = await get_file(session, repo.id, parent_path(path))
            if parent is None or parent.id != parent_id:
                raise Conflict(f"Parent directory changed during write: {parent_path(path)}")
        existing = await get_file(session, repo.id, path)
        if existing is not None and existing.is_dir:
            raise Conflict(f"Is a directory: {path}")
        if size is not None:
            old_size = existing.size if existing is not None else 0
            await quota.quota_admit(session, repo.owner_id, size - old_size)
        return parent, existing

    async def put(
        self,
        user: User,
        resource: Resource,
        stream: AsyncIterator[bytes],
        content_type: Optional[str] = None,
        size_hint: Optional[int] = None,
        on_commit: Optional[OnCommit] = None,
    ) -> PutResult:
        """
        Write a file from stream, replacing any previous content. Quota is checked against
        size_hint before any bytes are written, and against the real size before they become
        visible. Concurrent puts to one path are last-writer-wins. on_commit runs inside the
        metadata transaction.
        """
        repo = resource.repo
        path = validate_path(resource.path)
        if path == ROOT:
            raise Conflict("Is a directory: /")
        if size_hint is not None and size_hint < 0:
            raise BadRequest("Size must not be negative")
        async with self.db.session() as session:
            admitted_parent, _ = await self.check_put(session, user, repo, path, size_hint)
        parent_id = admitted_parent.id

        try:
            async with self.storage.create_file(repo, path) as sink:
                async for block in stream:
                    await sink.write(block)
                async with self._locked(repo) as session:
                    parent, existing = await self.check_put(
                        session, user, repo, path, sink.size, parent_id=parent_id
                    )
                    old_size = existing.size if existing is not None else 0
                    try:
                        await sink.commit()
                        obj, created = await upsert_file(
                            session,
                            repo.id,
                            path,
                            parent,
                            existing.owner_id if existing is not None else user.id,
                            size=sink.size,
                            is_dir=False,
                            mod_time=utcnow(),
                            mime_type=guess_mime_type(base_name(path), content_type),
                            checksum=sink.checksum,
                        )
                        await quota.charge(session, repo.owner_id, sink.size - old_size)
                        version = await self._record(
                            session, user, repo, "create" if created else "modify", path
                        )
                        if on_commit is not None:
                            await on_commit(session, obj)
                        await session.commit()
                    except BaseException:
                        await self._compensate(f"put {path}", sink.rollback())
                        raise
        except StorageNotFound as e:
            raise Conflict(f"Parent directory changed during write: {parent_path(path)}") from e
        except IntegrityError as e:
            raise Conflict(f"Concurrent change at {path}") from e
        except OSError as e:
            log.exception("put failed repo=%s path=%s", repo.name, path)
            raise Internal(f"Could not write {path}") from e
        log.info(
            "put user=%s repo=%s path=%s size=%d version=%s",
            user.username, repo.name, path, obj.size, version,
        )
        return PutResult(
            file=obj, checksum=obj.checksum, version=version, size=obj.size, created=created
        )

    async def put_bytes(
        self, user: User, resource: Resource, data: bytes, content_type: Optional[str] = None
    ) -> PutResult:
        return await self.put(
            user, resource, _iter_bytes(data), content_type=content_type, size_hint=len(data)
        )

    async def open(
        self, user: User, resource: Resource, if_none_match: Optional[str] = None
    ) -> Tuple[FileObject, AsyncIterator[bytes]]:
        """Return (row, byte stream). NotModified when if_none_match equals the stored checksum."""
        obj = await self.get_info(user, resource)
        if obj.is_dir:
            raise BadRequest(f"Is a directory: {obj.path}")
        if if_none_match and obj.checksum and if_none_match == obj.checksum:
            raise NotModified()
        try:
            stream = await self.storage.open_file(resource.repo, obj.path)
        except StorageNotFound as e:
            log.error("Metadata without bytes repo=%s path=%s", resource.repo.name, obj.path)
            raise Internal(f"Content missing for {obj.path}") from e
        return obj, stream

    async def delete(self, user: User, resource: Resource, recursive: bool = True) -> str:
        """
        Hard-delete a file or directory. A non-empty directory needs recursive. One change is
        recorded at the deleted path, also for whole subtrees. Returns the version.
        """
        repo = resource.repo
        path = validate_path(resource.path)
        if path == ROOT:
            raise BadRequest("Cannot delete the repository root")
        parked: Optional[Path] = None
        async with self._locked(repo) as session:
            await check_permission(session, user, repo, path, Permission.DELETE)
            obj = await get_file(session, repo.id, path)
            if obj is None:
                raise NotFound(f"Not found: {path}")
            if obj.is_dir and not recursive and await count_children(session, obj.id) > 0:
                raise Conflict(f"Directory not empty: {path}")
            freed = await subtree_file_bytes(session, repo.id, path)
            try:
                parked = await self.storage.detach(repo, path)
            except StorageNotFound:
                log.warning("Deleting metadata without bytes repo=%s path=%s", repo.name, path)
            try:
                await delete_subtree(session, repo.id, path)
                await quota.charge(session, repo.owner_id, -freed)
                version = await self._record(session, user, repo, "delete", path)
                await session.commit()
            except BaseException:
                if parked is not None:
                    await self._compensate(
                        f"delete {path}", self.storage.reattach(repo, path, parked)
                    )
                raise
        if parked is not None:
            try:
                await self.storage.purge(parked)
            except OSError:
                log.exception("Could not purge %s", parked)
        log.info("delete user=%s repo=%s path=%s version=%s", user.username, repo.name, path, version)
        return version

    def _check_transfer(self, src: Resource, dst: Resource) -> Tuple[str, str]:
        src_path = validate_path(src.path)
        dst_path = validate_path(dst.path)
        if src.repo.id != dst.repo.id:
            raise BadRequest("Source and destination must be in the same repository")
        if src_path == ROOT:
            raise BadRequest("Cannot move or copy the repository root")
        if dst_path == ROOT:
            raise Conflict("Destination already exists: /")
        if dst_path != src_path and is_within(dst_path, src_path):
            raise BadRequest("Destination lies inside the source")
        return src_path, dst_path

    async def _check_transfer_rows(
        self,
        session: AsyncSession,
        user: User,
        repo: Repository,
        src_path: str,
        dst_path: str,
        src_perm: Permission,
    ) -> Tuple[FileObject, FileObject]:
        await check_permission(session, user, repo, src_path, src_perm)
        await check_permission(session, user, repo, dst_path, Permission.WRITE)
        obj = await get_file(session, repo.id, src_path)
        if obj is None:
            raise NotFound(f"Not found: {src_path}")
        if await get_file(session, repo.id, dst_path) is not None:
            raise Conflict(f"Destination already exists: {dst_path}")
        parent = await self._parent_dir(session, repo, dst_path)
        return obj, parent

    async def move(self, user: User, src: Resource, dst: Resource) -> str:
        """Rename within a repository; descendants of a directory follow. Returns the version."""
        src_path, dst_path = self._check_transfer(src, dst)
        repo = src.repo
        try:
            async with self._locked(repo) as session:
                obj, parent = await self._check_transfer_rows(
                    session, user, repo, src_path, dst_path, Permission.DELETE
                )
                try:
                    await self.storage.rename(repo, src_path, dst_path)
                except StorageNotFound as e:
                    raise Internal(f"Content missing for {src_path}") from e
                try:
                    await move_subtree(session, obj, dst_path, parent)
                    version = await self._record(
                        session, user, repo, "move", dst_path, old_path=src_path
                    )
                    await session.commit()
                except BaseException:
                    await self._compensate(
                        f"move {src_path} -> {dst_path}",
                        self.storage.rename(repo, dst_path, src_path),
                    )
                    raise
        except IntegrityError as e:
            raise Conflict(f"Concurrent change at {dst_path}") from e
        log.info(
            "move user=%s repo=%s %s -> %s version=%s",
            user.username, repo.name, src_path, dst_path, version,
        )
        return version

    async def copy(self, user: User, src: Resource, dst: Resource) -> str:
        """Deep copy within a repository. Returns the version."""
        src_path, dst_path = self._check_transfer(src, dst)
        if src_path == dst_path:
            raise Conflict(f"Destination already exists: {dst_path}")
        repo = src.repo
        try:
            async with self._locked(repo) as session:
                obj, parent = await self._check_transfer_rows(
                    session, user, repo, src_path, dst_path, Permission.READ
                )
                size = await subtree_file_bytes(session, repo.id, src_path)
                await quota.quota_admit(session, repo.owner_id, size)
                try:
                    await self.storage.copy(repo, src_path, dst_path)
                except StorageNotFound as e:
                    raise Internal(f"Content missing for {src_path}") from e
                try:
                    await copy_subtree(session, obj, dst_path, parent, user.id)
                    await quota.charge(session, repo.owner_id, size)
                    version = await self._record(session, user, repo, "copy", dst_path)
                    await session.commit()
                except BaseException:
                    await self._compensate(
                        f"copy {src_path} -> {dst_path}",
                        self.storage.remove(repo, dst_path, recursive=True),
                    )
                    raise
        except IntegrityError as e:
            raise Conflict(f"Concurrent change at {dst_path}") from e
        log.info(
            "copy user=%s repo=%s %s -> %s version=%s",
            user.username, repo.name, src_path, dst_path, version,
        )
        return version
