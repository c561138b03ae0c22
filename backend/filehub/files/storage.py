"""
Storage backend: byte-level file and directory operations under a repository's root.

Every call takes a repository and a validated repository path ("/docs/a.txt"); joining
onto the repository root happens here and nowhere else. Writes go to a temp file under the
storage root and are renamed into place, so a crashed write never leaves a partial file at
the target path and never touches the repository tree before commit.
"""

import asyncio
import hashlib
import logging
import mimetypes
import shutil
import stat
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import aiofiles.os

from filehub.files.paths import split_path, validate_segment
from filehub.repos.models import Repository

log = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
TRASH_DIR_NAME = ".trash"
TMP_DIR_NAME = ".tmp"
GENERIC_CONTENT_TYPES = ("", "application/octet-stream", "application/x-www-form-urlencoded")


def guess_mime_type(name: str, content_type: Optional[str] = None) -> Optional[str]:
    """content_type unless it is missing or generic; then a guess from the file name."""
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared not in GENERIC_CONTENT_TYPES:
        return declared
    guessed, _ = mimetypes.guess_type(name)
    return guessed


class StorageNotFound(FileNotFoundError):
    """Raised when the addressed file or directory does not exist in the backing store."""


@dataclass
class StatResult:
    size: int
    mod_time: datetime
    is_dir: bool


class WriteSink:
    """
    Streaming writer for one target file. Bytes go to a temp file in tmp_dir (same filesystem
    as the target) and are hashed in flight; commit() swaps the temp file into place. A
    replaced file is kept as a backup until the sink is closed so rollback() can restore it.

    The target's directory is never created: commit() raises StorageNotFound when it is gone.

    Use as an async context manager: leaving with an exception discards the temp file, or
    undoes a commit; leaving cleanly drops the backup.
    """

    def __init__(self, target: Path, tmp_dir: Path) -> None:
        self.target = target
        self.size = 0
        self._hash = hashlib.sha256()
        self._tmp = tmp_dir / f"{uuid.uuid4().hex}.tmp"
        self._backup: Optional[Path] = None
        self._handle = None
        self._committed = False

    @property
    def checksum(self) -> str:
        """SHA-256 hex digest of everything written so far."""
        return self._hash.hexdigest()

    async def open(self) -> "WriteSink":
        await aiofiles.os.makedirs(self._tmp.parent, exist_ok=True)
        self._handle = await aiofiles.open(self._tmp, "wb")
        return self

    async def write(self, data: bytes) -> None:
        if self._committed:
            raise RuntimeError("write after commit")
        await self._handle.write(data)
        self._hash.update(data)
        self.size += len(data)

    async def commit(self) -> None:
        """Atomically replace the target with the written bytes."""
        await self._close_handle()
        if not await aiofiles.os.path.isdir(self.target.parent):
            raise StorageNotFound(str(self.target.parent))
        if await aiofiles.os.path.isdir(self.target):
            raise IsADirectoryError(str(self.target))
        if await aiofiles.os.path.exists(self.target):
            self._backup = self._tmp.with_suffix(".bak")
            try:
                await aiofiles.os.link(self.target, self._backup)
            except OSError:
                await asyncio.to_thread(shutil.copy2, self.target, self._backup)
        try:
            await aiofiles.os.replace(self._tmp, self.target)
        except FileNotFoundError as e:
            raise StorageNotFound(str(self.target.parent)) from e
        self._committed = True

    async def rollback(self) -> None:
        """Undo a commit: restore the replaced file, or remove the new one."""
        if not self._committed:
            await self._discard_tmp()
            return
        try:
            if self._backup is not None:
                await aiofiles.os.replace(self._backup, self.target)
                self._backup = None
            else:
                await aiofiles.os.remove(self.target)
        except OSError:
            log.exception("Could not roll back write of %s", self.target)
            raise
        finally:
            self._committed = False

    async def _close_handle(self) -> None:
        if self._handle is not None:
            await self._handle.close()
            self._handle = None

    async def _discard_tmp(self) -> None:
        await self._close_handle()
        for leftover in (self._tmp, self._backup):
            if leftover is None:
                continue
            try:
                await aiofiles.os.remove(leftover)
            except FileNotFoundError:
                pass
        self._backup = None

    async def __aenter__(self) -> "WriteSink":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            await self.rollback()
            return
        if not self._committed:
            await self._discard_tmp()
        elif self._backup is not None:
            try:
                await aiofiles.os.remove(self._backup)
            except FileNotFoundError:
                pass
            self._backup = None


async def _iter_file(handle, chunk_size: int) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await handle.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        await handle.close()


class FilesystemStorage:
    """Local-filesystem backend. root_dir holds repository roots plus the temp and trash areas."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir).absolute()
        self.trash_dir = self.root_dir / TRASH_DIR_NAME
        self.tmp_dir = self.root_dir / TMP_DIR_NAME

    def repo_root_for(self, name: str) -> Path:
        """Default backing directory for a new repository."""
        return self.root_dir / validate_segment(name)

    def resolve(self, repo: Repository, path: str) -> Path:
        """Filesystem path of a repository path. Segments are validated again here."""
        resolved = Path(repo.root)
        for segment in split_path(path):
            resolved = resolved / validate_segment(segment)
        return resolved

    async def init(self) -> None:
        await aiofiles.os.makedirs(self.root_dir, exist_ok=True)
        await aiofiles.os.makedirs(self.trash_dir, exist_ok=True)
        await aiofiles.os.makedirs(self.tmp_dir, exist_ok=True)

    async def init_repo(self, repo: Repository) -> None:
        await aiofiles.os.makedirs(repo.root, exist_ok=True)

    async def remove_repo(self, repo: Repository) -> None:
        await asyncio.to_thread(shutil.rmtree, repo.root, True)

    def create_file(self, repo: Repository, path: str) -> WriteSink:
        """Return a sink that writes path atomically on commit()."""
        return WriteSink(self.resolve(repo, path), self.tmp_dir)

    async def open_file(
        self, repo: Repository, path: str, chunk_size: int = READ_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Open path for reading; the returned iterator yields its bytes and closes the file."""
        target = self.resolve(repo, path)
        try:
            handle = await aiofiles.open(target, "rb")
        except FileNotFoundError as e:
            raise StorageNotFound(path) from e
        return _iter_file(handle, chunk_size)

    async def stat(self, repo: Repository, path: str) -> StatResult:
        try:
            st = await aiofiles.os.stat(self.resolve(repo, path))
        except FileNotFoundError as e:
            raise StorageNotFound(path) from e
        is_dir = stat.S_ISDIR(st.st_mode)
        return StatResult(
            size=0 if is_dir else st.st_size,
            mod_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            is_dir=is_dir,
        )

    async def exists(self, repo: Repository, path: str) -> bool:
        return await aiofiles.os.path.exists(self.resolve(repo, path))

    async def mkdir_all(self, repo: Repository, path: str) -> None:
        await aiofiles.os.makedirs(self.resolve(repo, path), exist_ok=True)

    async def remove(self, repo: Repository, path: str, recursive: bool = False) -> None:
        target = self.resolve(repo, path)
        if not await aiofiles.os.path.exists(target):
            raise StorageNotFound(path)
        if await aiofiles.os.path.isdir(target):
            if recursive:
                await asyncio.to_thread(shutil.rmtree, target)
            else:
                await aiofiles.os.rmdir(target)
        else:
            await aiofiles.os.remove(target)

    async def rename(self, repo: Repository, src: str, dst: str) -> None:
        source = self.resolve(repo, src)
        if not await aiofiles.os.path.exists(source):
            raise StorageNotFound(src)
        target = self.resolve(repo, dst)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        await aiofiles.os.rename(source, target)

    async def copy(self, repo: Repository, src: str, dst: str) -> None:
        """Copy a file, or a directory recursively. The destination must not exist."""
        source = self.resolve(repo, src)
        target = self.resolve(repo, dst)
        if not await aiofiles.os.path.exists(source):
            raise StorageNotFound(src)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        if await aiofiles.os.path.isdir(source):
            await asyncio.to_thread(shutil.copytree, source, target)
            return
        tmp = target.parent / f".{target.name}.{uuid.uuid4().hex}.tmp"
        try:
            await asyncio.to_thread(shutil.copy2, source, tmp)
            await aiofiles.os.replace(tmp, target)
        except BaseException:
            try:
                await aiofiles.os.remove(tmp)
            except FileNotFoundError:
                pass
            raise

    async def detach(self, repo: Repository, path: str) -> Path:
        """Move path into the trash area and return where it went (see reattach/purge)."""
        source = self.resolve(repo, path)
        if not await aiofiles.os.path.exists(source):
            raise StorageNotFound(path)
        await aiofiles.os.makedirs(self.trash_dir, exist_ok=True)
        parked = self.trash_dir / uuid.uuid4().hex
        await asyncio.to_thread(shutil.move, str(source), str(parked))
        return parked

    async def reattach(self, repo: Repository, path: str, parked: Path) -> None:
        """Put a detached entry back where it was."""
        target = self.resolve(repo, path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        await asyncio.to_thread(shutil.move, str(parked), str(target))

    async def purge(self, parked: Path) -> None:
        """Permanently remove a detached entry."""
        if await aiofiles.os.path.isdir(parked):
            await asyncio.to_thread(shutil.rmtree, parked, True)
        else:
            try:
                await aiofiles.os.remove(parked)
            except FileNotFoundError:
                pass
