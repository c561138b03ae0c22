"""
Chunked, resumable uploads.

A session is begun for (repo, path, user, total_size), receives fixed-size chunks in any order,
and is finalized into a single file write once every chunk is staged. Sessions that are neither
completed nor finalized within their TTL are reaped.
"""

import asyncio
import hashlib
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.db.session import Database, as_utc, utcnow
from filehub.errors import BadRequest, Conflict, Forbidden, NotFound
from filehub.files.models import FileObject
from filehub.files.paths import ROOT, validate_path
from filehub.files.service import FileService, PutResult, Resource
from filehub.repos.models import Repository
from filehub.sync.models import (
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    UploadChunk,
    UploadSession,
)
from filehub.sync.staging import ChunkStore
from filehub.users.models import User

log = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
MAX_SIMPLE_UPLOAD_SIZE = 10 * 1024 * 1024
SESSION_TTL = timedelta(hours=24)


@dataclass
class BeginResult:
    session: UploadSession
    uploaded_chunks: List[int]
    resumed: bool


def total_chunks_for(total_size: int) -> int:
    return math.ceil(total_size / CHUNK_SIZE)


def expected_chunk_size(session: UploadSession, chunk_index: int) -> int:
    """Size of chunk_index when the upload is complete; only the last one may be short."""
    if chunk_index < session.total_chunks - 1:
        return CHUNK_SIZE
    return session.total_size - CHUNK_SIZE * (session.total_chunks - 1)


async def _uploaded_indices(session: AsyncSession, upload_id: str) -> List[int]:
    result = await session.execute(
        select(UploadChunk.chunk_index)
        .where(UploadChunk.upload_id == upload_id)
        .order_by(UploadChunk.chunk_index)
    )
    return list(result.scalars().all())


async def _lock_upload_session(session: AsyncSession, upload_id: str) -> None:
    """Hold upload_id's row lock for the rest of the transaction. Must be its first statement."""
    await session.execute(
        update(UploadSession)
        .where(UploadSession.upload_id == upload_id)
        .values(chunks_uploaded=UploadSession.chunks_uploaded)
        .execution_options(synchronize_session=False)
    )


async def get_upload_session(session: AsyncSession, upload_id: str) -> Optional[UploadSession]:
    result = await session.execute(
        select(UploadSession).where(UploadSession.upload_id == upload_id)
    )
    return result.scalar_one_or_none()


class UploadEngine:
    def __init__(
        self,
        db: Database,
        files: FileService,
        chunks: ChunkStore,
        session_ttl: timedelta = SESSION_TTL,
    ) -> None:
        self.db = db
        self.files = files
        self.chunks = chunks
        self.session_ttl = session_ttl

    async def _owned_session(
        self, session: AsyncSession, upload_id: str, user: User
    ) -> UploadSession:
        if not upload_id:
            raise BadRequest("upload_id is required")
        us = await get_upload_session(session, upload_id)
        if us is None:
            raise NotFound("Upload session not found")
        if us.user_id != user.id:
            raise Forbidden("Upload session belongs to another user")
        return us

    def _require_active(self, us: UploadSession) -> None:
        if us.status == STATUS_COMPLETED:
            raise Conflict("Upload already finalized")
        if us.status != STATUS_ACTIVE:
            raise Conflict("Upload session is not active")
        if as_utc(us.expires_at) <= utcnow():
            raise Conflict("Upload session expired")

    async def begin(self, user: User, resource: Resource, total_size: int) -> BeginResult:
        """
        Start an upload, or resume the caller's unexpired active session for the same
        (repo, path, total_size) and report which chunks it already holds.
        """
        repo = resource.repo
        path = validate_path(resource.path)
        if path == ROOT:
            raise Conflict("Is a directory: /")
        if total_size is None or total_size < 0:
            raise BadRequest("total_size must be a non-negative integer")
        now = utcnow()
        async with self.db.session() as session:
            await self.files.check_put(session, user, repo, path, total_size)
            result = await session.execute(
                select(UploadSession)
                .where(
                    UploadSession.repo_id == repo.id,
                    UploadSession.path == path,
                    UploadSession.user_id == user.id,
                    UploadSession.total_size == total_size,
                    UploadSession.status == STATUS_ACTIVE,
                    UploadSession.expires_at > now,
                )
                .order_by(UploadSession.created_at.desc(), UploadSession.id.desc())
                .limit(1)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                indices = await _uploaded_indices(session, existing.upload_id)
                log.info(
                    "Resuming upload upload_id=%s repo=%s path=%s chunks=%d/%d",
                    existing.upload_id, repo.name, path, len(indices), existing.total_chunks,
                )
                return BeginResult(session=existing, uploaded_chunks=indices, resumed=True)
            us = UploadSession(
                upload_id=str(uuid.uuid4()),
                repo_id=repo.id,
                path=path,
                user_id=user.id,
                total_size=total_size,
                total_chunks=total_chunks_for(total_size),
                chunks_uploaded=0,
                created_at=now,
                expires_at=now + self.session_ttl,
                status=STATUS_ACTIVE,
            )
            session.add(us)
            await session.flush()
        log.info(
            "Began upload upload_id=%s user=%s repo=%s path=%s size=%d chunks=%d",
            us.upload_id, user.username, repo.name, path, total_size, us.total_chunks,
        )
        return BeginResult(session=us, uploaded_chunks=[], resumed=False)

    async def upload_chunk(
        self, user: User, upload_id: str, chunk_index: int, data: bytes
    ) -> UploadChunk:
        """
        Stage one chunk. Sending an index again replaces the earlier bytes. Writers of one
        session are serialized, so the staged bytes always match the chunk row.
        """
        if not upload_id:
            raise BadRequest("upload_id is required")
        checksum = hashlib.sha256(data).hexdigest()
        async with self.db.session() as session:
            await _lock_upload_session(session, upload_id)
            us = await self._owned_session(session, upload_id, user)
            self._require_active(us)
            if chunk_index is None or chunk_index < 0 or chunk_index >= us.total_chunks:
                raise BadRequest(
                    f"chunk_index out of range: {chunk_index} (total_chunks={us.total_chunks})"
                )
            expected = expected_chunk_size(us, chunk_index)
            last = chunk_index == us.total_chunks - 1
            if (not last and len(data) != expected) or (last and len(data) > expected):
                bound = "at most " if last else ""
                raise BadRequest(
                    f"Chunk {chunk_index} has {len(data)} bytes, expected {bound}{expected}"
                )
            result = await session.execute(
                select(UploadChunk).where(
                    UploadChunk.upload_id == upload_id,
                    UploadChunk.chunk_index == chunk_index,
                )
            )
            chunk = result.scalar_one_or_none()
            if chunk is None:
                chunk = UploadChunk(upload_id=upload_id, chunk_index=chunk_index)
                session.add(chunk)
            chunk.offset = chunk_index * CHUNK_SIZE
            chunk.size = len(data)
            chunk.checksum = checksum
            chunk.uploaded_at = utcnow()
            await session.flush()
            count = await session.execute(
                select(func.count(func.distinct(UploadChunk.chunk_index))).where(
                    UploadChunk.upload_id == upload_id
                )
            )
            us.chunks_uploaded = int(count.scalar_one())
            await self.chunks.write_chunk(upload_id, chunk_index, data)
        log.debug(
            "Chunk upload_id=%s index=%d size=%d uploaded=%d/%d",
            upload_id, chunk_index, len(data), us.chunks_uploaded, us.total_chunks,
        )
        return chunk

    async def _assemble(self, upload_id: str, total_chunks: int) -> AsyncIterator[bytes]:
        for index in range(total_chunks):
            async for block in self.chunks.read_chunk(upload_id, index):
                yield block

    async def finalize(self, user: User, upload_id: str) -> PutResult:
        """
        Write the staged chunks, in index order, to the session's path. The session is marked
        completed in the same transaction as the file metadata; a failure leaves it active.
        Chunk rows whose staged bytes are gone are dropped, so a resumed begin asks for them again.
        """
        async with self.db.session() as session:
            await _lock_upload_session(session, upload_id)
            us = await self._owned_session(session, upload_id, user)
            self._require_active(us)
            indices = set(await _uploaded_indices(session, upload_id))
            lost = [i for i in sorted(indices) if not await self.chunks.has_chunk(upload_id, i)]
            if lost:
                log.warning("Staged chunks missing upload_id=%s indices=%s", upload_id, lost)
                await session.execute(
                    delete(UploadChunk)
                    .where(UploadChunk.upload_id == upload_id, UploadChunk.chunk_index.in_(lost))
                    .execution_options(synchronize_session=False)
                )
                indices.difference_update(lost)
                us.chunks_uploaded = len(indices)
            missing = [i for i in range(us.total_chunks) if i not in indices]
            total_chunks = us.total_chunks
            if not missing:
                result = await session.execute(
                    select(func.coalesce(func.sum(UploadChunk.size), 0)).where(
                        UploadChunk.upload_id == upload_id
                    )
                )
                staged_bytes = int(result.scalar_one())
                repo = await session.get(Repository, us.repo_id)
                if repo is None:
                    raise NotFound("Repository not found")
                path = us.path
        # Raised after the block so dropped rows of lost chunks are committed
        if missing:
            raise BadRequest(
                f"Not all chunks uploaded: {total_chunks - len(missing)}/{total_chunks}"
            )

        async def mark_completed(tx: AsyncSession, obj: FileObject) -> None:
            marked = await tx.execute(
                update(UploadSession)
                .where(UploadSession.upload_id == upload_id, UploadSession.status == STATUS_ACTIVE)
                .values(status=STATUS_COMPLETED)
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount != 1:
                raise Conflict("Upload already finalized")

        put = await self.files.put(
            user,
            Resource(repo=repo, path=path),
            self._assemble(upload_id, total_chunks),
            size_hint=staged_bytes,
            on_commit=mark_completed,
        )
        await self.chunks.remove_session(upload_id)
        log.info(
            "Finalized upload upload_id=%s repo=%s path=%s size=%d version=%s",
            upload_id, repo.name, path, put.size, put.version,
        )
        return put

    async def cancel(self, user: User, upload_id: str) -> None:
        """Drop a session and its staged chunks. Unknown upload_ids are already cancelled."""
        async with self.db.session() as session:
            if not upload_id:
                raise BadRequest("upload_id is required")
            us = await get_upload_session(session, upload_id)
            if us is None:
                return
            if us.user_id != user.id:
                raise Forbidden("Upload session belongs to another user")
            if us.status == STATUS_COMPLETED:
                raise Conflict("Upload already finalized")
            await session.delete(us)
        await self.chunks.remove_session(upload_id)
        log.info("Cancelled upload upload_id=%s user=%s", upload_id, user.username)

    async def reap_expired(self, now: Optional[datetime] = None) -> int:
        """Delete non-completed sessions past expires_at with their chunks. Returns how many."""
        now = now or utcnow()
        async with self.db.session() as session:
            result = await session.execute(
                select(UploadSession.upload_id).where(
                    UploadSession.status != STATUS_COMPLETED, UploadSession.expires_at < now
                )
            )
            upload_ids = list(result.scalars().all())
            if upload_ids:
                await session.execute(
                    delete(UploadSession)
                    .where(
                        UploadSession.upload_id.in_(upload_ids),
                        UploadSession.status != STATUS_COMPLETED,
                        UploadSession.expires_at < now,
                    )
                    .execution_options(synchronize_session=False)
                )
        for upload_id in upload_ids:
            await self.chunks.remove_session(upload_id)
        if upload_ids:
            log.info("Reaped %d expired upload session(s)", len(upload_ids))
        return len(upload_ids)

    async def run_reaper(self, interval_seconds: float) -> None:
        """Sweep every interval_seconds until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.reap_expired()
            except Exception:
                log.exception("Upload reaper sweep failed")
