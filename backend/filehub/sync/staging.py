"""On-disk staging of upload chunks: <staging_dir>/<upload_id>/<chunk_index>."""

import asyncio
import hashlib
import logging
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os

from filehub.errors import BadRequest
from filehub.files.storage import READ_CHUNK_SIZE

log = logging.getLogger(__name__)


def _session_dir_name(upload_id: str) -> str:
    """upload_id must be a UUID; its canonical form names the session directory."""
    try:
        return str(uuid.UUID(upload_id))
    except (ValueError, TypeError, AttributeError) as e:
        raise BadRequest(f"Invalid upload_id: {upload_id!r}") from e


class ChunkStore:
    """Staged chunk bytes. Survives restarts; removed on finalize, cancel or expiry."""

    def __init__(self, staging_dir: Path) -> None:
        self.staging_dir = Path(staging_dir).absolute()

    async def init(self) -> None:
        await aiofiles.os.makedirs(self.staging_dir, exist_ok=True)

    def session_dir(self, upload_id: str) -> Path:
        return self.staging_dir / _session_dir_name(upload_id)

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.session_dir(upload_id) / str(int(chunk_index))

    async def write_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> str:
        """Stage data for (upload_id, chunk_index), replacing any earlier bytes. Returns SHA-256 hex."""
        target = self.chunk_path(upload_id, chunk_index)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        tmp = target.parent / f".{target.name}.{uuid.uuid4().hex}.tmp"
        try:
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp, target)
        except BaseException:
            try:
                await aiofiles.os.remove(tmp)
            except FileNotFoundError:
                pass
            raise
        return hashlib.sha256(data).hexdigest()

    async def has_chunk(self, upload_id: str, chunk_index: int) -> bool:
        return await aiofiles.os.path.isfile(self.chunk_path(upload_id, chunk_index))

    async def read_chunk(self, upload_id: str, chunk_index: int) -> AsyncIterator[bytes]:
        """Yield the staged bytes of one chunk. Raises FileNotFoundError if it is missing."""
        async with aiofiles.open(self.chunk_path(upload_id, chunk_index), "rb") as f:
            while True:
                block = await f.read(READ_CHUNK_SIZE)
                if not block:
                    break
                yield block

    async def remove_session(self, upload_id: str) -> None:
        """Drop all staged chunks of upload_id. Missing directories are fine."""
        directory = self.session_dir(upload_id)
        await asyncio.to_thread(shutil.rmtree, directory, True)
        log.debug("Removed staged chunks upload_id=%s", upload_id)
