"""Tests for chunked uploads: begin/resume, chunk replace, finalize, cancel, reaper."""

import hashlib
from datetime import timedelta

import pytest
from sqlalchemy import select

from filehub.db.session import utcnow
from filehub.errors import BadRequest, Conflict, Forbidden, NotFound
from filehub.sync.models import STATUS_COMPLETED, UploadChunk
from filehub.sync.uploads import CHUNK_SIZE, get_upload_session, total_chunks_for

TOTAL = 2_500_000
CONTENT = bytes(i % 251 for i in range(TOTAL))


def _chunk(index: int) -> bytes:
    return CONTENT[index * CHUNK_SIZE:(index + 1) * CHUNK_SIZE]


@pytest.fixture
async def alice(hub, get_user):
    return await get_user(hub, "alice")


@pytest.fixture
async def target(hub, alice, home):
    return await home(hub, alice, "/big.bin")


async def _read(stream) -> bytes:
    return b"".join([block async for block in stream])


def test_total_chunks_for():
    assert total_chunks_for(0) == 0
    assert total_chunks_for(1) == 1
    assert total_chunks_for(CHUNK_SIZE) == 1
    assert total_chunks_for(TOTAL) == 3


async def test_chunked_upload_with_resume(hub, alice, target):
    begun = await hub.uploads.begin(alice, target, TOTAL)
    assert begun.session.total_chunks == 3
    assert begun.uploaded_chunks == []
    upload_id = begun.session.upload_id
    await hub.uploads.upload_chunk(alice, upload_id, 0, _chunk(0))
    await hub.uploads.upload_chunk(alice, upload_id, 2, _chunk(2))

    resumed = await hub.uploads.begin(alice, target, TOTAL)
    assert resumed.resumed is True
    assert resumed.session.upload_id == upload_id
    assert resumed.uploaded_chunks == [0, 2]

    await hub.uploads.upload_chunk(alice, upload_id, 1, _chunk(1))
    result = await hub.uploads.finalize(alice, upload_id)
    assert result.size == TOTAL
    assert result.checksum == hashlib.sha256(CONTENT).hexdigest()
    obj, stream = await hub.files.open(alice, target)
    assert await _read(stream) == CONTENT
    assert not hub.chunks.session_dir(upload_id).exists()
    async with hub.db.session() as session:
        us = await get_upload_session(session, upload_id)
    assert us.status == STATUS_COMPLETED

    with pytest.raises(Conflict):
        await hub.uploads.finalize(alice, upload_id)


async def test_different_size_starts_new_session(hub, alice, target):
    first = await hub.uploads.begin(alice, target, TOTAL)
    second = await hub.uploads.begin(alice, target, TOTAL + 1)
    assert first.session.upload_id != second.session.upload_id


async def test_resending_chunk_replaces_it(hub, alice, home):
    target = await home(hub, alice, "/small.bin")
    begun = await hub.uploads.begin(alice, target, 3)
    upload_id = begun.session.upload_id
    await hub.uploads.upload_chunk(alice, upload_id, 0, b"abc")
    await hub.uploads.upload_chunk(alice, upload_id, 0, b"xyz")
    async with hub.db.session() as session:
        rows = (
            await session.execute(select(UploadChunk).where(UploadChunk.upload_id == upload_id))
        ).scalars().all()
        us = await get_upload_session(session, upload_id)
    assert len(rows) == 1
    assert us.chunks_uploaded == 1
    await hub.uploads.finalize(alice, upload_id)
    obj, stream = await hub.files.open(alice, target)
    assert await _read(stream) == b"xyz"


async def test_chunk_size_rules(hub, alice, target):
    upload_id = (await hub.uploads.begin(alice, target, TOTAL)).session.upload_id
    with pytest.raises(BadRequest):
        await hub.uploads.upload_chunk(alice, upload_id, 0, b"short")
    with pytest.raises(BadRequest):
        await hub.uploads.upload_chunk(alice, upload_id, 3, b"x")
    with pytest.raises(BadRequest):
        await hub.uploads.upload_chunk(alice, upload_id, -1, b"x")
    with pytest.raises(BadRequest):
        await hub.uploads.upload_chunk(alice, upload_id, 2, b"x" * (TOTAL - 2 * CHUNK_SIZE + 1))


async def test_finalize_with_missing_chunks(hub, alice, target):
    upload_id = (await hub.uploads.begin(alice, target, TOTAL)).session.upload_id
    await hub.uploads.upload_chunk(alice, upload_id, 0, _chunk(0))
    with pytest.raises(BadRequest):
        await hub.uploads.finalize(alice, upload_id)
    with pytest.raises(NotFound):
        await hub.files.get_info(alice, target)


async def test_zero_byte_upload(hub, alice, home):
    target = await home(hub, alice, "/empty.bin")
    begun = await hub.uploads.begin(alice, target, 0)
    assert begun.session.total_chunks == 0
    result = await hub.uploads.finalize(alice, begun.session.upload_id)
    assert result.size == 0
    assert result.checksum == hashlib.sha256(b"").hexdigest()


async def test_begin_rejects_negative_size(hub, alice, target):
    with pytest.raises(BadRequest):
        await hub.uploads.begin(alice, target, -1)


async def test_session_belongs_to_its_user(hub, alice, target, make_user):
    bob = await make_user(hub, "bob")
    upload_id = (await hub.uploads.begin(alice, target, 3)).session.upload_id
    with pytest.raises(Forbidden):
        await hub.uploads.upload_chunk(bob, upload_id, 0, b"abc")
    with pytest.raises(Forbidden):
        await hub.uploads.cancel(bob, upload_id)


async def test_cancel_drops_session_and_chunks(hub, alice, target):
    upload_id = (await hub.uploads.begin(alice, target, 3)).session.upload_id
    await hub.uploads.upload_chunk(alice, upload_id, 0, b"abc")
    await hub.uploads.cancel(alice, upload_id)
    assert not hub.chunks.session_dir(upload_id).exists()
    async with hub.db.session() as session:
        assert await get_upload_session(session, upload_id) is None
    # Unknown sessions are already cancelled
    await hub.uploads.cancel(alice, upload_id)
    with pytest.raises(NotFound):
        await hub.uploads.upload_chunk(alice, upload_id, 0, b"abc")


async def test_cancel_after_finalize_conflicts(hub, alice, target):
    upload_id = (await hub.uploads.begin(alice, target, 3)).session.upload_id
    await hub.uploads.upload_chunk(alice, upload_id, 0, b"abc")
    await hub.uploads.finalize(alice, upload_id)
    with pytest.raises(Conflict):
        await hub.uploads.cancel(alice, upload_id)


async def test_expired_session_rejects_chunks(hub, alice, target):
    upload_id = (await hub.uploads.begin(alice, target, 3)).session.upload_id
    async with hub.db.session() as session:
        us = await get_upload_session(session, upload_id)
        us.expires_at = utcnow() - timedelta(minutes=1)
    with pytest.raises(Conflict):
        await hub.uploads.upload_chunk(alice, upload_id, 0, b"abc")
    # An expired session is not resumed
    again = await hub.uploads.begin(alice, target, 3)
    assert again.session.upload_id != upload_id


async def test_reaper_removes_expired_sessions(hub, alice, target, home):
    stale = (await hub.uploads.begin(alice, target, 3)).session.upload_id
    await hub.uploads.upload_chunk(alice, stale, 0, b"abc")
    done_target = await home(hub, alice, "/done.bin")
    done = (await hub.uploads.begin(alice, done_target, 3)).session.upload_id
    await hub.uploads.upload_chunk(alice, done, 0, b"abc")
    await hub.uploads.finalize(alice, done)

    assert await hub.uploads.reap_expired() == 0
    reaped = await hub.uploads.reap_expired(now=utcnow() + timedelta(days=2))
    assert reaped == 1
    assert not hub.chunks.session_dir(stale).exists()
    async with hub.db.session() as session:
        assert await get_upload_session(session, stale) is None
        assert (await get_upload_session(session, done)).status == STATUS_COMPLETED
        chunks = (
            await session.execute(select(UploadChunk).where(UploadChunk.upload_id == stale))
        ).scalars().all()
    assert chunks == []


async def test_begin_on_directory_conflicts(hub, alice, home):
    await hub.files.create_dir(alice, await home(hub, alice, "/docs"))
    with pytest.raises(Conflict):
        await hub.uploads.begin(alice, await home(hub, alice, "/docs"), 3)


async def test_upload_into_missing_directory(hub, alice, home):
    with pytest.raises(NotFound):
        await hub.uploads.begin(alice, await home(hub, alice, "/nope/a.bin"), 3)


async def test_finalize_unknown_session(hub, alice):
    with pytest.raises(NotFound):
        await hub.uploads.finalize(alice, "7b0d5f1e-0000-4000-8000-000000000000")


async def test_finalize_drops_chunks_lost_from_staging(hub, alice, target):
    begun = await hub.uploads.begin(alice, target, TOTAL)
    upload_id = begun.session.upload_id
    for index in range(3):
        await hub.uploads.upload_chunk(alice, upload_id, index, _chunk(index))
    hub.chunks.chunk_path(upload_id, 1).unlink()

    with pytest.raises(BadRequest):
        await hub.uploads.finalize(alice, upload_id)
    resumed = await hub.uploads.begin(alice, target, TOTAL)
    assert resumed.session.upload_id == upload_id
    assert resumed.uploaded_chunks == [0, 2]

    await hub.uploads.upload_chunk(alice, upload_id, 1, _chunk(1))
    result = await hub.uploads.finalize(alice, upload_id)
    assert result.checksum == hashlib.sha256(CONTENT).hexdigest()
