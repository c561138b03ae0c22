"""Tests for the file object layer: put/open, list, mkdir, delete, move, copy, quota."""

import hashlib

import pytest
from sqlalchemy import select

from filehub.errors import BadRequest, Conflict, Internal, NotFound, NotModified, QuotaExceeded
from filehub.files.models import FileObject
from filehub.files.quota import get_quota, recalculate_used_bytes
from filehub.files.service import Resource
from filehub.sync.models import ChangeLog


async def _read(stream) -> bytes:
    return b"".join([block async for block in stream])


async def _changes(hub, repo_id):
    async with hub.db.session() as session:
        result = await session.execute(
            select(ChangeLog).where(ChangeLog.repo_id == repo_id).order_by(ChangeLog.id)
        )
        return list(result.scalars().all())


async def _paths(hub, repo_id):
    async with hub.db.session() as session:
        result = await session.execute(
            select(FileObject.path).where(FileObject.repo_id == repo_id).order_by(FileObject.path)
        )
        return list(result.scalars().all())


@pytest.fixture
async def alice(hub, get_user):
    return await get_user(hub, "alice")


@pytest.fixture
async def root(hub, alice, home):
    return await home(hub, alice)


def at(root: Resource, path: str) -> Resource:
    return Resource(repo=root.repo, path=path)


async def test_put_then_open(hub, alice, root):
    result = await hub.files.put_bytes(alice, at(root, "/notes.txt"), b"hello")
    assert result.created is True
    assert result.size == 5
    assert result.checksum == hashlib.sha256(b"hello").hexdigest()
    assert result.version.startswith("v")
    obj, stream = await hub.files.open(alice, at(root, "/notes.txt"))
    assert obj.mime_type == "text/plain"
    assert await _read(stream) == b"hello"
    disk = hub.storage.resolve(root.repo, "/notes.txt")
    assert disk.read_bytes() == b"hello"


async def test_put_replace_logs_modify_and_keeps_one_row(hub, alice, root):
    await hub.files.put_bytes(alice, at(root, "/a.txt"), b"one")
    second = await hub.files.put_bytes(alice, at(root, "/a.txt"), b"second")
    assert second.created is False
    info = await hub.files.get_info(alice, at(root, "/a.txt"))
    assert info.size == 6
    assert [c.operation for c in await _changes(hub, root.repo.id)] == ["create", "modify"]
    assert (await _paths(hub, root.repo.id)).count("/a.txt") == 1


async def test_put_requires_parent_directory(hub, alice, root):
    with pytest.raises(NotFound):
        await hub.files.put_bytes(alice, at(root, "/missing/a.txt"), b"x")
    await hub.files.put_bytes(alice, at(root, "/file"), b"x")
    with pytest.raises(Conflict):
        await hub.files.put_bytes(alice, at(root, "/file/a.txt"), b"x")


async def test_put_onto_directory_conflicts(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    with pytest.raises(Conflict):
        await hub.files.put_bytes(alice, at(root, "/docs"), b"x")


async def test_put_rejects_bad_path(hub, alice, root):
    with pytest.raises(BadRequest):
        await hub.files.put_bytes(alice, at(root, "/../escape"), b"x")


async def test_open_not_modified(hub, alice, root):
    result = await hub.files.put_bytes(alice, at(root, "/a.txt"), b"abc")
    with pytest.raises(NotModified):
        await hub.files.open(alice, at(root, "/a.txt"), if_none_match=result.checksum)
    obj, stream = await hub.files.open(alice, at(root, "/a.txt"), if_none_match="other")
    assert await _read(stream) == b"abc"


async def test_open_directory_is_bad_request(hub, alice, root):
    with pytest.raises(BadRequest):
        await hub.files.open(alice, root)


async def test_get_info_missing(hub, alice, root):
    with pytest.raises(NotFound):
        await hub.files.get_info(alice, at(root, "/nope"))


async def test_list_children_paged_by_name(hub, alice, root):
    for name in ("c.txt", "a.txt", "b.txt"):
        await hub.files.put_bytes(alice, at(root, f"/{name}"), b"x")
    page = await hub.files.list(alice, root, offset=0, limit=2)
    assert [o.name for o in page.items] == ["a.txt", "b.txt"]
    assert page.total == 3
    assert page.has_more is True
    rest = await hub.files.list(alice, root, offset=2, limit=2)
    assert [o.name for o in rest.items] == ["c.txt"]
    assert rest.has_more is False


async def test_list_limit_clamping(hub, alice, root):
    assert (await hub.files.list(alice, root, limit=0)).limit == 100
    assert (await hub.files.list(alice, root, limit=5000)).limit == 1000
    assert (await hub.files.list(alice, root, offset=-3)).offset == 0


async def test_list_on_file_is_bad_request(hub, alice, root):
    await hub.files.put_bytes(alice, at(root, "/a.txt"), b"x")
    with pytest.raises(BadRequest):
        await hub.files.list(alice, at(root, "/a.txt"))


async def test_create_dir(hub, alice, root):
    obj, version = await hub.files.create_dir(alice, at(root, "/docs"))
    assert obj.is_dir and obj.size == 0
    assert version.startswith("v")
    assert hub.storage.resolve(root.repo, "/docs").is_dir()
    with pytest.raises(Conflict):
        await hub.files.create_dir(alice, at(root, "/docs"))
    with pytest.raises(NotFound):
        await hub.files.create_dir(alice, at(root, "/x/y"))


async def test_delete_subtree_records_one_change(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.create_dir(alice, at(root, "/docs/sub"))
    await hub.files.put_bytes(alice, at(root, "/docs/sub/b.txt"), b"b")
    await hub.files.delete(alice, at(root, "/docs"))
    assert await _paths(hub, root.repo.id) == ["/"]
    assert not hub.storage.resolve(root.repo, "/docs").exists()
    last = (await _changes(hub, root.repo.id))[-1]
    assert (last.operation, last.path) == ("delete", "/docs")


async def test_delete_non_recursive_needs_empty_dir(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.put_bytes(alice, at(root, "/docs/a.txt"), b"a")
    with pytest.raises(Conflict):
        await hub.files.delete(alice, at(root, "/docs"), recursive=False)
    await hub.files.delete(alice, at(root, "/docs/a.txt"), recursive=False)
    await hub.files.delete(alice, at(root, "/docs"), recursive=False)


async def test_delete_root_and_missing(hub, alice, root):
    with pytest.raises(BadRequest):
        await hub.files.delete(alice, root)
    with pytest.raises(NotFound):
        await hub.files.delete(alice, at(root, "/nope"))


async def test_move_rewrites_subtree(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.put_bytes(alice, at(root, "/docs/a.txt"), b"a")
    await hub.files.create_dir(alice, at(root, "/docs/sub"))
    await hub.files.put_bytes(alice, at(root, "/docs/sub/b.txt"), b"b")
    await hub.files.move(alice, at(root, "/docs"), at(root, "/archive"))
    assert await _paths(hub, root.repo.id) == [
        "/", "/archive", "/archive/a.txt", "/archive/sub", "/archive/sub/b.txt",
    ]
    last = (await _changes(hub, root.repo.id))[-1]
    assert (last.operation, last.path, last.old_path) == ("move", "/archive", "/docs")
    obj, stream = await hub.files.open(alice, at(root, "/archive/sub/b.txt"))
    assert await _read(stream) == b"b"
    sub = await hub.files.get_info(alice, at(root, "/archive/sub"))
    child = await hub.files.get_info(alice, at(root, "/archive/sub/b.txt"))
    assert child.parent_id == sub.id


async def test_move_does_not_touch_sibling_prefix(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.create_dir(alice, at(root, "/docs-old"))
    await hub.files.move(alice, at(root, "/docs"), at(root, "/archive"))
    assert await _paths(hub, root.repo.id) == ["/", "/archive", "/docs-old"]


async def test_move_guards(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.create_dir(alice, at(root, "/other"))
    with pytest.raises(BadRequest):
        await hub.files.move(alice, at(root, "/docs"), at(root, "/docs/inner"))
    with pytest.raises(Conflict):
        await hub.files.move(alice, at(root, "/docs"), at(root, "/other"))
    with pytest.raises(NotFound):
        await hub.files.move(alice, at(root, "/nope"), at(root, "/x"))
    with pytest.raises(BadRequest):
        await hub.files.move(alice, root, at(root, "/x"))


async def test_copy_duplicates_subtree_and_charges_quota(hub, alice, root):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.put_bytes(alice, at(root, "/docs/a.txt"), b"abcd")
    await hub.files.copy(alice, at(root, "/docs"), at(root, "/copy"))
    assert await _paths(hub, root.repo.id) == ["/", "/copy", "/copy/a.txt", "/docs", "/docs/a.txt"]
    last = (await _changes(hub, root.repo.id))[-1]
    assert (last.operation, last.path, last.old_path) == ("copy", "/copy", None)
    async with hub.db.session() as session:
        quota = await get_quota(session, alice.id)
    assert quota.used_bytes == 8


async def test_quota_exceeded_leaves_nothing(hub, alice, root):
    async with hub.db.session() as session:
        quota = await get_quota(session, alice.id)
        quota.total_bytes = 4
    with pytest.raises(QuotaExceeded):
        await hub.files.put_bytes(alice, at(root, "/big.bin"), b"12345")
    assert await _paths(hub, root.repo.id) == ["/"]
    assert await _changes(hub, root.repo.id) == []


async def test_quota_follows_put_and_delete(hub, alice, root):
    await hub.files.put_bytes(alice, at(root, "/a.bin"), b"x" * 10)
    await hub.files.put_bytes(alice, at(root, "/a.bin"), b"x" * 4)
    async with hub.db.session() as session:
        assert (await get_quota(session, alice.id)).used_bytes == 4
    await hub.files.delete(alice, at(root, "/a.bin"))
    async with hub.db.session() as session:
        assert (await get_quota(session, alice.id)).used_bytes == 0
        assert await recalculate_used_bytes(session, alice.id) == 0


async def test_versions_strictly_increase(hub, alice, root):
    versions = []
    for i in range(5):
        versions.append((await hub.files.put_bytes(alice, at(root, f"/{i}.txt"), b"x")).version)
    assert versions == sorted(versions)
    assert len(set(versions)) == 5


def _break_change_log(monkeypatch):
    """Fail the change-log write, which runs after storage was touched."""

    async def _fail(*args, **kwargs):
        raise RuntimeError("change log unavailable")

    monkeypatch.setattr("filehub.files.service.record_change_and_bump_version", _fail)


async def test_failed_put_restores_previous_bytes(hub, alice, root, monkeypatch):
    first = await hub.files.put_bytes(alice, at(root, "/a.txt"), b"old")
    _break_change_log(monkeypatch)
    with pytest.raises(RuntimeError):
        await hub.files.put_bytes(alice, at(root, "/a.txt"), b"newer")
    obj, stream = await hub.files.open(alice, at(root, "/a.txt"))
    assert await _read(stream) == b"old"
    assert obj.checksum == first.checksum
    assert list(hub.storage.tmp_dir.iterdir()) == []
    async with hub.db.session() as session:
        assert (await get_quota(session, alice.id)).used_bytes == 3


async def test_failed_put_of_new_file_leaves_nothing(hub, alice, root, monkeypatch):
    _break_change_log(monkeypatch)
    with pytest.raises(RuntimeError):
        await hub.files.put_bytes(alice, at(root, "/a.txt"), b"new")
    assert not hub.storage.resolve(root.repo, "/a.txt").exists()
    assert await _paths(hub, root.repo.id) == ["/"]


async def test_failed_mkdir_removes_directory(hub, alice, root, monkeypatch):
    _break_change_log(monkeypatch)
    with pytest.raises(RuntimeError):
        await hub.files.create_dir(alice, at(root, "/docs"))
    assert not hub.storage.resolve(root.repo, "/docs").exists()
    assert await _paths(hub, root.repo.id) == ["/"]


async def test_failed_delete_puts_bytes_back(hub, alice, root, monkeypatch):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.put_bytes(alice, at(root, "/docs/a.txt"), b"a")
    _break_change_log(monkeypatch)
    with pytest.raises(RuntimeError):
        await hub.files.delete(alice, at(root, "/docs"))
    assert await _paths(hub, root.repo.id) == ["/", "/docs", "/docs/a.txt"]
    assert hub.storage.resolve(root.repo, "/docs/a.txt").read_bytes() == b"a"
    assert list(hub.storage.trash_dir.iterdir()) == []


async def test_failed_move_renames_back(hub, alice, root, monkeypatch):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.put_bytes(alice, at(root, "/docs/a.txt"), b"a")
    _break_change_log(monkeypatch)
    with pytest.raises(RuntimeError):
        await hub.files.move(alice, at(root, "/docs"), at(root, "/archive"))
    assert await _paths(hub, root.repo.id) == ["/", "/docs", "/docs/a.txt"]
    assert hub.storage.resolve(root.repo, "/docs/a.txt").read_bytes() == b"a"
    assert not hub.storage.resolve(root.repo, "/archive").exists()


async def test_failed_copy_removes_destination(hub, alice, root, monkeypatch):
    await hub.files.create_dir(alice, at(root, "/docs"))
    await hub.files.put_bytes(alice, at(root, "/docs/a.txt"), b"abcd")
    _break_change_log(monkeypatch)
    with pytest.raises(RuntimeError):
        await hub.files.copy(alice, at(root, "/docs"), at(root, "/copy"))
    assert not hub.storage.resolve(root.repo, "/copy").exists()
    assert await _paths(hub, root.repo.id) == ["/", "/docs", "/docs/a.txt"]
    async with hub.db.session() as session:
        assert (await get_quota(session, alice.id)).used_bytes == 4


async def test_failed_undo_is_internal(hub, alice, root, monkeypatch):
    await hub.files.put_bytes(alice, at(root, "/a.txt"), b"a")
    _break_change_log(monkeypatch)

    async def _reattach_fails(*args, **kwargs):
        raise OSError("disk gone")

    monkeypatch.setattr(hub.storage, "reattach", _reattach_fails)
    with pytest.raises(Internal):
        await hub.files.delete(alice, at(root, "/a.txt"))
    # Metadata was rolled back even though the bytes could not be restored
    assert await _paths(hub, root.repo.id) == ["/", "/a.txt"]
