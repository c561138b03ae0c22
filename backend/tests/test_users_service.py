"""Tests for users, repositories and shares."""

import pytest
from sqlalchemy import select

from filehub.errors import BadRequest, Conflict, Forbidden, NotFound
from filehub.files.quota import get_quota
from filehub.files.service import Resource
from filehub.repos.models import Repository
from filehub.repos.permissions import Permission, check_repo_access, has_permission
from filehub.repos.service import (
    create_repository,
    create_share,
    delete_repository,
    delete_share,
    find_share,
    get_home_repository,
    list_repositories,
    list_shares_for_user,
    resolve_for_principal,
)
from filehub.sync.versions import ZERO_VERSION, get_current_version
from filehub.users.models import UserCreate
from filehub.users.service import (
    authenticate,
    create_user,
    ensure_admin_exists,
    get_user_by_email,
    get_user_by_username,
)


async def test_bootstrap_admin_created(hub):
    """Hub.init creates the configured admin with a home repository."""
    async with hub.db.session() as session:
        admin = await get_user_by_username(session, "alice")
        assert admin is not None
        assert admin.is_admin is True
        repo = await get_home_repository(session, admin)
        rv = await get_current_version(session, repo.id)
    assert rv.current_version == ZERO_VERSION
    assert hub.storage.resolve(repo, "/").is_dir()


async def test_ensure_admin_exists_is_idempotent(hub):
    async with hub.db.session() as session:
        await ensure_admin_exists(session, hub.storage, hub.settings)
    async with hub.db.session() as session:
        result = await session.execute(select(Repository).where(Repository.name == "alice"))
        assert len(result.scalars().all()) == 1


async def test_ensure_admin_exists_skips_when_not_configured(hub):
    hub.settings.admin_username = ""
    async with hub.db.session() as session:
        await ensure_admin_exists(session, hub.storage, hub.settings)
        assert await get_user_by_email(session, "alice@example.com") is not None


async def test_create_user_sets_up_quota_and_home(hub, make_user):
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        quota = await get_quota(session, bob.id)
        repo = await get_home_repository(session, bob)
    assert quota.total_bytes == hub.settings.quota.default_bytes
    assert quota.used_bytes == 0
    assert repo.root == str(hub.storage.root_dir / "bob")
    assert bob.ha1 and "testpass123" not in bob.ha1


async def test_create_user_duplicate_raises(hub, make_user):
    await make_user(hub, "bob")
    with pytest.raises(Conflict, match="already exists"):
        await make_user(hub, "bob")


@pytest.mark.parametrize("username", [".hidden", "a/b", ".."])
async def test_create_user_rejects_bad_username(hub, username):
    async with hub.db.session() as session:
        with pytest.raises(BadRequest):
            await create_user(
                session,
                hub.storage,
                hub.settings,
                UserCreate(username=username, email="x@example.com", password="pw"),
            )


async def test_authenticate(hub):
    realm = hub.settings.web.realm
    async with hub.db.session() as session:
        assert await authenticate(session, "alice", "testpass123", realm) is not None
        assert await authenticate(session, "alice", "wrong", realm) is None
        assert await authenticate(session, "nobody", "testpass123", realm) is None


async def test_inactive_user_is_invisible(hub, make_user):
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        row = await get_user_by_username(session, "bob")
        row.is_active = False
    async with hub.db.session() as session:
        assert await get_user_by_username(session, bob.username) is None


async def test_extra_repository_and_resolution(hub, get_user, make_user):
    alice = await get_user(hub, "alice")
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        photos = await create_repository(session, hub.storage, alice, "photos")
        with pytest.raises(Conflict):
            await create_repository(session, hub.storage, alice, "photos")
    assert photos.root == str(hub.storage.root_dir / ".repos" / "alice" / "photos")
    async with hub.db.session() as session:
        names = [r.name for r in await list_repositories(session, alice.id)]
        assert names == ["alice", "photos"]
        # bob has no share, but the name still resolves; permission checks decide access
        assert (await resolve_for_principal(session, "photos", bob)).id == photos.id
        with pytest.raises(NotFound):
            await resolve_for_principal(session, "missing", bob)


async def test_delete_repository_cascades(hub, get_user):
    alice = await get_user(hub, "alice")
    async with hub.db.session() as session:
        repo = await create_repository(session, hub.storage, alice, "scratch")
    await hub.files.put_bytes(alice, Resource(repo=repo, path="/a.txt"), b"a")
    begun = await hub.uploads.begin(alice, Resource(repo=repo, path="/b.bin"), 3)
    await hub.uploads.upload_chunk(alice, begun.session.upload_id, 0, b"abc")
    await delete_repository(hub.db, hub.storage, hub.chunks, repo.id)
    async with hub.db.session() as session:
        with pytest.raises(NotFound):
            await resolve_for_principal(session, "scratch", alice)
    assert not hub.chunks.session_dir(begun.session.upload_id).exists()
    assert not hub.storage.resolve(repo, "/").exists()


async def test_share_grants_subtree_only(hub, get_user, make_user):
    alice = await get_user(hub, "alice")
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        repo = await get_home_repository(session, alice)
        await create_share(session, repo, bob, "/team")
    async with hub.db.session() as session:
        assert await has_permission(session, bob, repo, "/team", Permission.READ)
        assert await has_permission(session, bob, repo, "/team/x.txt", Permission.WRITE)
        assert not await has_permission(session, bob, repo, "/team-old", Permission.READ)
        assert not await has_permission(session, bob, repo, "/", Permission.READ)
        await check_repo_access(session, bob, repo)
        shares = await list_shares_for_user(session, bob.id)
    assert [s.path for s in shares] == ["/team"]


async def test_longest_share_wins(hub, get_user, make_user):
    alice = await get_user(hub, "alice")
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        repo = await get_home_repository(session, alice)
        await create_share(session, repo, bob, "/team")
        inner = await create_share(session, repo, bob, "/team/inner")
    async with hub.db.session() as session:
        found = await find_share(session, repo.id, bob.id, "/team/inner/a.txt")
    assert found.id == inner.id


async def test_share_rules(hub, get_user, make_user):
    alice = await get_user(hub, "alice")
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        repo = await get_home_repository(session, alice)
        with pytest.raises(BadRequest):
            await create_share(session, repo, alice, "/")
        share = await create_share(session, repo, bob, "/")
        with pytest.raises(Conflict):
            await create_share(session, repo, bob, "/")
    async with hub.db.session() as session:
        await delete_share(session, share.id)
    async with hub.db.session() as session:
        with pytest.raises(Forbidden):
            await check_repo_access(session, bob, repo)
        with pytest.raises(NotFound):
            await delete_share(session, share.id)


async def test_shared_user_can_write_in_share(hub, get_user, make_user):
    alice = await get_user(hub, "alice")
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        repo = await get_home_repository(session, alice)
    await hub.files.create_dir(alice, Resource(repo=repo, path="/team"))
    async with hub.db.session() as session:
        await create_share(session, repo, bob, "/team")
    result = await hub.files.put_bytes(bob, Resource(repo=repo, path="/team/b.txt"), b"bob")
    assert result.file.owner_id == bob.id
    with pytest.raises(Forbidden):
        await hub.files.put_bytes(bob, Resource(repo=repo, path="/secret.txt"), b"x")
    with pytest.raises(Forbidden):
        await hub.files.get_info(bob, Resource(repo=repo, path="/"))
    async with hub.db.session() as session:
        # Quota is charged to the repository owner
        assert (await get_quota(session, alice.id)).used_bytes == 3
        assert (await get_quota(session, bob.id)).used_bytes == 0


async def test_admin_can_read_any_repository(hub, get_user, make_user):
    alice = await get_user(hub, "alice")
    bob = await make_user(hub, "bob")
    async with hub.db.session() as session:
        bob_home = await get_home_repository(session, bob)
        assert await has_permission(session, alice, bob_home, "/", Permission.DELETE)
        carol = await create_user(
            session,
            hub.storage,
            hub.settings,
            UserCreate(username="carol", email="carol@example.com", password="pw"),
        )
        assert not await has_permission(session, carol, bob_home, "/", Permission.READ)
