"""Pytest configuration: point settings at a temp dir before any filehub imports, and build Hubs per test."""

import os
import tempfile

import pytest

# Set before filehub.config is used so nothing reads a config.yaml or writes outside the temp dir
_tmp = tempfile.mkdtemp(prefix="filehub_test_")
os.environ.setdefault("FILEHUB_CONFIG_PATH", _tmp)
os.environ.setdefault("FILEHUB_STORAGE__ROOT_DIR", os.path.join(_tmp, "root"))
os.environ.setdefault("FILEHUB_DATABASE__URI", f"sqlite+aiosqlite:///{os.path.join(_tmp, 'test.db')}")
os.environ.setdefault("FILEHUB_AUTH__JWT_SECRET", "test-jwt-secret-at-least-32-characters-long")

TEST_PASSWORD = "testpass123"


@pytest.fixture
def settings(tmp_path):
    """Settings for one test: storage and database under tmp_path, bootstrap admin alice."""
    from filehub.config import AuthSettings, DatabaseSettings, Settings, StorageSettings

    return Settings(
        storage=StorageSettings(root_dir=tmp_path / "root"),
        database=DatabaseSettings(uri=f"sqlite+aiosqlite:///{tmp_path / 'hub.db'}"),
        auth=AuthSettings(jwt_secret="test-jwt-secret-at-least-32-characters-long"),
        admin_username="alice",
        admin_email="alice@example.com",
        admin_initial_password=TEST_PASSWORD,
    )


@pytest.fixture
async def hub(settings):
    """An initialized Hub (tables created, admin alice bootstrapped)."""
    from filehub.hub import Hub

    hub = Hub(settings)
    await hub.init()
    yield hub
    await hub.close()


@pytest.fixture
def make_user():
    """Return an async helper that creates a user (with home repository) in a hub."""
    from filehub.users.models import UserCreate
    from filehub.users.service import create_user

    async def _make_user(hub, username, password=TEST_PASSWORD, is_admin=False):
        async with hub.db.session() as session:
            return await create_user(
                session,
                hub.storage,
                hub.settings,
                UserCreate(username=username, email=f"{username}@example.com", password=password),
                is_admin=is_admin,
            )

    return _make_user


@pytest.fixture
def get_user():
    """Return an async helper that loads a user by username."""
    from filehub.users.service import get_user_by_username

    async def _get_user(hub, username):
        async with hub.db.session() as session:
            return await get_user_by_username(session, username)

    return _get_user


@pytest.fixture
def home():
    """Return an async helper resolving Resource(home repository of user, path)."""
    from filehub.files.service import Resource
    from filehub.repos.service import get_home_repository

    async def _home(hub, user, path="/"):
        async with hub.db.session() as session:
            repo = await get_home_repository(session, user)
        return Resource(repo=repo, path=path)

    return _home
