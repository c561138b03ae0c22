"""The service container: one per application, built from Settings and passed to everything that needs it."""

import logging
import secrets
from datetime import timedelta

from filehub.config import Settings
from filehub.db.session import Database
from filehub.files.service import FileService
from filehub.files.storage import FilesystemStorage
from filehub.sync.staging import ChunkStore
from filehub.sync.uploads import UploadEngine
from filehub.sync.versions import VersionClock
from filehub.users.service import ensure_admin_exists

log = logging.getLogger(__name__)


class Hub:
    """Database, storage, staging, version clock and the services built on them."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        if not settings.auth.jwt_secret:
            log.warning("auth.jwt_secret is not set; using a random secret (tokens end with the process)")
            settings.auth.jwt_secret = secrets.token_urlsafe(32)
        self.db = Database(settings.database.uri)
        self.storage = FilesystemStorage(settings.storage.root_dir)
        self.chunks = ChunkStore(settings.staging_dir)
        self.clock = VersionClock()
        self.files = FileService(self.db, self.storage, self.clock)
        self.uploads = UploadEngine(
            self.db,
            self.files,
            self.chunks,
            session_ttl=timedelta(hours=settings.upload.session_ttl_hours),
        )

    async def init(self) -> None:
        """Create directories and tables, then bootstrap the admin user if configured."""
        await self.storage.init()
        await self.chunks.init()
        await self.db.init()
        async with self.db.session() as session:
            await ensure_admin_exists(session, self.storage, self.settings)
        log.info(
            "Hub ready root_dir=%s staging_dir=%s database=%s",
            self.storage.root_dir, self.chunks.staging_dir, self.settings.database.uri,
        )

    async def close(self) -> None:
        await self.db.close()
