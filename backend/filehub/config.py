"""Configuration from config.yaml and environment (no hardcoded secrets)."""

import os
from pathlib import Path
from typing import List, Optional, Tuple, Type

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

CONFIG_FILE_NAME = "config.yaml"
STORAGE_ENV = "FILEHUB_STORAGE"
ROOT_DIR_ENV = "FILEHUB_STORAGE__ROOT_DIR"


def config_search_path() -> List[Path]:
    """
    Directories scanned for config.yaml, in order.
    FILEHUB_CONFIG_PATH (or CONFIG_PATH) is split on the OS list separator;
    with neither set only the current directory is searched.
    """
    raw = os.environ.get("FILEHUB_CONFIG_PATH") or os.environ.get("CONFIG_PATH") or ""
    dirs = [Path(p.strip()) for p in raw.split(os.pathsep) if p.strip()]
    return dirs or [Path(".")]


def find_config_file() -> Optional[Path]:
    """Return the first config.yaml on the search path, or None (built-in defaults apply)."""
    for directory in config_search_path():
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


class StorageSettings(BaseModel):
    root_dir: Path = Path("./webdav_root")
    # Empty = <root_dir>/.staging
    staging_dir: Optional[Path] = None


class WebSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    realm: str = "filehub"
    # Reserved for an alternate surface; 0 disables it
    grpc_port: int = 0


class WebDAVSettings(BaseModel):
    # 0 = served on web.port
    port: int = 0


class DatabaseSettings(BaseModel):
    uri: str = "sqlite+aiosqlite:///./filehub.db"


class UploadSettings(BaseModel):
    session_ttl_hours: int = 24
    reaper_interval_seconds: int = 3600

    @field_validator("reaper_interval_seconds")
    @classmethod
    def _at_most_hourly(cls, v: int) -> int:
        if v <= 0 or v > 3600:
            raise ValueError("reaper_interval_seconds must be between 1 and 3600")
        return v


class QuotaSettings(BaseModel):
    default_bytes: int = 10 * 1024**3


class AuthSettings(BaseModel):
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    refresh_token_expire_days: int = 7


class Settings(BaseSettings):
    """Hub settings: config.yaml from the search path, overridden by FILEHUB_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="FILEHUB_", env_nested_delimiter="__", extra="ignore"
    )

    storage: StorageSettings = StorageSettings()
    web: WebSettings = WebSettings()
    webdav: WebDAVSettings = WebDAVSettings()
    database: DatabaseSettings = DatabaseSettings()
    upload: UploadSettings = UploadSettings()
    quota: QuotaSettings = QuotaSettings()
    auth: AuthSettings = AuthSettings()

    # First admin (bootstrap)
    admin_username: str = ""
    admin_email: str = ""
    admin_initial_password: str = ""

    # CORS: comma-separated string so pydantic-settings does not try to JSON-decode it
    cors_origins: str = ""

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def cors_origins_list(self) -> List[str]:
        """CORS origins as a list (split on comma)."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def staging_dir(self) -> Path:
        """Directory holding staged upload chunks."""
        return self.storage.staging_dir or (self.storage.root_dir / ".staging")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        sources: List[PydanticBaseSettingsSource] = [init_settings, env_settings]
        config_file = find_config_file()
        if config_file is not None:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=config_file))
        return tuple(sources)


def _yaml_root_dir(config_file: Path) -> Optional[str]:
    """storage.root_dir as written in config_file, or None when the file does not set it."""
    data = YamlConfigSettingsSource(Settings, yaml_file=config_file)()
    storage = data.get("storage")
    if not isinstance(storage, dict):
        return None
    return storage.get("root_dir")


def _root_dir_from_env() -> bool:
    names = {name.upper() for name in os.environ}
    return ROOT_DIR_ENV in names or STORAGE_ENV in names


def get_settings() -> Settings:
    """
    Return application settings. A relative root_dir written in config.yaml is taken relative
    to that file; one from the environment or the default stays relative to the working directory.
    """
    settings = Settings()
    config_file = find_config_file()
    if config_file is None or settings.storage.root_dir.is_absolute() or _root_dir_from_env():
        return settings
    if _yaml_root_dir(config_file) is not None:
        settings.storage.root_dir = config_file.parent / settings.storage.root_dir
    return settings
