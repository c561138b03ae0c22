"""Change log, repository version and upload session models, plus their API schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from filehub.db.session import Base, as_utc, utcnow
from filehub.files.models import FileInfo

OPERATIONS = ("create", "modify", "delete", "move", "copy")

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"


class ChangeLog(Base):
    """Append-only record of one mutation. id order is the authoritative order within a repo."""

    __tablename__ = "change_log"
    __table_args__ = (
        CheckConstraint(
            "operation IN ('create', 'modify', 'delete', 'move', 'copy')",
            name="ck_change_log_operation",
        ),
        Index("idx_change_log_repo_version", "repo_id", "version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    old_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class RepositoryVersion(Base):
    """Current version token of a repository; strictly increases with every change."""

    __tablename__ = "repository_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    current_version: Mapped[str] = mapped_column(String(64), nullable=False)
    # Reserved
    version_vector: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class UploadSession(Base):
    """Server-side state of a multi-chunk upload."""

    __tablename__ = "upload_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')", name="ck_upload_sessions_status"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upload_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    repo_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    chunks_uploaded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_ACTIVE, nullable=False)


class UploadChunk(Base):
    """One accepted chunk; re-uploading an index replaces the row."""

    __tablename__ = "upload_chunks"
    __table_args__ = (
        UniqueConstraint("upload_id", "chunk_index", name="uq_upload_chunks_upload_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upload_id: Mapped[str] = mapped_column(
        ForeignKey("upload_sessions.upload_id", ondelete="CASCADE"), nullable=False, index=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    offset: Mapped[int] = mapped_column(BigInteger, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# Pydantic schemas for API
class ChangeInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    repo_id: int
    operation: str
    path: str
    old_path: Optional[str] = None
    user_id: int
    version: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class VersionResponse(BaseModel):
    version: str
    vector: str
    timestamp: datetime


class ChangesResponse(BaseModel):
    version: str
    changes: List[ChangeInfo]
    changed: int


class UploadResponse(BaseModel):
    etag: str
    version: str
    size: int


class BeginUploadResponse(BaseModel):
    upload_id: str
    total_chunks: int
    chunk_size: int
    uploaded_chunks: List[int]


class FinalizeUploadResponse(BaseModel):
    etag: str
    size: int


class FileInfoResponse(BaseModel):
    exists: bool
    info: Optional[FileInfo] = None


class ListDirectoryResponse(BaseModel):
    items: List[FileInfo]
    total: int
    offset: int
    limit: int
    has_more: bool


class SyncStatusResponse(BaseModel):
    # new | modified | synced
    status: str
    info: Optional[FileInfo] = None


class AckResponse(BaseModel):
    success: bool = True
    message: str
    version: Optional[str] = None
