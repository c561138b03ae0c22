"""FileObject SQLAlchemy model and its API schema."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from filehub.db.session import Base, as_utc, utcnow

DIRECTORY_CONTENT_TYPE = "httpd/unix-directory"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class FileObject(Base):
    """
    A file or directory in a repository.
    path is absolute within the repository ("/" is the root; directories have no trailing slash).
    Rows are hard-deleted; there is no soft-delete state.
    """

    __tablename__ = "files"
    __table_args__ = (UniqueConstraint("repo_id", "path", name="uq_files_repo_path"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # NULL only for the repository root
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("files.id", ondelete="CASCADE"), nullable=True, index=True
    )
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    mod_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_dir: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # SHA-256 hex
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def content_type(self) -> str:
        if self.is_dir:
            return DIRECTORY_CONTENT_TYPE
        return self.mime_type or DEFAULT_CONTENT_TYPE


class FileInfo(BaseModel):
    """FileObject as returned by the sync API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    repo_id: int
    parent_id: Optional[int] = None
    owner_id: int
    name: str
    path: str
    size: int
    mod_time: datetime
    is_dir: bool
    mime_type: Optional[str] = None
    checksum: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("mod_time", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)
