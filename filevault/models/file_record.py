import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from filevault.db.session import Base
from filevault.models.common import TimestampMixin, UUIDMixin

OWNER_USER = "user"
OWNER_ORGANIZATION = "organization"
OWNER_SYSTEM = "system"
OWNER_TYPES = (OWNER_USER, OWNER_ORGANIZATION, OWNER_SYSTEM)

ACCESS_PRIVATE = "private"
ACCESS_ORGANIZATION = "organization"
ACCESS_PUBLIC = "public"
ACCESS_LINK_ONLY = "link_only"
ACCESS_LEVELS = (ACCESS_PRIVATE, ACCESS_ORGANIZATION, ACCESS_PUBLIC, ACCESS_LINK_ONLY)

PROCESSING_PENDING = "pending"
PROCESSING_PROCESSING = "processing"
PROCESSING_COMPLETED = "completed"
PROCESSING_FAILED = "failed"
PROCESSING_STATUSES = (PROCESSING_PENDING, PROCESSING_PROCESSING, PROCESSING_COMPLETED, PROCESSING_FAILED)

SCAN_PENDING = "pending"
SCAN_SCANNING = "scanning"
SCAN_CLEAN = "clean"
SCAN_INFECTED = "infected"
SCAN_ERROR = "error"
SCAN_STATUSES = (SCAN_PENDING, SCAN_SCANNING, SCAN_CLEAN, SCAN_INFECTED, SCAN_ERROR)


class FileRecord(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "files"

    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True, nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True, nullable=True)
    owner_type: Mapped[str] = mapped_column(String(20), nullable=False, default=OWNER_USER, index=True)

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(150), nullable=False, index=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="", index=True)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    access_level: Mapped[str] = mapped_column(String(20), nullable=False, default=ACCESS_PRIVATE, index=True)
    public_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cdn_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PROCESSING_PENDING, index=True)
    processing_error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    virus_scan_status: Mapped[str] = mapped_column(String(20), nullable=False, default=SCAN_PENDING, index=True)
    virus_scan_result: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    virus_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    @property
    def is_image(self) -> bool:
        return str(self.mime_type or "").lower().startswith("image/")

    @property
    def is_video(self) -> bool:
        return str(self.mime_type or "").lower().startswith("video/")

    @property
    def extension(self) -> str:
        name = str(self.original_filename or "")
        if "." not in name:
            return ""
        return name.rsplit(".", 1)[-1].lower()
