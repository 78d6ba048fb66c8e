from __future__ import annotations

import uuid

from sqlalchemy import Boolean, JSON, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from filevault.db.session import Base
from filevault.models.common import TimestampMixin, UUIDMixin


class FileAuditLog(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "file_audit_log"

    actor_subject: Mapped[str] = mapped_column(String(200), nullable=False, default="", index=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    file_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    object_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    reason: Mapped[str | None] = mapped_column(String(400), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
