import uuid

from sqlalchemy import BigInteger, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from filevault.db.session import Base
from filevault.models.common import TimestampMixin, UUIDMixin


class FileVariant(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "file_variants"
    __table_args__ = (UniqueConstraint("file_id", "name", name="uq_file_variants_file_name"),)

    file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("files.id", ondelete="CASCADE"), index=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    mime_type: Mapped[str] = mapped_column(String(150), nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    height: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
