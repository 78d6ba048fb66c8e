"""files, variants and audit log
Revision ID: 0001_files
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_files"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "files",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("owner_type", sa.String(length=20), nullable=False, server_default="user"),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("original_filename", sa.String(length=1024), nullable=False),
        sa.Column("mime_type", sa.String(length=150), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("storage_path", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("access_level", sa.String(length=20), nullable=False, server_default="private"),
        sa.Column("public_url", sa.Text(), nullable=True),
        sa.Column("cdn_url", sa.Text(), nullable=True),
        sa.Column("processing_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("processing_error", sa.String(length=1000), nullable=True),
        sa.Column("is_processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("virus_scan_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("virus_scan_result", sa.String(length=1000), nullable=True),
        sa.Column("virus_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    for column in (
        "created_at",
        "updated_at",
        "owner_id",
        "organization_id",
        "owner_type",
        "mime_type",
        "storage_path",
        "access_level",
        "processing_status",
        "virus_scan_status",
        "expires_at",
        "is_archived",
    ):
        op.create_index(f"ix_files_{column}", "files", [column])

    op.create_table(
        "file_variants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("file_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("files.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("storage_path", sa.String(length=1024), nullable=False),
        sa.Column("mime_type", sa.String(length=150), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("height", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.UniqueConstraint("file_id", "name", name="uq_file_variants_file_name"),
    )
    op.create_index("ix_file_variants_file_id", "file_variants", ["file_id"])
    op.create_index("ix_file_variants_storage_path", "file_variants", ["storage_path"])
    op.create_index("ix_file_variants_created_at", "file_variants", ["created_at"])
    op.create_index("ix_file_variants_updated_at", "file_variants", ["updated_at"])

    op.create_table(
        "file_audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actor_subject", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("file_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("object_key", sa.String(length=1024), nullable=True),
        sa.Column("allowed", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("reason", sa.String(length=400), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
    )
    for column in ("created_at", "updated_at", "actor_subject", "action", "file_id", "allowed"):
        op.create_index(f"ix_file_audit_log_{column}", "file_audit_log", [column])

def downgrade():
    op.drop_table("file_audit_log")
    op.drop_table("file_variants")
    op.drop_table("files")
