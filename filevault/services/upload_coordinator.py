from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import quote

from sqlalchemy import func
from sqlalchemy.orm import Session

from filevault.core.config import settings
from filevault.core.errors import (
    DisallowedFileType,
    DisallowedMimeType,
    FileTooLarge,
    Forbidden,
    InvalidFilename,
    QuotaExceeded,
    UploadValidationError,
)
from filevault.models.common import utcnow
from filevault.models.file_record import (
    ACCESS_LEVELS,
    ACCESS_PRIVATE,
    ACCESS_PUBLIC,
    OWNER_ORGANIZATION,
    OWNER_SYSTEM,
    OWNER_TYPES,
    OWNER_USER,
    PROCESSING_PENDING,
    SCAN_PENDING,
    FileRecord,
)
from filevault.services.access_control import PERMISSION_MANAGE_FILES, REASON_ACCESS_DENIED, Requester
from filevault.services.events import UploadIntentCreated, emit
from filevault.services.s3_storage import get_s3_storage, new_storage_key, split_filename

_LOG = logging.getLogger("filevault.uploads")

MAX_FILENAME_LENGTH = 255
MAX_ORIGINAL_FILENAME_LENGTH = 1024

_DANGEROUS_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_+")


@dataclass
class UploadRequest:
    filename: str
    mime_type: str
    size_bytes: int
    access_level: str = ACCESS_PRIVATE
    owner_type: str = OWNER_USER
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    expires_in_hours: int | None = None


@dataclass(frozen=True)
class UploadIntent:
    file_id: uuid.UUID
    upload_url: str
    download_url: str | None
    storage_path: str
    expires_at: datetime


def sanitize_filename(raw: str) -> str:
    value = _DANGEROUS_CHARS.sub("_", str(raw or "").strip())
    value = _WHITESPACE.sub("_", value)
    return _UNDERSCORES.sub("_", value)


def normalize_tags(raw_tags) -> list[str]:
    tags: list[str] = []
    for raw in raw_tags or []:
        tag = str(raw or "").strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    if len(tags) > int(settings.MAX_TAGS):
        raise UploadValidationError(f"At most {settings.MAX_TAGS} tags are allowed")
    return tags


def max_size_bytes(mime_type: str) -> int:
    if str(mime_type or "").strip().lower().startswith("video/"):
        return int(settings.MAX_VIDEO_FILE_MB) * 1024 * 1024
    return int(settings.MAX_FILE_MB) * 1024 * 1024


def organization_quota_bytes() -> int:
    return int(settings.ORGANIZATION_QUOTA_MB) * 1024 * 1024


def organization_usage_bytes(db: Session, organization_id) -> int:
    total = (
        db.query(func.coalesce(func.sum(FileRecord.size_bytes), 0))
        .filter(FileRecord.organization_id == organization_id, FileRecord.is_archived.is_(False))
        .scalar()
    )
    return int(total or 0)


def check_quota(db: Session, organization_id, size_bytes: int) -> None:
    if organization_id is None:
        return
    used = organization_usage_bytes(db, organization_id)
    limit = organization_quota_bytes()
    if used + int(size_bytes) > limit:
        raise QuotaExceeded(
            "Organization storage quota exceeded",
            details={"used_bytes": used, "requested_bytes": int(size_bytes), "limit_bytes": limit},
        )


def validate_size(size_bytes: int, mime_type: str) -> None:
    size = int(size_bytes or 0)
    if size <= 0:
        raise FileTooLarge("File size must be greater than zero", details={"size_bytes": size})
    ceiling = max_size_bytes(mime_type)
    if size > ceiling:
        raise FileTooLarge(
            f"File exceeds the maximum size of {ceiling // (1024 * 1024)} MB",
            details={"size_bytes": size, "max_bytes": ceiling},
        )


def validate_filename(raw: str) -> str:
    if len(str(raw or "").strip()) > MAX_ORIGINAL_FILENAME_LENGTH:
        raise InvalidFilename(f"Filename is longer than {MAX_ORIGINAL_FILENAME_LENGTH} characters")
    sanitized = sanitize_filename(raw)
    if not sanitized.strip("._"):
        raise InvalidFilename("Filename is empty")
    if len(sanitized) > MAX_FILENAME_LENGTH:
        raise InvalidFilename(f"Filename is longer than {MAX_FILENAME_LENGTH} characters")
    _, ext = split_filename(sanitized)
    if ext and ext in settings.blocked_extensions:
        raise DisallowedFileType(f"Files with extension {ext} are not allowed", details={"extension": ext})
    return sanitized


def validate_mime_type(mime_type: str) -> str:
    normalized = str(mime_type or "").strip().lower()
    allowed = settings.allowed_mime_types
    if allowed and normalized not in allowed:
        raise DisallowedMimeType(f"Mime type {normalized or '-'} is not allowed", details={"mime_type": normalized})
    return normalized


def _resolve_owner(request: UploadRequest, requester: Requester) -> tuple[str, uuid.UUID | None, uuid.UUID | None]:
    owner_type = str(request.owner_type or OWNER_USER).strip().lower()
    if owner_type not in OWNER_TYPES:
        raise UploadValidationError(f"Unknown owner type: {owner_type}")
    if owner_type == OWNER_SYSTEM:
        if not requester.has_permission(PERMISSION_MANAGE_FILES):
            raise Forbidden(REASON_ACCESS_DENIED, "System uploads require the files:manage permission")
        return owner_type, None, None
    if owner_type == OWNER_ORGANIZATION and requester.organization_id is None:
        raise UploadValidationError("Organization uploads require an organization")
    return owner_type, requester.user_id, requester.organization_id


def _upload_metadata(record: FileRecord, requester: Requester) -> dict[str, str]:
    # S3 user metadata must be ASCII.
    return {
        "original-filename": quote(record.original_filename, safe=""),
        "uploaded-by": requester.subject,
        "organization-id": str(record.organization_id or ""),
        "upload-timestamp": utcnow().isoformat(),
    }


def generate_upload_intent(db: Session, request: UploadRequest, requester: Requester) -> UploadIntent:
    validate_size(request.size_bytes, request.mime_type)
    filename = validate_filename(request.filename)
    mime_type = validate_mime_type(request.mime_type)

    access_level = str(request.access_level or ACCESS_PRIVATE).strip().lower()
    if access_level not in ACCESS_LEVELS:
        raise UploadValidationError(f"Unknown access level: {access_level}")
    tags = normalize_tags(request.tags)
    owner_type, owner_id, organization_id = _resolve_owner(request, requester)

    check_quota(db, organization_id, request.size_bytes)

    expires_at = None
    if request.expires_in_hours:
        expires_at = utcnow() + timedelta(hours=int(request.expires_in_hours))

    record = FileRecord(
        owner_id=owner_id,
        organization_id=organization_id,
        owner_type=owner_type,
        filename=filename,
        original_filename=str(request.filename or "").strip(),
        mime_type=mime_type,
        size_bytes=int(request.size_bytes),
        storage_path="",
        description=(str(request.description).strip()[:500] or None) if request.description else None,
        details={},
        access_level=access_level,
        processing_status=PROCESSING_PENDING,
        is_processed=False,
        virus_scan_status=SCAN_PENDING,
        tags=tags,
        expires_at=expires_at,
    )
    db.add(record)
    db.commit()
    db.refresh(record)

    storage = get_s3_storage()
    key = new_storage_key(filename, organization_id=organization_id, user_id=owner_id)
    is_public = access_level == ACCESS_PUBLIC
    try:
        presigned = storage.presign_put(
            key,
            mime_type,
            int(request.size_bytes),
            _upload_metadata(record, requester),
            is_public,
            int(settings.UPLOAD_URL_TTL_SECONDS),
        )
    except Exception:
        _LOG.warning("presign failed; record left without storage path file_id=%s", record.id)
        raise

    record.storage_path = key
    if is_public:
        record.public_url = storage.public_url(key)
        record.cdn_url = storage.cdn_url(key)
    db.add(record)
    db.commit()
    db.refresh(record)

    _LOG.info(
        "upload intent created file_id=%s org=%s owner=%s size=%s mime=%s",
        record.id,
        record.organization_id or "-",
        record.owner_id or "-",
        record.size_bytes,
        record.mime_type,
    )
    emit(
        UploadIntentCreated(
            file_id=record.id,
            filename=record.filename,
            mime_type=record.mime_type,
            size_bytes=int(record.size_bytes),
            owner_id=record.owner_id,
            organization_id=record.organization_id,
        )
    )
    return UploadIntent(
        file_id=record.id,
        upload_url=presigned.upload_url,
        download_url=presigned.download_url,
        storage_path=key,
        expires_at=presigned.expires_at,
    )
