from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from filevault.core.config import settings
from filevault.core.errors import (
    FileNotFound,
    Forbidden,
    ProcessingInProgress,
    StorageObjectMissing,
    UploadValidationError,
)
from filevault.models.common import utcnow
from filevault.models.file_record import (
    ACCESS_LEVELS,
    ACCESS_LINK_ONLY,
    ACCESS_ORGANIZATION,
    ACCESS_PRIVATE,
    ACCESS_PUBLIC,
    OWNER_ORGANIZATION,
    OWNER_USER,
    PROCESSING_PROCESSING,
    PROCESSING_STATUSES,
    SCAN_SCANNING,
    SCAN_STATUSES,
    FileRecord,
)
from filevault.models.file_variant import FileVariant
from filevault.services.access_control import (
    PERMISSION_MANAGE_FILES,
    REASON_ACCESS_DENIED,
    Requester,
    can_access,
    can_download,
    can_manage,
)
from filevault.services.events import FileDeleted, emit
from filevault.services.file_audit import ACTION_DELETE, ACTION_DOWNLOAD, record_file_event
from filevault.services.s3_storage import get_s3_storage, new_storage_key
from filevault.services.upload_coordinator import (
    check_quota,
    normalize_tags,
    organization_quota_bytes,
    organization_usage_bytes,
    validate_filename,
)

_LOG = logging.getLogger("filevault.files")

SORT_FIELDS = {
    "created_at": FileRecord.created_at,
    "filename": FileRecord.filename,
    "size_bytes": FileRecord.size_bytes,
    "download_count": FileRecord.download_count,
}
MAX_PAGE_SIZE = 100


@dataclass
class FileSearchFilters:
    owner_id: uuid.UUID | None = None
    organization_id: uuid.UUID | None = None
    owner_type: str | None = None
    access_level: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    tags: list[str] = field(default_factory=list)
    virus_scan_status: str | None = None
    processing_status: str | None = None
    is_archived: bool | None = False
    created_from: datetime | None = None
    created_to: datetime | None = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    page: int = 1
    page_size: int = 20


@dataclass(frozen=True)
class FileSearchResult:
    rows: list[FileRecord]
    total: int
    page: int
    page_size: int


@dataclass
class FileUpdate:
    filename: str | None = None
    description: str | None = None
    tags: list[str] | None = None
    access_level: str | None = None


def load_file(db: Session, file_id) -> FileRecord:
    try:
        file_uuid = file_id if isinstance(file_id, uuid.UUID) else uuid.UUID(str(file_id))
    except (TypeError, ValueError):
        raise FileNotFound(f"File not found: {file_id}")
    record = db.get(FileRecord, file_uuid)
    if record is None:
        raise FileNotFound(f"File not found: {file_id}")
    return record


def _touch(db: Session, record: FileRecord, counter) -> None:
    now = utcnow()
    db.query(FileRecord).filter(FileRecord.id == record.id).update(
        {counter: counter + 1, FileRecord.last_accessed_at: now, FileRecord.updated_at: FileRecord.updated_at},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(record)


def generate_download_url(db: Session, file_id, requester: Requester, ttl: int | None = None) -> str:
    record = load_file(db, file_id)
    reason = can_download(record, requester.user_id, requester.organization_id)
    if reason is not None:
        record_file_event(
            db,
            actor_subject=requester.subject,
            action=ACTION_DOWNLOAD,
            allowed=False,
            file_id=record.id,
            organization_id=record.organization_id,
            object_key=record.storage_path,
            reason=reason,
        )
        _LOG.warning("download denied file_id=%s subject=%s reason=%s", record.id, requester.subject, reason)
        raise Forbidden(reason)

    if record.access_level == ACCESS_PUBLIC and (record.cdn_url or record.public_url):
        url = str(record.cdn_url or record.public_url)
    else:
        url = get_s3_storage().presign_get(
            record.storage_path,
            int(ttl or settings.DOWNLOAD_URL_TTL_SECONDS),
            response_filename=record.original_filename,
        )
    _touch(db, record, FileRecord.download_count)
    record_file_event(
        db,
        actor_subject=requester.subject,
        action=ACTION_DOWNLOAD,
        allowed=True,
        file_id=record.id,
        organization_id=record.organization_id,
        object_key=record.storage_path,
    )
    return url


def get_file_by_id(db: Session, file_id, requester: Requester) -> FileRecord:
    record = load_file(db, file_id)
    if not can_access(record, requester.user_id, requester.organization_id):
        raise Forbidden(REASON_ACCESS_DENIED)
    _touch(db, record, FileRecord.view_count)
    return record


def list_variants(db: Session, file_id) -> list[FileVariant]:
    return db.query(FileVariant).filter(FileVariant.file_id == file_id).order_by(FileVariant.width.asc()).all()


def _visibility_clause(requester: Requester):
    clauses = [FileRecord.access_level.in_([ACCESS_PUBLIC, ACCESS_LINK_ONLY])]
    if requester.user_id is not None:
        clauses.append(and_(FileRecord.access_level == ACCESS_PRIVATE, FileRecord.owner_id == requester.user_id))
    if requester.organization_id is not None:
        clauses.append(
            and_(
                FileRecord.access_level == ACCESS_ORGANIZATION,
                FileRecord.organization_id == requester.organization_id,
            )
        )
    return or_(*clauses)


def search_files(db: Session, filters: FileSearchFilters, requester: Requester) -> FileSearchResult:
    query = db.query(FileRecord)
    if not requester.has_permission(PERMISSION_MANAGE_FILES):
        query = query.filter(_visibility_clause(requester))

    if filters.owner_id is not None:
        query = query.filter(FileRecord.owner_id == filters.owner_id)
    if filters.organization_id is not None:
        query = query.filter(FileRecord.organization_id == filters.organization_id)
    if filters.owner_type:
        query = query.filter(FileRecord.owner_type == filters.owner_type)
    if filters.access_level:
        query = query.filter(FileRecord.access_level == filters.access_level)
    if filters.mime_type:
        query = query.filter(FileRecord.mime_type.contains(str(filters.mime_type).strip().lower()))
    if filters.filename:
        query = query.filter(FileRecord.original_filename.ilike(f"%{str(filters.filename).strip()}%"))
    if filters.virus_scan_status:
        query = query.filter(FileRecord.virus_scan_status == filters.virus_scan_status)
    if filters.processing_status:
        query = query.filter(FileRecord.processing_status == filters.processing_status)
    if filters.is_archived is not None:
        query = query.filter(FileRecord.is_archived.is_(bool(filters.is_archived)))
    if filters.created_from is not None:
        query = query.filter(FileRecord.created_at >= filters.created_from)
    if filters.created_to is not None:
        query = query.filter(FileRecord.created_at <= filters.created_to)

    rows = query.all() if filters.tags else None
    sort_column = SORT_FIELDS.get(filters.sort_by, FileRecord.created_at)
    order = sort_column.asc() if str(filters.sort_order).lower() == "asc" else sort_column.desc()
    page = max(1, int(filters.page or 1))
    page_size = min(MAX_PAGE_SIZE, max(1, int(filters.page_size or 20)))

    if rows is not None:
        # JSON arrays are not portably queryable; tag matching happens on the filtered set.
        wanted = set(normalize_tags(filters.tags))
        matched_ids = [row.id for row in rows if wanted.issubset(set(row.tags or []))]
        query = db.query(FileRecord).filter(FileRecord.id.in_(matched_ids))

    total = query.count()
    items = query.order_by(order, FileRecord.id.asc()).offset((page - 1) * page_size).limit(page_size).all()
    return FileSearchResult(rows=items, total=total, page=page, page_size=page_size)


def update_file(db: Session, file_id, changes: FileUpdate, requester: Requester) -> FileRecord:
    record = load_file(db, file_id)
    if not can_manage(record, requester):
        raise Forbidden(REASON_ACCESS_DENIED)
    if changes.filename is not None:
        record.filename = validate_filename(changes.filename)
        record.original_filename = str(changes.filename).strip()
    if changes.description is not None:
        record.description = str(changes.description).strip()[:500] or None
    if changes.tags is not None:
        record.tags = normalize_tags(changes.tags)
    if changes.access_level is not None:
        level = str(changes.access_level).strip().lower()
        if level not in ACCESS_LEVELS:
            raise UploadValidationError(f"Unknown access level: {level}")
        record.access_level = level
        storage = get_s3_storage()
        if level == ACCESS_PUBLIC:
            record.public_url = storage.public_url(record.storage_path)
            record.cdn_url = storage.cdn_url(record.storage_path)
        else:
            record.public_url = None
            record.cdn_url = None
    db.add(record)
    db.commit()
    db.refresh(record)
    _LOG.info("file updated file_id=%s subject=%s", record.id, requester.subject)
    return record


def purge_file(db: Session, record: FileRecord) -> int:
    """Delete variant objects, the main object and the rows. Returns reclaimed bytes."""
    storage = get_s3_storage()
    reclaimed = 0
    for variant in list_variants(db, record.id):
        storage.delete(variant.storage_path)
        reclaimed += int(variant.size_bytes or 0)
        db.delete(variant)
    if record.storage_path:
        storage.delete(record.storage_path)
        reclaimed += int(record.size_bytes or 0)
    db.delete(record)
    db.commit()
    return reclaimed


def delete_file(db: Session, file_id, requester: Requester) -> int:
    record = load_file(db, file_id)
    if not can_manage(record, requester):
        raise Forbidden(REASON_ACCESS_DENIED)
    event = FileDeleted(
        file_id=record.id,
        filename=record.filename,
        storage_path=record.storage_path,
        actor=requester.subject,
        organization_id=record.organization_id,
    )
    organization_id = record.organization_id
    storage_path = record.storage_path
    reclaimed = purge_file(db, record)
    record_file_event(
        db,
        actor_subject=requester.subject,
        action=ACTION_DELETE,
        allowed=True,
        file_id=event.file_id,
        organization_id=organization_id,
        object_key=storage_path,
        details={"bytes": reclaimed},
    )
    _LOG.info("file deleted file_id=%s subject=%s bytes=%s", event.file_id, requester.subject, reclaimed)
    emit(event)
    return reclaimed


def copy_file(db: Session, file_id, requester: Requester, new_filename: str | None = None) -> FileRecord:
    source = load_file(db, file_id)
    reason = can_download(source, requester.user_id, requester.organization_id)
    if reason is not None:
        raise Forbidden(reason)
    if source.processing_status == PROCESSING_PROCESSING or source.virus_scan_status == SCAN_SCANNING:
        raise ProcessingInProgress(f"File {source.id} is still being processed")
    filename = validate_filename(new_filename) if new_filename else source.filename
    check_quota(db, requester.organization_id, int(source.size_bytes))

    storage = get_s3_storage()
    key = new_storage_key(filename, organization_id=requester.organization_id, user_id=requester.user_id)
    try:
        storage.copy(source.storage_path, key)
    except StorageObjectMissing:
        raise FileNotFound(f"Stored object missing for file {source.id}")

    copy = FileRecord(
        owner_id=requester.user_id,
        organization_id=requester.organization_id,
        owner_type=OWNER_ORGANIZATION if requester.organization_id else OWNER_USER,
        filename=filename,
        original_filename=str(new_filename or source.original_filename).strip(),
        mime_type=source.mime_type,
        size_bytes=int(source.size_bytes),
        storage_path=key,
        checksum=source.checksum,
        description=source.description,
        details=dict(source.details or {}),
        access_level=ACCESS_PRIVATE,
        processing_status=source.processing_status,
        processing_error=source.processing_error,
        is_processed=bool(source.is_processed),
        virus_scan_status=source.virus_scan_status,
        virus_scan_result=source.virus_scan_result,
        virus_scan_at=source.virus_scan_at,
        tags=list(source.tags or []),
    )
    db.add(copy)
    db.commit()
    db.refresh(copy)
    _LOG.info("file copied source=%s copy=%s subject=%s", source.id, copy.id, requester.subject)
    return copy


def _counts_by(db: Session, column, organization_id) -> dict[str, int]:
    rows = (
        db.query(column, func.count(FileRecord.id))
        .filter(FileRecord.organization_id == organization_id)
        .group_by(column)
        .all()
    )
    return {str(key): int(count) for key, count in rows}


def get_file_statistics(db: Session, organization_id) -> dict:
    base = db.query(FileRecord).filter(FileRecord.organization_id == organization_id)
    total_files = base.count()
    total_bytes = int(
        db.query(func.coalesce(func.sum(FileRecord.size_bytes), 0))
        .filter(FileRecord.organization_id == organization_id)
        .scalar()
        or 0
    )
    archived = base.filter(FileRecord.is_archived.is_(True)).count()
    by_type: dict[str, int] = {}
    for mime_type, count in (
        db.query(FileRecord.mime_type, func.count(FileRecord.id))
        .filter(FileRecord.organization_id == organization_id)
        .group_by(FileRecord.mime_type)
        .all()
    ):
        family = str(mime_type or "").split("/", 1)[0] or "other"
        by_type[family] = by_type.get(family, 0) + int(count)

    by_scan = {status: 0 for status in SCAN_STATUSES}
    by_scan.update(_counts_by(db, FileRecord.virus_scan_status, organization_id))
    by_processing = {status: 0 for status in PROCESSING_STATUSES}
    by_processing.update(_counts_by(db, FileRecord.processing_status, organization_id))

    used = organization_usage_bytes(db, organization_id)
    quota = organization_quota_bytes()
    return {
        "total_files": total_files,
        "total_bytes": total_bytes,
        "archived_files": archived,
        "by_type": by_type,
        "by_access_level": _counts_by(db, FileRecord.access_level, organization_id),
        "by_scan_status": by_scan,
        "by_processing_status": by_processing,
        "quota": {
            "used_bytes": used,
            "limit_bytes": quota,
            "available_bytes": max(0, quota - used),
            "used_percent": round(used * 100.0 / quota, 2) if quota else 0.0,
        },
    }
