from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional
from urllib.parse import unquote_plus

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from filevault.core.config import settings
from filevault.core.deps import get_requester, verify_webhook_token
from filevault.db.session import get_db
from filevault.models.file_record import PROCESSING_FAILED, PROCESSING_PENDING, FileRecord
from filevault.schemas.files import (
    DownloadResponse,
    FileCopyPayload,
    FileListResponse,
    FileOut,
    FileUpdatePayload,
    FileVariantOut,
    ProcessPayload,
    StorageWebhookResponse,
    UploadIntentPayload,
    UploadIntentResponse,
)
from filevault.core.errors import Forbidden
from filevault.services.access_control import PERMISSION_MANAGE_FILES, REASON_ACCESS_DENIED, Requester, can_access
from filevault.services.file_access import (
    FileSearchFilters,
    FileUpdate,
    copy_file,
    delete_file,
    generate_download_url,
    get_file_by_id,
    get_file_statistics,
    list_variants,
    load_file,
    search_files,
    update_file,
)
from filevault.services.processing_pipeline import enqueue_processing, process_file
from filevault.services.upload_coordinator import UploadRequest, generate_upload_intent

router = APIRouter()
_LOG = logging.getLogger("filevault.api.files")


def _file_out(db: Session, record: FileRecord) -> FileOut:
    out = FileOut.model_validate(record)
    out.variants = [FileVariantOut.model_validate(row) for row in list_variants(db, record.id)]
    return out


def _uuid_or_400(raw: str | None, field_name: str) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise HTTPException(status_code=400, detail=f'Invalid "{field_name}"')


@router.post("/presign", response_model=UploadIntentResponse)
def presign_upload(
    payload: UploadIntentPayload,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    intent = generate_upload_intent(
        db,
        UploadRequest(
            filename=payload.filename,
            mime_type=payload.mime_type,
            size_bytes=payload.size_bytes,
            access_level=payload.access_level.value,
            owner_type=payload.owner_type.value,
            description=payload.description,
            tags=list(payload.tags or []),
            expires_in_hours=payload.expires_in_hours,
        ),
        requester,
    )
    return UploadIntentResponse(
        file_id=intent.file_id,
        upload_url=intent.upload_url,
        download_url=intent.download_url,
        storage_path=intent.storage_path,
        expires_at=intent.expires_at,
    )


@router.post("/webhooks/storage", response_model=StorageWebhookResponse)
def storage_webhook(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    _: None = Depends(verify_webhook_token),
):
    queued: list[uuid.UUID] = []
    ignored: list[str] = []
    for item in payload.get("Records") or []:
        event_name = str(item.get("eventName") or "")
        key = unquote_plus(str(((item.get("s3") or {}).get("object") or {}).get("key") or ""))
        if "ObjectCreated" not in event_name or not key:
            ignored.append(key or event_name or "-")
            continue
        record = db.query(FileRecord).filter(FileRecord.storage_path == key).first()
        if record is None or record.processing_status not in (PROCESSING_PENDING, PROCESSING_FAILED):
            ignored.append(key)
            continue
        enqueue_processing(record.id)
        queued.append(record.id)
    _LOG.info("storage webhook queued=%s ignored=%s", len(queued), len(ignored))
    return StorageWebhookResponse(queued=queued, ignored=ignored)


@router.post("/{file_id}/process", response_model=FileOut)
def process_uploaded_file(
    file_id: str,
    payload: Optional[ProcessPayload] = None,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    record = load_file(db, file_id)
    if not can_access(record, requester.user_id, requester.organization_id):
        raise Forbidden(REASON_ACCESS_DENIED)
    force = bool(payload and payload.force)
    if force and not requester.has_permission(PERMISSION_MANAGE_FILES):
        raise HTTPException(status_code=403, detail="Forced reprocessing requires files:manage")
    record = process_file(db, record.id, force=force, actor=requester)
    return _file_out(db, record)


@router.get("", response_model=FileListResponse)
def list_files(
    owner_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    owner_type: Optional[str] = None,
    access_level: Optional[str] = None,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    tags: list[str] = Query(default=[]),
    virus_scan_status: Optional[str] = None,
    processing_status: Optional[str] = None,
    is_archived: Optional[bool] = False,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    result = search_files(
        db,
        FileSearchFilters(
            owner_id=_uuid_or_400(owner_id, "owner_id"),
            organization_id=_uuid_or_400(organization_id, "organization_id"),
            owner_type=owner_type,
            access_level=access_level,
            mime_type=mime_type,
            filename=filename,
            tags=list(tags or []),
            virus_scan_status=virus_scan_status,
            processing_status=processing_status,
            is_archived=is_archived,
            created_from=created_from,
            created_to=created_to,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            page_size=page_size,
        ),
        requester,
    )
    return FileListResponse(
        rows=[FileOut.model_validate(row) for row in result.rows],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/statistics/organization")
def organization_statistics(
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    if requester.organization_id is None:
        raise HTTPException(status_code=400, detail="Requester has no organization")
    return get_file_statistics(db, requester.organization_id)


@router.get("/{file_id}", response_model=FileOut)
def get_file(
    file_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    return _file_out(db, get_file_by_id(db, file_id, requester))


@router.post("/{file_id}/download", response_model=DownloadResponse)
def download_file(
    file_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    ttl = int(settings.DOWNLOAD_URL_TTL_SECONDS)
    url = generate_download_url(db, file_id, requester, ttl=ttl)
    return DownloadResponse(download_url=url, expires_in=ttl)


@router.patch("/{file_id}", response_model=FileOut)
def patch_file(
    file_id: str,
    payload: FileUpdatePayload,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    record = update_file(
        db,
        file_id,
        FileUpdate(
            filename=payload.filename,
            description=payload.description,
            tags=payload.tags,
            access_level=payload.access_level.value if payload.access_level else None,
        ),
        requester,
    )
    return _file_out(db, record)


@router.delete("/{file_id}")
def remove_file(
    file_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    reclaimed = delete_file(db, file_id, requester)
    return {"status": "deleted", "id": str(file_id), "bytes_reclaimed": reclaimed}


@router.post("/{file_id}/copy", response_model=FileOut)
def duplicate_file(
    file_id: str,
    payload: Optional[FileCopyPayload] = None,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    return _file_out(db, copy_file(db, file_id, requester, new_filename=payload.filename if payload else None))
