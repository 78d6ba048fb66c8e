from __future__ import annotations

import hashlib
import logging
import os
import socket
import tempfile
import time
import uuid
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass

from sqlalchemy.orm import Session

from filevault.core.config import settings
from filevault.core.errors import (
    FileNotFound,
    FileServiceError,
    ProcessingInProgress,
    ScanTimeout,
    StorageObjectMissing,
    TranscodeFailure,
)
from filevault.db.session import SessionLocal
from filevault.models.common import utcnow
from filevault.models.file_record import (
    PROCESSING_COMPLETED,
    PROCESSING_FAILED,
    PROCESSING_PENDING,
    PROCESSING_PROCESSING,
    SCAN_CLEAN,
    SCAN_ERROR,
    SCAN_INFECTED,
    SCAN_SCANNING,
    FileRecord,
)
from filevault.models.file_variant import FileVariant
from filevault.services.access_control import Requester
from filevault.services.events import (
    FileProcessed,
    FileProcessingError,
    FileScanCompleted,
    FileScanStarted,
    emit,
)
from filevault.services.file_audit import ACTION_FORCE_REPROCESS, record_file_event
from filevault.services.image_transcoder import (
    FORMAT_MIME_TYPES,
    ImageTranscoder,
    can_transcode,
    get_image_transcoder,
    thumbnail_profiles,
)
from filevault.services.io_pool import run_io
from filevault.services.malware_scan import get_scan_engine, should_scan
from filevault.services.s3_storage import StorageGateway, build_variant_key, get_s3_storage
from filevault.services.upload_coordinator import max_size_bytes
from filevault.workers.celery_app import celery_app

_LOG = logging.getLogger("filevault.pipeline")

OBJECT_MISSING_ERROR = "object missing"
SKIPPED_SCAN_RESULT = "skipped by policy"
OPTIMIZED_VARIANT = "optimized"


@dataclass(frozen=True)
class _RenderedVariant:
    name: str
    data: bytes
    mime_type: str
    extension: str
    width: int
    height: int


def _uuid_or_404(raw) -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError):
        raise FileNotFound(f"File not found: {raw}")


def _actor_subject(actor) -> str:
    if isinstance(actor, Requester):
        return actor.subject
    return str(actor or "").strip() or "system"


def _claim(db: Session, record: FileRecord, *, force: bool) -> bool:
    allowed_from = [PROCESSING_PENDING, PROCESSING_FAILED]
    if force:
        allowed_from.append(PROCESSING_COMPLETED)
    updated = (
        db.query(FileRecord)
        .filter(FileRecord.id == record.id, FileRecord.processing_status.in_(allowed_from))
        .update(
            {
                FileRecord.processing_status: PROCESSING_PROCESSING,
                FileRecord.processing_error: None,
                FileRecord.is_processed: False,
                FileRecord.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(record)
    return bool(updated)


def _fail(db: Session, record: FileRecord, message: str) -> FileRecord:
    record.processing_status = PROCESSING_FAILED
    record.processing_error = (str(message or "").strip() or "processing failed")[:1000]
    record.is_processed = False
    db.add(record)
    db.commit()
    db.refresh(record)
    _LOG.warning("processing failed file_id=%s error=%s", record.id, record.processing_error)
    emit(
        FileProcessingError(
            file_id=record.id,
            filename=record.filename,
            error=record.processing_error,
            owner_id=record.owner_id,
            organization_id=record.organization_id,
        )
    )
    return record


def _spool_object(storage: StorageGateway, key: str, target) -> str:
    digest = hashlib.sha256()
    for chunk in storage.iter_chunks(key):
        digest.update(chunk)
        target.write(chunk)
    target.flush()
    return digest.hexdigest()


def _merge_details(record: FileRecord, **values) -> None:
    details = dict(record.details or {})
    details.update(values)
    record.details = details


def _scan(db: Session, record: FileRecord, spool_path: str) -> None:
    if not should_scan(record.mime_type, record.filename):
        record.virus_scan_status = SCAN_CLEAN
        record.virus_scan_result = SKIPPED_SCAN_RESULT
        record.virus_scan_at = utcnow()
        db.add(record)
        db.commit()
        _LOG.info("scan skipped by policy file_id=%s mime=%s", record.id, record.mime_type)
        return

    record.virus_scan_status = SCAN_SCANNING
    record.virus_scan_result = None
    db.add(record)
    db.commit()
    emit(FileScanStarted(file_id=record.id, filename=record.filename, mime_type=record.mime_type))

    timeout = float(settings.SCAN_TIMEOUT_SECONDS)
    engine_name = "clamav"
    try:
        verdict = run_io(get_scan_engine().scan, spool_path, record.filename, record.mime_type, timeout=timeout)
    except (FuturesTimeout, socket.timeout, TimeoutError):
        record.virus_scan_status = SCAN_ERROR
        record.virus_scan_result = f"scan timed out after {int(timeout)}s"
    except FileServiceError as exc:
        record.virus_scan_status = SCAN_ERROR
        record.virus_scan_result = str(exc.message)[:1000]
    else:
        engine_name = verdict.engine
        record.virus_scan_status = SCAN_INFECTED if verdict.infected else SCAN_CLEAN
        record.virus_scan_result = verdict.summary[:1000]
    record.virus_scan_at = utcnow()
    db.add(record)
    db.commit()

    log = _LOG.warning if record.virus_scan_status != SCAN_CLEAN else _LOG.info
    log("scan finished file_id=%s status=%s result=%s", record.id, record.virus_scan_status, record.virus_scan_result)
    emit(
        FileScanCompleted(
            file_id=record.id,
            status=record.virus_scan_status,
            result=str(record.virus_scan_result or ""),
            engine=engine_name,
        )
    )
    if (
        settings.SCAN_TIMEOUT_FATAL
        and record.virus_scan_status == SCAN_ERROR
        and str(record.virus_scan_result or "").startswith("scan timed out")
    ):
        raise ScanTimeout(str(record.virus_scan_result))


def _render_variants(transcoder: ImageTranscoder, data: bytes, mime_type: str) -> tuple[dict, list[_RenderedVariant]]:
    info = transcoder.metadata(data)
    rendered: list[_RenderedVariant] = []
    try:
        optimized, fmt = transcoder.optimize(data, quality=int(settings.IMAGE_DEFAULT_QUALITY), format=mime_type)
        optimized_info = transcoder.metadata(optimized)
        rendered.append(
            _RenderedVariant(
                name=OPTIMIZED_VARIANT,
                data=optimized,
                mime_type=FORMAT_MIME_TYPES.get(fmt, "image/jpeg"),
                extension="jpg" if fmt == "jpeg" else fmt,
                width=optimized_info.width,
                height=optimized_info.height,
            )
        )
    except TranscodeFailure as exc:
        _LOG.warning("image optimize failed mime=%s error=%s", mime_type, exc.message)
    for profile in thumbnail_profiles():
        thumb = transcoder.thumbnail(
            data,
            width=profile.width,
            height=profile.height,
            fit=profile.fit,
            quality=profile.quality,
        )
        thumb_info = transcoder.metadata(thumb)
        rendered.append(
            _RenderedVariant(
                name=profile.name,
                data=thumb,
                mime_type="image/jpeg",
                extension="jpg",
                width=thumb_info.width,
                height=thumb_info.height,
            )
        )
    image = {
        "width": info.width,
        "height": info.height,
        "format": info.format,
        "has_alpha": info.has_alpha,
        "color_space": info.color_space,
    }
    return image, rendered


def _store_variant(db: Session, storage: StorageGateway, record: FileRecord, variant: _RenderedVariant) -> None:
    key = build_variant_key(record.storage_path, variant.name, variant.extension)
    run_io(storage.put_bytes, key, variant.data, variant.mime_type)
    row = db.query(FileVariant).filter(FileVariant.file_id == record.id, FileVariant.name == variant.name).first()
    if row is None:
        row = FileVariant(file_id=record.id, name=variant.name)
    row.storage_path = key
    row.mime_type = variant.mime_type
    row.width = int(variant.width)
    row.height = int(variant.height)
    row.size_bytes = len(variant.data)
    db.add(row)


def _transcode(db: Session, storage: StorageGateway, record: FileRecord, spool_path: str) -> int:
    max_bytes = max(1, int(settings.MAX_IMAGE_MB)) * 1024 * 1024
    if int(record.size_bytes or 0) > max_bytes:
        _LOG.info("image too large to transcode file_id=%s size=%s", record.id, record.size_bytes)
        return 0
    with open(spool_path, "rb") as handle:
        data = handle.read()

    started = time.monotonic()
    timeout = float(settings.TRANSCODE_TIMEOUT_SECONDS)
    try:
        image, rendered = run_io(_render_variants, get_image_transcoder(), data, record.mime_type, timeout=timeout)
    except FuturesTimeout:
        _LOG.warning("image transcode timed out file_id=%s timeout=%ss; original kept", record.id, int(timeout))
        return 0
    except TranscodeFailure as exc:
        _LOG.warning("image transcode failed file_id=%s error=%s; original kept", record.id, exc.message)
        return 0
    except Exception:
        _LOG.exception("image transcode crashed file_id=%s; original kept", record.id)
        return 0

    stored = 0
    for variant in rendered:
        try:
            _store_variant(db, storage, record, variant)
            stored += 1
        except FileServiceError as exc:
            _LOG.warning("variant upload failed file_id=%s variant=%s error=%s", record.id, variant.name, exc.message)
    _merge_details(record, image=image)
    db.add(record)
    db.commit()
    _LOG.info(
        "image transcoded file_id=%s variants=%s elapsed_ms=%s",
        record.id,
        stored,
        int((time.monotonic() - started) * 1000),
    )
    return stored


def _run_steps(db: Session, record: FileRecord) -> FileRecord:
    storage = get_s3_storage()
    if not record.storage_path:
        return _fail(db, record, OBJECT_MISSING_ERROR)
    try:
        head = run_io(storage.head, record.storage_path)
    except StorageObjectMissing:
        return _fail(db, record, OBJECT_MISSING_ERROR)

    if head.size > 0:
        record.size_bytes = int(head.size)
    if int(record.size_bytes) > max_size_bytes(record.mime_type):
        return _fail(db, record, f"uploaded object exceeds size limit ({record.size_bytes} bytes)")
    _merge_details(record, detected_content_type=head.content_type)

    directory = str(settings.SCAN_TEMP_DIR or "").strip() or None
    fd, spool_path = tempfile.mkstemp(prefix=f"spool_{record.id.hex}_", dir=directory)
    try:
        with os.fdopen(fd, "wb") as spool:
            record.checksum = run_io(_spool_object, storage, record.storage_path, spool)
        os.chmod(spool_path, 0o644)
        db.add(record)
        db.commit()

        _scan(db, record, spool_path)

        if (
            settings.IMAGE_PROCESSING_ENABLED
            and record.virus_scan_status != SCAN_INFECTED
            and can_transcode(record.mime_type)
        ):
            _transcode(db, storage, record, spool_path)
    finally:
        try:
            os.unlink(spool_path)
        except FileNotFoundError:
            pass

    record.processing_status = PROCESSING_COMPLETED
    record.processing_error = None
    record.is_processed = True
    db.add(record)
    db.commit()
    db.refresh(record)
    _LOG.info(
        "file processed file_id=%s size=%s scan=%s checksum=%s",
        record.id,
        record.size_bytes,
        record.virus_scan_status,
        record.checksum,
    )
    emit(
        FileProcessed(
            file_id=record.id,
            filename=record.filename,
            mime_type=record.mime_type,
            size_bytes=int(record.size_bytes),
            owner_id=record.owner_id,
            organization_id=record.organization_id,
        )
    )
    return record


def process_file(db: Session, file_id, *, force: bool = False, actor=None) -> FileRecord:
    record = db.get(FileRecord, _uuid_or_404(file_id))
    if record is None:
        raise FileNotFound(f"File not found: {file_id}")
    if record.processing_status == PROCESSING_COMPLETED and not force:
        return record

    previous_status = record.processing_status
    if not _claim(db, record, force=force):
        if record.processing_status == PROCESSING_COMPLETED:
            return record
        raise ProcessingInProgress(f"File {record.id} is already being processed")

    if previous_status == PROCESSING_COMPLETED:
        _LOG.warning("forced reprocess file_id=%s actor=%s", record.id, _actor_subject(actor))
        record_file_event(
            db,
            actor_subject=_actor_subject(actor),
            action=ACTION_FORCE_REPROCESS,
            allowed=True,
            file_id=record.id,
            organization_id=record.organization_id,
            object_key=record.storage_path,
        )

    try:
        return _run_steps(db, record)
    except FileServiceError as exc:
        db.rollback()
        return _fail(db, record, exc.message)
    except Exception as exc:
        db.rollback()
        _fail(db, record, f"unexpected error: {exc}")
        raise


def enqueue_processing(file_id, *, force: bool = False) -> None:
    celery_app.send_task(
        "filevault.workers.tasks.files.process_file",
        args=[str(file_id)],
        kwargs={"force": bool(force)},
        queue="files",
    )


def process_file_impl(file_id: str, *, force: bool = False) -> dict:
    db: Session = SessionLocal()
    try:
        record = process_file(db, file_id, force=force, actor="worker")
        return {
            "status": record.processing_status,
            "scan_status": record.virus_scan_status,
            "error": record.processing_error,
        }
    except FileNotFound:
        return {"status": "missing"}
    except ProcessingInProgress:
        return {"status": "in_progress"}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
