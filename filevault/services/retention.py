from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from threading import Lock
from typing import Any, Protocol

import redis
from redis.exceptions import LockError
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filevault.core.config import settings
from filevault.core.errors import FileServiceError, SweepAlreadyRunning
from filevault.models.common import as_utc, utcnow
from filevault.models.file_record import PROCESSING_FAILED, SCAN_INFECTED, FileRecord
from filevault.models.file_variant import FileVariant
from filevault.services.events import CleanupCompleted, CleanupError, FileInfectedDeleted, emit
from filevault.services.file_access import purge_file
from filevault.services.file_audit import ACTION_RETENTION_DELETE, record_file_event
from filevault.services.s3_storage import SCOPE_PREFIXES, get_s3_storage

_LOG = logging.getLogger("filevault.retention")

PHASE_EXPIRED = "expired"
PHASE_INFECTED = "infected"
PHASE_FAILED_STALE = "failed_stale"
PHASE_ARCHIVED_STALE = "archived_stale"
PHASE_ORPHANS = "orphans"
PHASES = (PHASE_EXPIRED, PHASE_INFECTED, PHASE_FAILED_STALE, PHASE_ARCHIVED_STALE, PHASE_ORPHANS)

SWEEP_LOCK_KEY = "filevault:retention:sweep"


@dataclass
class SweepReport:
    phase_counts: dict[str, int] = field(default_factory=lambda: {phase: 0 for phase in PHASES})
    bytes_reclaimed: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def total_deleted(self) -> int:
        return sum(self.phase_counts.values())

    def as_dict(self) -> dict:
        return {
            "phase_counts": dict(self.phase_counts),
            "bytes_reclaimed": int(self.bytes_reclaimed),
            "errors": list(self.errors),
            "total_deleted": self.total_deleted,
            "skipped": self.skipped,
        }


class SweepLock(Protocol):
    def acquire(self) -> bool:
        ...

    def release(self) -> None:
        ...


class InMemorySweepLock:
    def __init__(self):
        self._lock = Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class RedisSweepLock:
    """Single-flight guard on redis-py's token lock; release deletes the key only while it holds our token."""

    def __init__(self, client: redis.Redis, key: str = SWEEP_LOCK_KEY, ttl_seconds: int | None = None):
        self.client = client
        self.key = key
        self.ttl_seconds = int(ttl_seconds or settings.RETENTION_LOCK_TTL_SECONDS)
        self._lock = client.lock(key, timeout=max(1, self.ttl_seconds), blocking=False)

    def acquire(self) -> bool:
        return bool(self._lock.acquire(blocking=False))

    def release(self) -> None:
        try:
            self._lock.release()
        except LockError:
            _LOG.warning("sweep lock was not held at release key=%s; it may have expired", self.key)


_cached_lock: SweepLock | None = None


def _build_lock() -> SweepLock:
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=0.4,
            socket_connect_timeout=0.4,
        )
        client.ping()
        return RedisSweepLock(client)
    except Exception:
        _LOG.warning("Redis sweep lock unavailable; fallback to in-process lock")
        return InMemorySweepLock()


def get_sweep_lock() -> SweepLock:
    global _cached_lock
    if _cached_lock is None:
        _cached_lock = _build_lock()
    return _cached_lock


def reset_sweep_lock_for_tests() -> None:
    global _cached_lock
    _cached_lock = None


def _batch_size() -> int:
    return max(1, int(settings.RETENTION_BATCH_SIZE))


def _expired_query(db: Session, now):
    return db.query(FileRecord).filter(FileRecord.expires_at.is_not(None), FileRecord.expires_at < now)


def _infected_query(db: Session, now):
    return db.query(FileRecord).filter(FileRecord.virus_scan_status == SCAN_INFECTED)


def _failed_stale_query(db: Session, now):
    threshold = now - timedelta(days=int(settings.FAILED_PROCESSING_GRACE_DAYS))
    return db.query(FileRecord).filter(
        FileRecord.processing_status == PROCESSING_FAILED,
        FileRecord.updated_at < threshold,
    )


def _archived_stale_query(db: Session, now):
    threshold = now - timedelta(days=int(settings.ARCHIVED_RETENTION_DAYS))
    return db.query(FileRecord).filter(FileRecord.is_archived.is_(True), FileRecord.updated_at < threshold)


def _archive_candidates_query(db: Session, now, threshold_days: int):
    created_before = now - timedelta(days=int(threshold_days))
    accessed_before = now - timedelta(days=int(settings.ARCHIVE_INACTIVE_DAYS))
    return db.query(FileRecord).filter(
        FileRecord.created_at < created_before,
        FileRecord.is_archived.is_(False),
        or_(FileRecord.last_accessed_at.is_(None), FileRecord.last_accessed_at < accessed_before),
    )


def _delete_records(
    db: Session,
    report: SweepReport,
    phase: str,
    rows: list[FileRecord],
) -> None:
    for record in rows:
        record_id = record.id
        storage_path = record.storage_path
        organization_id = record.organization_id
        snapshot = (record.filename, record.virus_scan_result)
        try:
            reclaimed = purge_file(db, record)
        except (FileServiceError, SQLAlchemyError) as exc:
            db.rollback()
            message = getattr(exc, "message", None) or str(exc)
            report.errors.append(f"{phase}:{record_id}:{message}")
            _LOG.warning("retention delete failed phase=%s file_id=%s error=%s", phase, record_id, message)
            continue
        report.phase_counts[phase] += 1
        report.bytes_reclaimed += reclaimed
        record_file_event(
            db,
            actor_subject="retention",
            action=ACTION_RETENTION_DELETE,
            allowed=True,
            file_id=record_id,
            organization_id=organization_id,
            object_key=storage_path,
            reason=phase,
            details={"bytes": reclaimed},
        )
        if phase == PHASE_INFECTED:
            emit(
                FileInfectedDeleted(
                    file_id=record_id,
                    filename=snapshot[0],
                    scan_result=str(snapshot[1] or ""),
                    organization_id=organization_id,
                )
            )


def _known_key(db: Session, key: str) -> bool:
    if db.query(FileRecord.id).filter(FileRecord.storage_path == key).first() is not None:
        return True
    return db.query(FileVariant.id).filter(FileVariant.storage_path == key).first() is not None


def _sweep_orphans(db: Session, report: SweepReport, now) -> None:
    storage = get_s3_storage()
    grace_cutoff = now - timedelta(hours=int(settings.ORPHAN_GRACE_HOURS))
    scan_limit = max(1, int(settings.ORPHAN_SCAN_LIMIT))
    examined = 0
    for prefix in SCOPE_PREFIXES:
        for obj in storage.iter_objects(prefix):
            if examined >= scan_limit or report.phase_counts[PHASE_ORPHANS] >= _batch_size():
                return
            examined += 1
            modified = as_utc(obj.last_modified)
            if modified is not None and modified > grace_cutoff:
                continue
            if _known_key(db, obj.key):
                continue
            try:
                storage.delete(obj.key)
            except FileServiceError as exc:
                report.errors.append(f"{PHASE_ORPHANS}:{obj.key}:{exc.message}")
                _LOG.warning("orphan delete failed key=%s error=%s", obj.key, exc.message)
                continue
            report.phase_counts[PHASE_ORPHANS] += 1
            report.bytes_reclaimed += int(obj.size or 0)
            _LOG.info("orphan object deleted key=%s size=%s", obj.key, obj.size)


def _run_phases(db: Session, report: SweepReport) -> None:
    now = utcnow()
    batch = _batch_size()
    record_phases = [(PHASE_EXPIRED, _expired_query, True)]
    record_phases.append((PHASE_INFECTED, _infected_query, bool(settings.CLEANUP_INFECTED_FILES)))
    record_phases.append((PHASE_FAILED_STALE, _failed_stale_query, bool(settings.CLEANUP_FAILED_FILES)))
    record_phases.append((PHASE_ARCHIVED_STALE, _archived_stale_query, True))

    for phase, build_query, enabled in record_phases:
        if not enabled:
            continue
        try:
            rows = build_query(db, now).order_by(FileRecord.created_at.asc()).limit(batch).all()
            _delete_records(db, report, phase, rows)
        except Exception as exc:
            db.rollback()
            report.errors.append(f"{phase}:{exc}")
            _LOG.exception("retention phase failed phase=%s", phase)
            emit(CleanupError(phase=phase, error=str(exc)))

    try:
        _sweep_orphans(db, report, now)
    except Exception as exc:
        db.rollback()
        report.errors.append(f"{PHASE_ORPHANS}:{exc}")
        _LOG.exception("retention phase failed phase=%s", PHASE_ORPHANS)
        emit(CleanupError(phase=PHASE_ORPHANS, error=str(exc)))


def run_retention_sweep(db: Session) -> SweepReport:
    report = SweepReport()
    if not settings.RETENTION_ENABLED:
        report.skipped = True
        _LOG.info("retention sweep disabled")
        return report

    lock = get_sweep_lock()
    if not lock.acquire():
        raise SweepAlreadyRunning("A retention sweep is already running")
    try:
        _run_phases(db, report)
    finally:
        lock.release()

    _LOG.info(
        "retention sweep finished counts=%s bytes=%s errors=%s",
        report.phase_counts,
        report.bytes_reclaimed,
        len(report.errors),
    )
    emit(
        CleanupCompleted(
            phase_counts=dict(report.phase_counts),
            bytes_reclaimed=int(report.bytes_reclaimed),
            errors=list(report.errors),
        )
    )
    return report


def archive_old_files(db: Session, threshold_days: int | None = None) -> int:
    now = utcnow()
    days = int(threshold_days if threshold_days is not None else settings.ARCHIVE_AFTER_DAYS)
    ids = [row.id for row in _archive_candidates_query(db, now, days).with_entities(FileRecord.id).all()]
    if not ids:
        return 0
    updated = (
        db.query(FileRecord)
        .filter(FileRecord.id.in_(ids), FileRecord.is_archived.is_(False))
        .update({FileRecord.is_archived: True, FileRecord.updated_at: now}, synchronize_session=False)
    )
    db.commit()
    _LOG.info("archived old files count=%s threshold_days=%s", updated, days)
    return int(updated)


def _phase_totals(query) -> dict:
    count, total = query.with_entities(
        func.count(FileRecord.id),
        func.coalesce(func.sum(FileRecord.size_bytes), 0),
    ).one()
    return {"count": int(count or 0), "bytes": int(total or 0)}


def get_cleanup_statistics(db: Session) -> dict:
    now = utcnow()
    return {
        PHASE_EXPIRED: _phase_totals(_expired_query(db, now)),
        PHASE_INFECTED: _phase_totals(_infected_query(db, now)),
        PHASE_FAILED_STALE: _phase_totals(_failed_stale_query(db, now)),
        PHASE_ARCHIVED_STALE: _phase_totals(_archived_stale_query(db, now)),
        "archive_candidates": _phase_totals(
            _archive_candidates_query(db, now, int(settings.ARCHIVE_AFTER_DAYS))
        ),
        "settings": {
            "batch_size": _batch_size(),
            "archived_retention_days": int(settings.ARCHIVED_RETENTION_DAYS),
            "failed_grace_days": int(settings.FAILED_PROCESSING_GRACE_DAYS),
            "cleanup_infected": bool(settings.CLEANUP_INFECTED_FILES),
            "cleanup_failed": bool(settings.CLEANUP_FAILED_FILES),
        },
    }


def retention_health() -> dict[str, Any]:
    lock = get_sweep_lock()
    return {
        "component": "retention",
        "status": "ok" if settings.RETENTION_ENABLED else "disabled",
        "enabled": bool(settings.RETENTION_ENABLED),
        "lock_backend": "redis" if isinstance(lock, RedisSweepLock) else "memory",
        "batch_size": _batch_size(),
        "retention_days": {
            "archived": int(settings.ARCHIVED_RETENTION_DAYS),
            "failed_grace": int(settings.FAILED_PROCESSING_GRACE_DAYS),
            "archive_after": int(settings.ARCHIVE_AFTER_DAYS),
        },
        "cleanup_infected_files": bool(settings.CLEANUP_INFECTED_FILES),
        "cleanup_failed_files": bool(settings.CLEANUP_FAILED_FILES),
        "orphan_grace_hours": int(settings.ORPHAN_GRACE_HOURS),
        "issues": [],
    }
