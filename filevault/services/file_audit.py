from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filevault.models.file_audit_log import FileAuditLog

logger = logging.getLogger("filevault.audit")

ACTION_FORCE_REPROCESS = "FORCE_REPROCESS"
ACTION_DOWNLOAD = "DOWNLOAD"
ACTION_DELETE = "DELETE"
ACTION_RETENTION_DELETE = "RETENTION_DELETE"


def _uuid_or_none(raw: str | uuid.UUID | None) -> uuid.UUID | None:
    if raw is None:
        return None
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError):
        return None


def _safe_details(details: dict[str, Any] | None) -> dict[str, Any]:
    if not isinstance(details, dict):
        return {}
    safe: dict[str, Any] = {}
    for key, value in details.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            safe[str(key)] = value
        else:
            safe[str(key)] = str(value)
    return safe


def record_file_event(
    db: Session,
    *,
    actor_subject: str,
    action: str,
    allowed: bool,
    file_id: str | uuid.UUID | None = None,
    organization_id: str | uuid.UUID | None = None,
    object_key: str | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    # Audit writes must not block the file flow if the log write fails.
    try:
        bind = db.get_bind()
        if bind is None or not inspect(db.connection()).has_table(FileAuditLog.__tablename__):
            return
        db.add(
            FileAuditLog(
                actor_subject=str(actor_subject or "").strip() or "system",
                organization_id=_uuid_or_none(organization_id),
                action=str(action or "").strip().upper() or "UNKNOWN",
                file_id=_uuid_or_none(file_id),
                object_key=str(object_key or "").strip() or None,
                allowed=bool(allowed),
                reason=(str(reason)[:400] if reason is not None else None),
                details=_safe_details(details),
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning(
            "file audit write failed action=%s file_id=%s subject=%s",
            action,
            file_id,
            actor_subject or "-",
            exc_info=True,
        )
