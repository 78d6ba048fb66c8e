from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from filevault.core.deps import require_file_manager
from filevault.core.errors import SweepAlreadyRunning
from filevault.db.session import get_db
from filevault.schemas.files import ArchivePayload
from filevault.services.access_control import Requester
from filevault.services.retention import archive_old_files, get_cleanup_statistics, run_retention_sweep

router = APIRouter()


@router.post("/run")
def run_cleanup(
    db: Session = Depends(get_db),
    requester: Requester = Depends(require_file_manager),
):
    try:
        report = run_retention_sweep(db)
    except SweepAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    return report.as_dict()


@router.post("/archive")
def archive_files(
    payload: Optional[ArchivePayload] = None,
    db: Session = Depends(get_db),
    requester: Requester = Depends(require_file_manager),
):
    threshold_days = payload.threshold_days if payload else None
    return {"archived": archive_old_files(db, threshold_days)}


@router.get("/statistics")
def cleanup_statistics(
    db: Session = Depends(get_db),
    requester: Requester = Depends(require_file_manager),
):
    return get_cleanup_statistics(db)
