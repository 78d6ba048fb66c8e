from __future__ import annotations

import logging

from filevault.core.errors import SweepAlreadyRunning
from filevault.db.session import SessionLocal
from filevault.services.processing_pipeline import process_file_impl
from filevault.services.retention import archive_old_files as archive_old_files_impl
from filevault.services.retention import run_retention_sweep as run_retention_sweep_impl
from filevault.workers.celery_app import celery_app

_LOG = logging.getLogger("filevault.workers")


@celery_app.task(name="filevault.workers.tasks.files.process_file", queue="files")
def process_file(file_id: str, force: bool = False) -> dict:
    return process_file_impl(str(file_id), force=bool(force))


@celery_app.task(name="filevault.workers.tasks.files.run_retention_sweep")
def run_retention_sweep() -> dict:
    db = SessionLocal()
    try:
        report = run_retention_sweep_impl(db)
        return {"status": "skipped" if report.skipped else "ok", **report.as_dict()}
    except SweepAlreadyRunning:
        _LOG.info("retention sweep skipped; another sweep is running")
        return {"status": "skipped"}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(name="filevault.workers.tasks.files.archive_old_files")
def archive_old_files(threshold_days: int | None = None) -> dict:
    db = SessionLocal()
    try:
        return {"archived": int(archive_old_files_impl(db, threshold_days))}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
