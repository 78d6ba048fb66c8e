from celery import Celery
from filevault.core.config import settings

celery_app = Celery("filevault", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

celery_app.conf.beat_schedule = {
    "run_retention_sweep": {"task": "filevault.workers.tasks.files.run_retention_sweep", "schedule": 86400.0},
    "archive_old_files": {"task": "filevault.workers.tasks.files.archive_old_files", "schedule": 604800.0},
}
celery_app.conf.timezone = settings.CELERY_TIMEZONE
celery_app.conf.imports = ("filevault.workers.tasks.files",)
