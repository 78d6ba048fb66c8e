from fastapi import APIRouter
from filevault.api import admin_cleanup, admin_system, files

router = APIRouter()
router.include_router(files.router, prefix="/files", tags=["Files"])
router.include_router(admin_cleanup.router, prefix="/admin/cleanup", tags=["AdminCleanup"])
router.include_router(admin_system.router, prefix="/admin/system", tags=["AdminSystem"])
