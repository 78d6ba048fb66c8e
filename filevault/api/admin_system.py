from __future__ import annotations

from fastapi import APIRouter, Depends

from filevault.core.deps import require_file_manager
from filevault.services.access_control import Requester
from filevault.services.image_transcoder import transcoder_health
from filevault.services.malware_scan import scanner_health
from filevault.services.retention import retention_health

router = APIRouter()

HEALTHY_STATUSES = {"ok", "disabled"}


@router.get("/health")
def get_components_health(requester: Requester = Depends(require_file_manager)):
    _ = requester
    components = {
        "malware_scan": scanner_health(),
        "image_transcoder": transcoder_health(),
        "retention": retention_health(),
    }
    healthy = all(item["status"] in HEALTHY_STATUSES for item in components.values())
    return {"status": "ok" if healthy else "degraded", "components": components}
