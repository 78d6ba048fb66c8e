from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from filevault.core.config import settings
from filevault.models.file_record import (
    ACCESS_LINK_ONLY,
    ACCESS_ORGANIZATION,
    ACCESS_PRIVATE,
    ACCESS_PUBLIC,
    SCAN_CLEAN,
    SCAN_INFECTED,
    FileRecord,
)

PERMISSION_MANAGE_FILES = "files:manage"

REASON_VIRUS_INFECTED = "virus_infected"
REASON_SCAN_NOT_CLEAN = "scan_not_clean"
REASON_ACCESS_DENIED = "access_denied"


@dataclass(frozen=True)
class Requester:
    user_id: uuid.UUID | None
    organization_id: uuid.UUID | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def subject(self) -> str:
        return str(self.user_id) if self.user_id else "system"

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


def _same(left, right) -> bool:
    if left is None or right is None:
        return False
    return str(left) == str(right)


def can_access(record: FileRecord, requester_id, requester_org_id) -> bool:
    level = record.access_level
    if level in (ACCESS_PUBLIC, ACCESS_LINK_ONLY):
        return True
    if level == ACCESS_ORGANIZATION:
        return _same(record.organization_id, requester_org_id)
    if level == ACCESS_PRIVATE:
        return _same(record.owner_id, requester_id)
    return False


def can_download(record: FileRecord, requester_id, requester_org_id) -> str | None:
    """Return ``None`` when the download is allowed, otherwise the deny reason."""
    if record.virus_scan_status == SCAN_INFECTED:
        return REASON_VIRUS_INFECTED
    if settings.DOWNLOAD_REQUIRES_CLEAN_SCAN and record.virus_scan_status != SCAN_CLEAN:
        return REASON_SCAN_NOT_CLEAN
    if not can_access(record, requester_id, requester_org_id):
        return REASON_ACCESS_DENIED
    return None


def can_manage(record: FileRecord, requester: Requester) -> bool:
    if requester.has_permission(PERMISSION_MANAGE_FILES):
        return True
    return _same(record.owner_id, requester.user_id)
