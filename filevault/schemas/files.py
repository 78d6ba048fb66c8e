from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccessLevel(str, Enum):
    PRIVATE = "private"
    ORGANIZATION = "organization"
    PUBLIC = "public"
    LINK_ONLY = "link_only"


class OwnerType(str, Enum):
    USER = "user"
    ORGANIZATION = "organization"
    SYSTEM = "system"


class UploadIntentPayload(BaseModel):
    filename: str = Field(max_length=1024)
    mime_type: str = Field(max_length=150)
    size_bytes: int
    access_level: AccessLevel = AccessLevel.PRIVATE
    owner_type: OwnerType = OwnerType.USER
    description: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    expires_in_hours: Optional[int] = Field(default=None, ge=1)


class UploadIntentResponse(BaseModel):
    file_id: uuid.UUID
    upload_url: str
    download_url: Optional[str] = None
    storage_path: str
    expires_at: datetime


class ProcessPayload(BaseModel):
    force: bool = False


class DownloadResponse(BaseModel):
    download_url: str
    expires_in: int


class FileVariantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    mime_type: str
    width: int
    height: int
    size_bytes: int


class FileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: Optional[uuid.UUID] = None
    organization_id: Optional[uuid.UUID] = None
    owner_type: str
    filename: str
    original_filename: str
    mime_type: str
    size_bytes: int
    storage_path: str
    checksum: Optional[str] = None
    description: Optional[str] = None
    access_level: str
    public_url: Optional[str] = None
    cdn_url: Optional[str] = None
    processing_status: str
    processing_error: Optional[str] = None
    is_processed: bool
    virus_scan_status: str
    virus_scan_result: Optional[str] = None
    virus_scan_at: Optional[datetime] = None
    download_count: int
    view_count: int
    last_accessed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    is_archived: bool
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    variants: list[FileVariantOut] = Field(default_factory=list)


class FileListResponse(BaseModel):
    rows: list[FileOut]
    total: int
    page: int
    page_size: int


class FileUpdatePayload(BaseModel):
    filename: Optional[str] = Field(default=None, max_length=1024)
    description: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None
    access_level: Optional[AccessLevel] = None


class FileCopyPayload(BaseModel):
    filename: Optional[str] = Field(default=None, max_length=1024)


class ArchivePayload(BaseModel):
    threshold_days: int = Field(default=180, ge=1)


class StorageWebhookResponse(BaseModel):
    queued: list[uuid.UUID] = Field(default_factory=list)
    ignored: list[str] = Field(default_factory=list)
