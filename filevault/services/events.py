from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, ClassVar, Protocol

import redis

from filevault.core.config import settings

_LOG = logging.getLogger("filevault.events")


@dataclass(frozen=True)
class FileEvent:
    name: ClassVar[str] = "file.event"

    def payload(self) -> dict[str, Any]:
        return {key: _jsonable(value) for key, value in asdict(self).items()}


@dataclass(frozen=True)
class UploadIntentCreated(FileEvent):
    name: ClassVar[str] = "upload.intentCreated"

    file_id: uuid.UUID
    filename: str
    mime_type: str
    size_bytes: int
    owner_id: uuid.UUID | None
    organization_id: uuid.UUID | None


@dataclass(frozen=True)
class FileProcessed(FileEvent):
    name: ClassVar[str] = "file.processed"

    file_id: uuid.UUID
    filename: str
    mime_type: str
    size_bytes: int
    owner_id: uuid.UUID | None
    organization_id: uuid.UUID | None


@dataclass(frozen=True)
class FileProcessingError(FileEvent):
    name: ClassVar[str] = "file.processingError"

    file_id: uuid.UUID
    filename: str
    error: str
    owner_id: uuid.UUID | None
    organization_id: uuid.UUID | None


@dataclass(frozen=True)
class FileScanStarted(FileEvent):
    name: ClassVar[str] = "file.scanStarted"

    file_id: uuid.UUID
    filename: str
    mime_type: str


@dataclass(frozen=True)
class FileScanCompleted(FileEvent):
    name: ClassVar[str] = "file.scanCompleted"

    file_id: uuid.UUID
    status: str
    result: str
    engine: str


@dataclass(frozen=True)
class FileInfectedDeleted(FileEvent):
    name: ClassVar[str] = "file.infectedDeleted"

    file_id: uuid.UUID
    filename: str
    scan_result: str
    organization_id: uuid.UUID | None


@dataclass(frozen=True)
class FileDeleted(FileEvent):
    name: ClassVar[str] = "file.deleted"

    file_id: uuid.UUID
    filename: str
    storage_path: str
    actor: str
    organization_id: uuid.UUID | None


@dataclass(frozen=True)
class CleanupCompleted(FileEvent):
    name: ClassVar[str] = "cleanup.completed"

    phase_counts: dict[str, int]
    bytes_reclaimed: int
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CleanupError(FileEvent):
    name: ClassVar[str] = "cleanup.error"

    phase: str
    error: str


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def channel_for(event: FileEvent) -> str:
    return f"{settings.EVENTS_CHANNEL_PREFIX}{event.name}"


class EventPublisher(Protocol):
    def publish(self, event: FileEvent) -> None:
        ...


class InMemoryEventPublisher:
    def __init__(self):
        self.events: list[FileEvent] = []
        self._lock = Lock()

    def publish(self, event: FileEvent) -> None:
        with self._lock:
            self.events.append(event)

    def names(self) -> list[str]:
        with self._lock:
            return [event.name for event in self.events]

    def of_type(self, event_type: type[FileEvent]) -> list[FileEvent]:
        with self._lock:
            return [event for event in self.events if isinstance(event, event_type)]


class RedisEventPublisher:
    def __init__(self, client: redis.Redis):
        self.client = client

    def publish(self, event: FileEvent) -> None:
        message = json.dumps({"event": event.name, "payload": event.payload()}, ensure_ascii=False)
        self.client.publish(channel_for(event), message)


_cached_publisher: EventPublisher | None = None


def _build_publisher() -> EventPublisher:
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=0.4,
            socket_connect_timeout=0.4,
        )
        client.ping()
        return RedisEventPublisher(client)
    except Exception:
        _LOG.warning("Redis event bus unavailable; fallback to in-memory publisher")
        return InMemoryEventPublisher()


def get_event_publisher() -> EventPublisher:
    global _cached_publisher
    if _cached_publisher is None:
        _cached_publisher = _build_publisher()
    return _cached_publisher


def reset_event_publisher_for_tests() -> None:
    global _cached_publisher
    _cached_publisher = None


def emit(event: FileEvent) -> None:
    # Event delivery must not break the lifecycle flow that produced it.
    try:
        get_event_publisher().publish(event)
    except Exception as exc:
        _LOG.warning("event publish failed event=%s error=%s", event.name, exc)
        return
    _LOG.debug("event published event=%s", event.name)
