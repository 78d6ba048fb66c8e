from __future__ import annotations

from typing import Any


class FileServiceError(Exception):
    code = "file_service_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class UploadValidationError(FileServiceError):
    code = "validation_error"
    status_code = 400


class FileTooLarge(UploadValidationError):
    code = "file_too_large"


class InvalidFilename(UploadValidationError):
    code = "invalid_filename"


class DisallowedFileType(UploadValidationError):
    code = "disallowed_file_type"


class DisallowedMimeType(UploadValidationError):
    code = "disallowed_mime_type"


class QuotaExceeded(FileServiceError):
    code = "quota_exceeded"
    status_code = 400


class FileNotFound(FileServiceError):
    code = "not_found"
    status_code = 404


class StorageObjectMissing(FileNotFound):
    code = "object_missing"


class Forbidden(FileServiceError):
    code = "forbidden"
    status_code = 403

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Access denied: {reason}", details={"reason": reason})


class ProcessingInProgress(FileServiceError):
    code = "processing_in_progress"
    status_code = 409


class SweepAlreadyRunning(FileServiceError):
    code = "sweep_already_running"
    status_code = 409


class TransientIO(FileServiceError):
    code = "transient_io"
    status_code = 503


class StorageUnavailable(TransientIO):
    code = "storage_unavailable"


class ScanEngineUnavailable(TransientIO):
    code = "scan_engine_unavailable"


class ScanTimeout(FileServiceError):
    code = "scan_timeout"
    status_code = 504


class TranscodeFailure(FileServiceError):
    code = "transcode_failure"
    status_code = 422
