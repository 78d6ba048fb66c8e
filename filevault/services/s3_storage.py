from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Iterator, Protocol
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from filevault.core.config import settings
from filevault.core.errors import StorageObjectMissing, StorageUnavailable

_LOG = logging.getLogger("filevault.storage")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_-]")

SCOPE_PREFIXES = ("organizations/", "users/", "files/")


@dataclass(frozen=True)
class PresignedUpload:
    upload_url: str
    download_url: str | None
    expires_at: datetime


@dataclass(frozen=True)
class ObjectHead:
    content_type: str
    size: int
    last_modified: datetime | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ObjectSummary:
    key: str
    size: int
    last_modified: datetime | None


class StorageGateway(Protocol):
    def presign_put(
        self,
        key: str,
        content_type: str,
        size: int,
        metadata: dict[str, str],
        is_public: bool,
        ttl: int,
    ) -> PresignedUpload:
        ...

    def presign_get(self, key: str, ttl: int, response_filename: str | None = None) -> str:
        ...

    def head(self, key: str) -> ObjectHead:
        ...

    def exists(self, key: str) -> bool:
        ...

    def delete(self, key: str) -> None:
        ...

    def copy(self, src_key: str, dst_key: str) -> None:
        ...

    def iter_chunks(self, key: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        ...

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        ...

    def iter_objects(self, prefix: str) -> Iterator[ObjectSummary]:
        ...

    def public_url(self, key: str) -> str:
        ...

    def cdn_url(self, key: str) -> str | None:
        ...


def storage_scope(organization_id=None, user_id=None) -> str:
    if organization_id:
        return f"organizations/{organization_id}"
    if user_id:
        return f"users/{user_id}"
    return "files"


def split_filename(file_name: str) -> tuple[str, str]:
    base = os.path.basename(str(file_name or "").replace("\\", "/"))
    stem, ext = os.path.splitext(base)
    if not stem and ext:
        stem, ext = ext, ""
    return stem, ext.lower()


def sanitize_key_component(value: str) -> str:
    cleaned = _UNSAFE_KEY_CHARS.sub("_", str(value or "").strip())
    return cleaned[:120] or "file"


def build_storage_key(
    *,
    scope: str,
    day: date,
    random_id: str,
    sanitized_base_name: str,
    extension: str,
) -> str:
    return f"{scope.strip('/')}/{day.isoformat()}/{random_id}_{sanitized_base_name}{extension}"


def new_storage_key(file_name: str, *, organization_id=None, user_id=None, now: datetime | None = None) -> str:
    stem, ext = split_filename(file_name)
    moment = now or datetime.now(timezone.utc)
    return build_storage_key(
        scope=storage_scope(organization_id, user_id),
        day=moment.date(),
        random_id=secrets.token_hex(16),
        sanitized_base_name=sanitize_key_component(stem),
        extension=ext,
    )


def build_variant_key(storage_path: str, variant_name: str, extension: str) -> str:
    root, _ = os.path.splitext(str(storage_path or ""))
    ext = extension if extension.startswith(".") else "." + extension
    return f"{root}__{variant_name}{ext}"


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _content_disposition(file_name: str) -> str:
    encoded_name = quote(str(file_name or "file"), safe="")
    return f"attachment; filename*=UTF-8''{encoded_name}"


class S3Storage:
    def __init__(self):
        self.bucket = settings.S3_BUCKET
        self.client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT,
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            region_name=settings.S3_REGION,
            use_ssl=settings.S3_USE_SSL,
        )
        self._bucket_checked = False

    def ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as exc:
            if _error_code(exc) not in {"404", "NoSuchBucket", "NotFound"}:
                raise StorageUnavailable(f"Bucket check failed: {exc}") from exc
            kwargs: dict = {"Bucket": self.bucket}
            if settings.S3_REGION and settings.S3_REGION != "us-east-1":
                kwargs["CreateBucketConfiguration"] = {"LocationConstraint": settings.S3_REGION}
            try:
                self.client.create_bucket(**kwargs)
            except ClientError as create_exc:
                if _error_code(create_exc) not in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                    raise StorageUnavailable(f"Bucket creation failed: {create_exc}") from create_exc
            _LOG.info("created bucket=%s", self.bucket)
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Bucket check failed: {exc}") from exc
        self._bucket_checked = True

    def public_url(self, key: str) -> str:
        base = str(settings.S3_PUBLIC_BASE_URL or "").rstrip("/")
        if base:
            return f"{base}/{key}"
        return f"https://{self.bucket}.s3.{settings.S3_REGION}.amazonaws.com/{key}"

    def cdn_url(self, key: str) -> str | None:
        domain = str(settings.CDN_DOMAIN or "").strip().strip("/")
        if not domain:
            return None
        return f"https://{domain}/{key}"

    def presign_put(
        self,
        key: str,
        content_type: str,
        size: int,
        metadata: dict[str, str],
        is_public: bool,
        ttl: int,
    ) -> PresignedUpload:
        self.ensure_bucket()
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "ContentType": content_type,
            "ContentLength": int(size),
            "Metadata": {str(k): str(v) for k, v in (metadata or {}).items()},
            "CacheControl": "public, max-age=31536000" if is_public else "private, max-age=3600",
        }
        if is_public:
            params["ACL"] = "public-read"
        try:
            url = self.client.generate_presigned_url(
                "put_object",
                Params=params,
                ExpiresIn=int(ttl),
                HttpMethod="PUT",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"Presign failed for {key}: {exc}") from exc
        download_url = None
        if is_public:
            download_url = self.cdn_url(key) or self.public_url(key)
        _LOG.info("presigned upload key=%s ttl=%s public=%s", key, ttl, is_public)
        return PresignedUpload(
            upload_url=url,
            download_url=download_url,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(ttl)),
        )

    def presign_get(self, key: str, ttl: int, response_filename: str | None = None) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if response_filename:
            params["ResponseContentDisposition"] = _content_disposition(response_filename)
        try:
            return self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=int(ttl))
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"Presign failed for {key}: {exc}") from exc

    def head(self, key: str) -> ObjectHead:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise StorageObjectMissing(f"Object not found: {key}") from exc
            raise StorageUnavailable(f"Head failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Head failed for {key}: {exc}") from exc
        return ObjectHead(
            content_type=str(response.get("ContentType") or "application/octet-stream"),
            size=int(response.get("ContentLength") or 0),
            last_modified=response.get("LastModified"),
            metadata=dict(response.get("Metadata") or {}),
        )

    def exists(self, key: str) -> bool:
        try:
            self.head(key)
        except StorageObjectMissing:
            return False
        return True

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"Delete failed for {key}: {exc}") from exc
        _LOG.info("deleted key=%s", key)

    def copy(self, src_key: str, dst_key: str) -> None:
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=dst_key,
                CopySource={"Bucket": self.bucket, "Key": src_key},
            )
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise StorageObjectMissing(f"Object not found: {src_key}") from exc
            raise StorageUnavailable(f"Copy failed {src_key} -> {dst_key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Copy failed {src_key} -> {dst_key}: {exc}") from exc
        _LOG.info("copied src=%s dst=%s", src_key, dst_key)

    def iter_chunks(self, key: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise StorageObjectMissing(f"Object not found: {key}") from exc
            raise StorageUnavailable(f"Get failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Get failed for {key}: {exc}") from exc
        body = obj.get("Body")
        if body is None:
            return
        try:
            for chunk in body.iter_chunks(chunk_size=chunk_size):
                if chunk:
                    yield chunk
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Read failed for {key}: {exc}") from exc
        finally:
            body.close()

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"Put failed for {key}: {exc}") from exc

    def iter_objects(self, prefix: str) -> Iterator[ObjectSummary]:
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents") or []:
                    yield ObjectSummary(
                        key=str(item.get("Key") or ""),
                        size=int(item.get("Size") or 0),
                        last_modified=item.get("LastModified"),
                    )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"Listing failed for prefix {prefix}: {exc}") from exc


@lru_cache(maxsize=1)
def get_s3_storage() -> S3Storage:
    return S3Storage()
