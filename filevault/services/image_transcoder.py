from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from filevault.core.config import settings
from filevault.core.errors import TranscodeFailure

_LOG = logging.getLogger("filevault.images")

TRANSCODABLE_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/tiff",
    "image/bmp",
    "image/avif",
}

FIT_COVER = "cover"
FIT_INSIDE = "inside"

_PIL_FORMATS = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
    "gif": "GIF",
    "tiff": "TIFF",
    "bmp": "BMP",
}

FORMAT_MIME_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "avif": "image/avif",
    "gif": "image/gif",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
}


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str
    has_alpha: bool
    color_space: str


@dataclass(frozen=True)
class ThumbnailProfile:
    name: str
    width: int
    height: int
    fit: str
    quality: int


_PROFILE_NAMES = ("thumbnail", "small", "medium", "large")
_PROFILE_QUALITY = (80, 85, 85, 90)


def thumbnail_profiles(sizes: list[int] | None = None) -> list[ThumbnailProfile]:
    profiles = []
    for index, size in enumerate(sizes if sizes is not None else settings.thumbnail_sizes):
        name = _PROFILE_NAMES[index] if index < len(_PROFILE_NAMES) else f"size_{size}"
        quality = _PROFILE_QUALITY[min(index, len(_PROFILE_QUALITY) - 1)]
        fit = FIT_COVER if index == 0 else FIT_INSIDE
        profiles.append(ThumbnailProfile(name=name, width=int(size), height=int(size), fit=fit, quality=quality))
    return profiles


def can_transcode(mime_type: str) -> bool:
    return str(mime_type or "").strip().lower() in TRANSCODABLE_MIME_TYPES


def normalize_format(value: str | None) -> str:
    normalized = str(value or "").strip().lower()
    if normalized.startswith("image/"):
        normalized = normalized[len("image/"):]
    if normalized == "jpg":
        normalized = "jpeg"
    return normalized


class ImageTranscoder(Protocol):
    def metadata(self, data: bytes) -> ImageInfo:
        ...

    def optimize(
        self,
        data: bytes,
        *,
        max_width: int | None = None,
        max_height: int | None = None,
        quality: int | None = None,
        format: str | None = None,
    ) -> tuple[bytes, str]:
        ...

    def thumbnail(self, data: bytes, *, width: int, height: int, fit: str, quality: int) -> bytes:
        ...

    def convert(self, data: bytes, target_format: str, quality: int | None = None) -> bytes:
        ...


def _flatten(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


class PillowImageTranscoder:
    def __init__(self, max_bytes: int | None = None, default_quality: int | None = None):
        self.max_bytes = int(max_bytes or max(1, int(settings.MAX_IMAGE_MB)) * 1024 * 1024)
        self.default_quality = int(default_quality or settings.IMAGE_DEFAULT_QUALITY or 85)

    def _open(self, data: bytes) -> Image.Image:
        if not data:
            raise TranscodeFailure("Empty image buffer")
        if len(data) > self.max_bytes:
            raise TranscodeFailure(f"Image exceeds {self.max_bytes} bytes")
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise TranscodeFailure(f"Cannot decode image: {exc}") from exc
        try:
            return ImageOps.exif_transpose(img)
        except (OSError, ValueError) as exc:
            raise TranscodeFailure(f"Cannot orient image: {exc}") from exc

    def _encode(self, img: Image.Image, fmt: str, quality: int) -> bytes:
        out = io.BytesIO()
        try:
            if fmt == "jpeg":
                _flatten(img).save(out, "JPEG", quality=quality, progressive=True, optimize=True)
            elif fmt == "png":
                img.save(out, "PNG", optimize=True, compress_level=9)
            elif fmt == "webp":
                img.save(out, "WEBP", quality=quality, method=6)
            elif fmt == "avif":
                img.save(out, "AVIF", quality=quality, speed=6)
            elif fmt in _PIL_FORMATS:
                img.save(out, _PIL_FORMATS[fmt])
            else:
                raise TranscodeFailure(f"Unsupported target format: {fmt or '-'}")
        except (KeyError, OSError, ValueError) as exc:
            raise TranscodeFailure(f"Cannot encode {fmt}: {exc}") from exc
        return out.getvalue()

    def metadata(self, data: bytes) -> ImageInfo:
        img = self._open(data)
        bands = img.getbands()
        return ImageInfo(
            width=int(img.width),
            height=int(img.height),
            format=normalize_format(Image.open(io.BytesIO(data)).format),
            has_alpha="A" in bands or (img.mode == "P" and "transparency" in img.info),
            color_space=str(img.mode),
        )

    def optimize(
        self,
        data: bytes,
        *,
        max_width: int | None = None,
        max_height: int | None = None,
        quality: int | None = None,
        format: str | None = None,
    ) -> tuple[bytes, str]:
        img = self._open(data)
        source_format = normalize_format(format) or normalize_format(Image.open(io.BytesIO(data)).format)
        target = source_format if source_format in ("jpeg", "png", "webp", "avif") else "jpeg"
        if max_width or max_height:
            try:
                img.thumbnail((int(max_width or img.width), int(max_height or img.height)), Image.LANCZOS)
            except (OSError, ValueError) as exc:
                raise TranscodeFailure(f"Cannot resize image: {exc}") from exc
        encoded = self._encode(img, target, int(quality or self.default_quality))
        _LOG.debug("optimized image source=%s target=%s in=%s out=%s", source_format, target, len(data), len(encoded))
        return encoded, target

    def thumbnail(self, data: bytes, *, width: int, height: int, fit: str, quality: int) -> bytes:
        img = self._open(data)
        if fit not in (FIT_COVER, FIT_INSIDE):
            raise TranscodeFailure(f"Unsupported fit: {fit}")
        try:
            if fit == FIT_COVER:
                # Never upscale: shrink the crop box to the source when it is smaller.
                box = (min(int(width), img.width), min(int(height), img.height))
                resized = ImageOps.fit(img, box, Image.LANCZOS)
            else:
                resized = img.copy()
                resized.thumbnail((int(width), int(height)), Image.LANCZOS)
        except (OSError, ValueError) as exc:
            raise TranscodeFailure(f"Cannot resize image to {width}x{height}: {exc}") from exc
        return self._encode(resized, "jpeg", int(quality))

    def convert(self, data: bytes, target_format: str, quality: int | None = None) -> bytes:
        img = self._open(data)
        return self._encode(img, normalize_format(target_format), int(quality or self.default_quality))


@lru_cache(maxsize=1)
def get_image_transcoder() -> ImageTranscoder:
    return PillowImageTranscoder()


def supported_formats() -> list[str]:
    Image.init()
    return sorted(name for name, pil_name in _PIL_FORMATS.items() if name != "jpg" and pil_name in Image.SAVE)


def transcoder_health() -> dict[str, Any]:
    formats = supported_formats()
    issues: list[str] = []
    sample = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 40, 40)).save(sample, "PNG")
    try:
        info = get_image_transcoder().metadata(sample.getvalue())
        decodes = (info.width, info.height) == (8, 8)
    except TranscodeFailure as exc:
        decodes = False
        issues.append(f"test decode failed: {exc.message}")
    for required in ("jpeg", "png"):
        if required not in formats:
            issues.append(f"Pillow build cannot write {required}")
    if not settings.IMAGE_PROCESSING_ENABLED:
        status = "disabled"
    elif decodes and not issues:
        status = "ok"
    else:
        status = "degraded"
    return {
        "component": "image_transcoder",
        "status": status,
        "enabled": bool(settings.IMAGE_PROCESSING_ENABLED),
        "supported_formats": formats,
        "checks": {"test_decode": decodes},
        "issues": issues,
    }
