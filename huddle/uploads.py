"""Image uploads stored in local filesystem buckets."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import BinaryIO

from .config import settings

logger = logging.getLogger("uvicorn.error")

PROFILE_PICTURES = "profile-pictures"
PROJECT_IMAGES = "project-images"
BUCKETS = (PROFILE_PICTURES, PROJECT_IMAGES)

# Raster formats only: SVG can carry script and is served from our origin.
ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class UploadError(ValueError):
    """Raised when an upload is rejected before anything is written."""


class UploadTooLarge(UploadError):
    pass


def max_bytes_for(bucket: str) -> int:
    if bucket == PROFILE_PICTURES:
        return settings.profile_picture_max_bytes
    return settings.image_max_bytes


def storage_root() -> Path:
    return Path(settings.storage_dir)


def _extension(content_type: str) -> str:
    return ALLOWED_MIME_TYPES[content_type.lower()]


def _too_large(limit: int) -> UploadTooLarge:
    return UploadTooLarge(f"Image must be smaller than {limit // (1024 * 1024)}MB")


def read_limited(stream: BinaryIO, bucket: str) -> bytes:
    """Read an upload body, never buffering more than one byte past the limit."""
    limit = max_bytes_for(bucket)
    data = stream.read(limit + 1)
    if len(data) > limit:
        raise _too_large(limit)
    return data


def validate_upload(bucket: str, *, content_type: str | None, size: int) -> None:
    if bucket not in BUCKETS:
        raise UploadError(f"Unknown bucket {bucket!r}")
    if (content_type or "").lower() not in ALLOWED_MIME_TYPES:
        raise UploadError("Please upload a JPEG, PNG, GIF or WebP image")
    if size <= 0:
        raise UploadError("The uploaded file is empty")
    limit = max_bytes_for(bucket)
    if size > limit:
        raise _too_large(limit)


def public_url(bucket: str, name: str) -> str:
    base = (settings.public_base_url or "").rstrip("/")
    return f"{base}/storage/{bucket}/{name}"


def save_upload(
    bucket: str,
    *,
    owner_id: str,
    data: bytes,
    content_type: str | None,
) -> str:
    """Validate and store an image; return its public URL."""
    validate_upload(bucket, content_type=content_type, size=len(data))
    extension = _extension(content_type or "")
    name = f"{owner_id}-{uuid.uuid4().hex[:16]}{extension}"
    target_dir = storage_root() / bucket
    target_dir.mkdir(parents=True, exist_ok=True)
    (target_dir / name).write_bytes(data)
    logger.info("Stored %d byte upload in %s/%s", len(data), bucket, name)
    return public_url(bucket, name)
