"""
Vidya Blob Store — S3 / MinIO object storage for video and thumbnail files.

The core never interprets file bytes: it stores a file under a fresh key and
hands back a stable public URL that submissions reference verbatim.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import get_settings
from app.core.errors import DependencyFailure, ValidationError

logger = logging.getLogger(__name__)
settings = get_settings()

VIDEO_EXTENSIONS = {"mp4", "mov", "avi", "webm", "mkv", "m4v"}
IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "gif"}

KIND_FOLDERS = {
    "video": ("videos", VIDEO_EXTENSIONS),
    "thumbnail": ("thumbnails", IMAGE_EXTENSIONS),
    "avatar": ("avatars", IMAGE_EXTENSIONS),
}


@dataclass
class StoredObject:
    key: str
    url: str
    size: int
    content_type: Optional[str] = None


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


class BlobStore:
    """Thin wrapper over a boto3 S3 client pointed at MinIO (or AWS)."""

    def __init__(self, client: Any = None, bucket: Optional[str] = None, public_base_url: Optional[str] = None):
        self._client = client
        self._bucket = bucket or settings.minio_bucket
        scheme = "https" if settings.minio_secure else "http"
        base = public_base_url or settings.media_public_base_url or f"{scheme}://{settings.minio_endpoint}"
        self._public_base = base.rstrip("/")

    @property
    def client(self):
        if self._client is None:
            scheme = "https" if settings.minio_secure else "http"
            self._client = boto3.client(
                "s3",
                endpoint_url=f"{scheme}://{settings.minio_endpoint}",
                aws_access_key_id=settings.minio_access_key,
                aws_secret_access_key=settings.minio_secret_key,
            )
        return self._client

    def public_url(self, key: str) -> str:
        return f"{self._public_base}/{self._bucket}/{key}"

    def build_key(self, kind: str, filename: str, owner_id: uuid.UUID) -> str:
        if kind not in KIND_FOLDERS:
            raise ValidationError(f"Unknown upload kind: {kind!r}")
        folder, allowed = KIND_FOLDERS[kind]
        ext = _extension(filename or "")
        if ext not in allowed:
            raise ValidationError(
                f"Invalid file type for {kind}. Allowed: {', '.join(sorted(allowed))}"
            )
        return f"{folder}/{owner_id}/{uuid.uuid4().hex}.{ext}"

    async def store(
        self,
        kind: str,
        filename: str,
        fileobj: BinaryIO,
        size: int,
        owner_id: uuid.UUID,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        """Upload one file; storage errors surface as DependencyFailure."""
        if size <= 0:
            raise ValidationError("Uploaded file is empty")
        if size > settings.max_upload_bytes:
            raise ValidationError("Uploaded file is too large")
        key = self.build_key(kind, filename, owner_id)

        extra = {"ContentType": content_type} if content_type else {}
        try:
            await asyncio.to_thread(
                self.client.upload_fileobj, fileobj, self._bucket, key, ExtraArgs=extra,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Blob upload failed for {key}: {e}")
            raise DependencyFailure("File storage is unavailable, try again") from e

        logger.info(f"Stored {kind} {key} ({size} bytes)")
        return StoredObject(key=key, url=self.public_url(key), size=size, content_type=content_type)


blob_store = BlobStore()
