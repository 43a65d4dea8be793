"""Object storage for generated and uploaded assets on Google Cloud Storage."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import Protocol

from google.cloud import storage
from google.oauth2 import service_account

from ..config import Settings

logger = logging.getLogger(__name__)

GENERATED_IMAGES_PREFIX = "generated-images"

_segment_pattern = re.compile(r"[^A-Za-z0-9._-]+")


class ObjectStore(Protocol):
    """Put/sign capability used by the image flow and attachment resolution."""

    async def put(self, data: bytes, path: str, content_type: str) -> str:
        ...

    async def signed_url(self, storage_path: str, ttl: timedelta) -> str:
        ...


def image_extension(output_format: str | None) -> str:
    fmt = (output_format or "png").lower().lstrip(".")
    return "jpg" if fmt == "jpeg" else fmt


def make_generated_image_path(session_id: str, output_format: str | None) -> str:
    """Return a unique blob path for a generated image scoped by session."""

    scope = _segment_pattern.sub("_", session_id or "").strip("._-") or "unscoped"
    filename = f"{uuid.uuid4().hex}.{image_extension(output_format)}"
    return str(PurePosixPath(GENERATED_IMAGES_PREFIX) / scope / filename)


def _load_credentials(path: Path | None) -> service_account.Credentials | None:
    if path is None:
        return None
    try:
        resolved_path = Path(path).expanduser().resolve()
        if not resolved_path.exists():
            return None
        return service_account.Credentials.from_service_account_file(str(resolved_path))
    except (FileNotFoundError, OSError) as exc:
        logger.debug("Could not load GCS credentials from %s: %s", path, exc)
        return None


class GCSObjectStore:
    """ObjectStore backed by a single GCS bucket."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None

    def is_available(self) -> bool:
        return _load_credentials(self._settings.google_application_credentials) is not None

    def _get_bucket(self) -> storage.Bucket:
        if self._bucket is None:
            credentials = _load_credentials(
                self._settings.google_application_credentials
            )
            if credentials is None:
                raise RuntimeError(
                    "GCS credentials not found. Please configure "
                    "GOOGLE_APPLICATION_CREDENTIALS with a valid service account JSON file."
                )
            self._client = storage.Client(
                project=self._settings.gcp_project_id,
                credentials=credentials,
            )
            self._bucket = self._client.bucket(self._settings.gcs_bucket_name)
        return self._bucket

    def _upload(self, data: bytes, path: str, content_type: str) -> None:
        blob = self._get_bucket().blob(path)
        # Atomic create: never overwrite an existing object
        blob.upload_from_string(
            data,
            content_type=content_type,
            if_generation_match=0,
        )

    def _sign(self, storage_path: str, ttl: timedelta) -> str:
        blob = self._get_bucket().blob(storage_path)
        return blob.generate_signed_url(
            version="v4",
            expiration=ttl,
            method="GET",
        )

    async def put(self, data: bytes, path: str, content_type: str) -> str:
        await asyncio.to_thread(self._upload, data, path, content_type)
        logger.info("Stored object %s (%s, %d bytes)", path, content_type, len(data))
        return path

    async def signed_url(self, storage_path: str, ttl: timedelta) -> str:
        return await asyncio.to_thread(self._sign, storage_path, ttl)


__all__ = [
    "GCSObjectStore",
    "GENERATED_IMAGES_PREFIX",
    "ObjectStore",
    "image_extension",
    "make_generated_image_path",
]
