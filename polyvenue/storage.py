"""Blob storage for manuscript files.

Files are addressed by the URL returned from ``store``; the engine never
inspects their contents beyond hashing and the extension/size policy.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os

from polyvenue.config import settings
from polyvenue.duplicate_detector import fingerprint
from polyvenue.errors import UpstreamError, ValidationFailure

logger = logging.getLogger("polyvenue.storage")

LOCAL_URL_PREFIX = "/files/"


@dataclass(slots=True, frozen=True)
class UploadedFile:
    """An in-memory upload as received from the transport layer."""

    filename: str
    data: bytes

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower()

    @property
    def size(self) -> int:
        return len(self.data)


class BlobStorage(Protocol):
    async def store(self, upload: UploadedFile) -> str: ...

    def fingerprint(self, data: bytes) -> str: ...

    async def exists(self, url: str) -> bool: ...

    async def delete(self, url: str) -> None: ...


class LocalBlobStorage:
    """Stores blobs as ``<uuid><ext>`` under the configured uploads directory."""

    def __init__(self, root: Path | None = None):
        self.root = Path(root) if root is not None else settings.uploads_path
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for_key(self, key: str) -> Path:
        """Resolve a storage key with path traversal protection."""
        if not key or ".." in key or key.startswith("/") or key.startswith("\\"):
            raise ValueError(f"Invalid storage key: {key}")
        path = (self.root / key).resolve()
        if not str(path).startswith(str(self.root.resolve())):
            raise ValueError(f"Path traversal attempt detected: {key}")
        return path

    def _key_for_url(self, url: str) -> str:
        if not url.startswith(LOCAL_URL_PREFIX):
            raise ValueError(f"Not a local blob url: {url}")
        return url[len(LOCAL_URL_PREFIX):]

    def fingerprint(self, data: bytes) -> str:
        return fingerprint(data)

    async def store(self, upload: UploadedFile) -> str:
        key = f"{uuid.uuid4()}{upload.extension}"
        path = self._path_for_key(key)
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(upload.data)
        except OSError as exc:
            logger.error("Blob write failed for %s: %s", key, exc)
            raise UpstreamError("File storage unavailable", {"filename": upload.filename}) from exc
        logger.info("Stored blob %s (%d bytes)", key, upload.size)
        return f"{LOCAL_URL_PREFIX}{key}"

    async def exists(self, url: str) -> bool:
        try:
            path = self._path_for_key(self._key_for_url(url))
        except ValueError:
            return False
        return await aiofiles.os.path.exists(path)

    async def delete(self, url: str) -> None:
        path = self._path_for_key(self._key_for_url(url))
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)

    def path_for_url(self, url: str) -> Path:
        """Filesystem path for a stored blob (used when serving downloads)."""
        return self._path_for_key(self._key_for_url(url))


def check_upload_policy(
    upload: UploadedFile,
    allowed_extensions: list[str],
    field: str = "file",
) -> None:
    """Validate extension, emptiness, and size of an upload."""
    allowed = {ext.lower() for ext in allowed_extensions}
    if upload.extension not in allowed:
        raise ValidationFailure.for_field(
            field,
            f"File type {upload.extension or '(none)'} not allowed; expected one of {sorted(allowed)}",
        )
    if upload.size == 0:
        raise ValidationFailure.for_field(field, "File is empty")
    limit = settings.policy.max_upload_bytes
    if upload.size > limit:
        raise ValidationFailure.for_field(field, f"File exceeds the {limit // (1024 * 1024)} MiB limit")
