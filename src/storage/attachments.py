"""Attachment storage.

Handles file upload to local object storage, MIME and size validation, and
signed, expiring download links. Keys are ``{workspace}/{item}/{uuid}-{name}``
so objects for one task or requirement share a prefix.

Callers only record the returned key and mint links; durability and
placement are the store's concern.
"""

import asyncio
import hashlib
import hmac
import re
import time
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode
from uuid import UUID, uuid4

from src.models.errors import NotFound, ValidationFailed

ALLOWED_MIME_TYPES: frozenset[str] = frozenset({
    "image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml",
    "application/pdf", "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain", "text/csv",
    "application/zip", "application/x-rar-compressed",
    "video/mp4", "video/quicktime", "video/webm",
})

MAX_FILES_PER_REQUEST = 10

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def safe_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)[:100]


class AttachmentStore(Protocol):
    async def upload(self, content: bytes, workspace_id: UUID, item_id: UUID,
                     filename: str, mime_type: str) -> str: ...

    async def delete(self, key: str) -> None: ...

    async def presigned_url(self, key: str, ttl_seconds: int | None = None) -> str: ...


class LocalAttachmentStore:
    """Local filesystem-backed attachment storage.

    Download links point at ``/v1/files/{key}`` and carry an HMAC over the
    key and expiry, so the files route can serve them without a session.
    """

    def __init__(self, storage_root: str, *, secret: str, base_url: str,
                 default_ttl_seconds: int = 3600,
                 max_bytes: int = 50 * 1024 * 1024) -> None:
        self._root = Path(storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._secret = secret.encode()
        self._base_url = base_url.rstrip("/")
        self._default_ttl = default_ttl_seconds
        self._max_bytes = max_bytes

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise NotFound("File not found")
        return path

    def validate(self, content: bytes, mime_type: str) -> None:
        """Raises:
            ValidationFailed: disallowed type, empty, or oversized content.
        """
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationFailed(f'File type "{mime_type}" is not allowed')
        if not content:
            raise ValidationFailed("File must not be empty")
        if len(content) > self._max_bytes:
            raise ValidationFailed(
                f"File exceeds maximum size of {self._max_bytes // (1024 * 1024)} MB"
            )

    async def upload(self, content: bytes, workspace_id: UUID, item_id: UUID,
                     filename: str, mime_type: str) -> str:
        self.validate(content, mime_type)
        key = f"{workspace_id}/{item_id}/{uuid4()}-{safe_filename(filename)}"
        await asyncio.to_thread(self._write, self._path_for(key), content)
        return key

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        if not path.exists():
            raise FileNotFoundError(f"Attachment not found at key: {key}")
        await asyncio.to_thread(path.unlink)

    @staticmethod
    def _write(dest: Path, content: bytes) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)

    def sign(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def presigned_url(self, key: str, ttl_seconds: int | None = None) -> str:
        expires = int(time.time()) + (ttl_seconds or self._default_ttl)
        query = urlencode({"expires": expires, "signature": self.sign(key, expires)})
        return f"{self._base_url}/v1/files/{quote(key)}?{query}"

    def verify(self, key: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self.sign(key, expires), signature)

    def open(self, key: str) -> Path:
        """Path of a stored object.

        Raises:
            NotFound: If the key does not exist.
        """
        path = self._path_for(key)
        if not path.is_file():
            raise NotFound("File not found")
        return path
