"""Multipart upload helpers shared by the task, requirement and portal routers."""

from dataclasses import dataclass

import structlog
from fastapi import UploadFile

from src.models.errors import NotFound, ValidationFailed
from src.storage.attachments import MAX_FILES_PER_REQUEST, AttachmentStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IncomingFile:
    content: bytes
    filename: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content)


async def read_uploads(files: list[UploadFile]) -> list[IncomingFile]:
    """Raises:
        ValidationFailed: no files, or more than one request may carry.
    """
    if not files:
        raise ValidationFailed("No files provided")
    if len(files) > MAX_FILES_PER_REQUEST:
        raise ValidationFailed(f"At most {MAX_FILES_PER_REQUEST} files per upload")
    incoming = []
    for upload in files:
        incoming.append(IncomingFile(
            content=await upload.read(),
            filename=upload.filename or "file",
            mime_type=upload.content_type or "application/octet-stream",
        ))
    return incoming


async def discard_objects(store: AttachmentStore, keys: list[str]) -> None:
    """Best-effort removal of stored objects; failures are logged only."""
    for key in keys:
        try:
            await store.delete(key)
        except (OSError, NotFound):
            logger.warning("attachment_cleanup_failed", key=key, exc_info=True)
