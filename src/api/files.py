"""Signed attachment downloads.

GET /v1/files/{key} — serve a stored object when the link's signature and
expiry check out. No session required: the link itself is the credential.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse

from src.models.errors import Forbidden
from src.storage.attachments import LocalAttachmentStore

router = APIRouter(prefix="/v1/files", tags=["files"])


def get_local_store(request: Request) -> LocalAttachmentStore:
    return request.app.state.attachment_store


@router.get("/{key:path}")
async def download_file(
    key: str,
    expires: int,
    signature: str,
    store: LocalAttachmentStore = Depends(get_local_store),
) -> FileResponse:
    if not store.verify(key, expires, signature):
        raise Forbidden("Download link is invalid or has expired")
    path = store.open(key)
    return FileResponse(path, filename=path.name.split("-", 5)[-1])
