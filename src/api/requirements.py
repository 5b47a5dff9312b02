"""FastAPI requirement endpoints for workspace staff.

GET    /v1/requirements                                 — list with filters
GET    /v1/requirements/{requirement_id}                — detail with thread
POST   /v1/requirements/{requirement_id}/comments       — add comment
POST   /v1/requirements/{requirement_id}/status         — manual status change
POST   /v1/requirements/{requirement_id}/tasks          — link an existing task
POST   /v1/requirements/{requirement_id}/attachments    — upload files
GET    /v1/requirements/{requirement_id}/attachments/url — signed download link
DELETE /v1/requirements/{requirement_id}/attachments    — remove one attachment

All routes require PAGE_CLIENTS.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_attachment_store, get_requirement_repo, get_task_repo
from src.api.serializers import (
    comment_payload,
    requirement_attachment_payload,
    serialize_requirement_detail,
    serialize_requirements,
)
from src.api.uploads import discard_objects, read_uploads
from src.auth.principals import resolve_actor_name
from src.db.session import get_async_session
from src.db.tables import RequirementRow
from src.models.common import RequirementPriority, RequirementStatus
from src.models.errors import NotFound, ValidationFailed
from src.models.identity import Identity
from src.rbac.catalog import Permission
from src.rbac.gate import require_permission
from src.repositories.requirements import RequirementRepository
from src.repositories.tasks import TaskRepository
from src.storage.attachments import AttachmentStore
from src.workflow.requirement_sync import RequirementSyncEngine, derive_requirement_status

router = APIRouter(prefix="/v1/requirements", tags=["requirements"])

_view_clients = require_permission(Permission.PAGE_CLIENTS)
_MANUAL_STATUSES = (RequirementStatus.OPEN, RequirementStatus.CLOSED)


class CommentRequest(BaseModel):
    message: str


class StatusRequest(BaseModel):
    status: str


class LinkTaskRequest(BaseModel):
    task_id: UUID


async def _requirement(requirements: RequirementRepository, requirement_id: UUID,
                       identity: Identity) -> RequirementRow:
    row = await requirements.get_in_workspace(requirement_id, identity.workspace_id)
    if row is None:
        raise NotFound("Requirement not found")
    return row


@router.get("")
async def list_requirements(
    client_id: UUID | None = None,
    status: str | None = None,
    priority: str | None = None,
    identity: Identity = Depends(_view_clients),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    rows = await requirements.list_for_workspace(
        identity.workspace_id,
        client_id=client_id,
        status=status if status in RequirementStatus.__members__ else None,
        priority=priority if priority in RequirementPriority.__members__ else None,
    )
    payload = await serialize_requirements(session, rows)
    return {"requirements": payload, "total": len(payload)}


@router.get("/{requirement_id}")
async def get_requirement(
    requirement_id: UUID,
    identity: Identity = Depends(_view_clients),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    row = await _requirement(requirements, requirement_id, identity)
    return {"requirement": await serialize_requirement_detail(session, row)}


@router.post("/{requirement_id}/comments", status_code=201)
async def add_comment(
    requirement_id: UUID,
    body: CommentRequest,
    identity: Identity = Depends(_view_clients),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    message = body.message.strip()
    if not message:
        raise ValidationFailed("Message is required")
    row = await _requirement(requirements, requirement_id, identity)
    comment = await requirements.add_comment(
        requirement_id=row.requirement_id, author_id=identity.principal_id,
        author_name=identity.name or await resolve_actor_name(session, identity.principal_id),
        author_kind=identity.kind.value, message=message,
    )
    return {"message": "Comment added", "comment": comment_payload(comment)}


@router.post("/{requirement_id}/status")
async def update_requirement_status(
    requirement_id: UUID,
    body: StatusRequest,
    identity: Identity = Depends(_view_clients),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    """Close a requirement, or reopen a closed one.

    COMPLETED and IN_PROGRESS are derived from linked tasks only. Reopening
    re-derives straight away so the status reflects the tasks again.
    """
    if body.status not in _MANUAL_STATUSES:
        allowed = ", ".join(s.value for s in _MANUAL_STATUSES)
        raise ValidationFailed(
            f"Status must be one of: {allowed}. Other statuses follow the linked tasks"
        )
    row = await _requirement(requirements, requirement_id, identity)
    old_status = row.status
    if body.status == RequirementStatus.OPEN:
        if old_status != RequirementStatus.CLOSED:
            raise ValidationFailed("Only a closed requirement can be reopened")
        await requirements.set_status(row, RequirementStatus.OPEN)
        statuses = await tasks.statuses(await requirements.linked_task_ids(row.requirement_id))
        derived = derive_requirement_status(row.status, list(statuses.values()))
        if derived is not None:
            await requirements.set_status(row, derived)
    else:
        await requirements.set_status(row, RequirementStatus.CLOSED)
    return {
        "message": f"Requirement status changed from {old_status} to {row.status}",
        "status": row.status,
    }


@router.post("/{requirement_id}/tasks")
async def link_task(
    requirement_id: UUID,
    body: LinkTaskRequest,
    identity: Identity = Depends(_view_clients),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    row = await _requirement(requirements, requirement_id, identity)
    task = await tasks.get_in_workspace(body.task_id, identity.workspace_id, client_id=row.client_id)
    if task is None:
        raise NotFound("Task not found")
    await requirements.link_task(row.requirement_id, task.task_id)
    await RequirementSyncEngine(session).sync(task.task_id)
    row = await requirements.get_fresh(row.requirement_id)
    return {
        "message": "Task linked",
        "requirement": await serialize_requirement_detail(session, row),
    }


@router.post("/{requirement_id}/attachments")
async def upload_requirement_attachments(
    requirement_id: UUID,
    files: list[UploadFile] = File(...),
    identity: Identity = Depends(_view_clients),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    row = await _requirement(requirements, requirement_id, identity)
    incoming = await read_uploads(files)
    uploader_name = identity.name or await resolve_actor_name(session, identity.principal_id)
    stored: list[str] = []
    uploaded = []
    try:
        for item in incoming:
            key = await store.upload(
                item.content, identity.workspace_id, row.requirement_id,
                item.filename, item.mime_type,
            )
            stored.append(key)
            uploaded.append(await requirements.add_attachment(
                requirement_id=row.requirement_id, key=key, name=item.filename,
                size=item.size, mime_type=item.mime_type,
                uploaded_by=identity.principal_id, uploaded_by_name=uploader_name,
                uploaded_by_kind=identity.kind.value,
            ))
    except ValidationFailed:
        await discard_objects(store, stored)
        raise
    return {
        "message": f"{len(uploaded)} file(s) uploaded",
        "attachments": [requirement_attachment_payload(a) for a in uploaded],
    }


@router.get("/{requirement_id}/attachments/url")
async def requirement_attachment_url(
    requirement_id: UUID,
    key: str,
    identity: Identity = Depends(_view_clients),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    row = await _requirement(requirements, requirement_id, identity)
    attachment = await requirements.get_attachment(row.requirement_id, key)
    if attachment is None:
        raise NotFound("Attachment not found")
    return {
        "url": await store.presigned_url(key),
        "name": attachment.name,
        "mime_type": attachment.mime_type,
    }


@router.delete("/{requirement_id}/attachments")
async def delete_requirement_attachment(
    requirement_id: UUID,
    key: str,
    identity: Identity = Depends(_view_clients),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    row = await _requirement(requirements, requirement_id, identity)
    attachment = await requirements.get_attachment(row.requirement_id, key)
    if attachment is None:
        raise NotFound("Attachment not found")
    await requirements.remove_attachment(attachment)
    await discard_objects(store, [key])
    return {"message": "Attachment deleted"}
