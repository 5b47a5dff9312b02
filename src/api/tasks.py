"""FastAPI task endpoints.

POST   /v1/tasks                              — create task
GET    /v1/tasks                              — list visible tasks
GET    /v1/tasks/{task_id}                    — task detail
PATCH  /v1/tasks/{task_id}                    — edit title / description / assignees
POST   /v1/tasks/{task_id}/move               — apply a status transition
DELETE /v1/tasks/{task_id}                    — delete task and its attachments
POST   /v1/tasks/{task_id}/attachments        — upload files (multipart)
GET    /v1/tasks/{task_id}/attachments/url    — signed download link
DELETE /v1/tasks/{task_id}/attachments        — remove one attachment

Owners and TASK_VIEW_ALL holders see every task in the workspace; everyone
else sees the tasks they created or are assigned to.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_attachment_store,
    get_client_repo,
    get_member_repo,
    get_requirement_repo,
    get_task_repo,
)
from src.api.serializers import serialize_task, serialize_tasks, task_attachment_payload
from src.api.uploads import discard_objects, read_uploads
from src.auth.principals import resolve_actor_name
from src.db.session import get_async_session
from src.db.tables import TaskRow
from src.models.common import (
    AttachmentContext,
    ClientStatus,
    RequirementStatus,
    TaskStatus,
    new_uuid7,
)
from src.models.errors import Forbidden, NotFound, ValidationFailed
from src.models.identity import Identity
from src.rbac.catalog import Permission
from src.rbac.gate import require_all_permissions, require_permission
from src.repositories.principals import ClientRepository, MemberRepository
from src.repositories.requirements import RequirementRepository
from src.repositories.tasks import TaskRepository
from src.storage.attachments import AttachmentStore
from src.workflow.task_machine import TaskWorkflow, can_view, ensure_editable

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/tasks", tags=["tasks"])

_view_tasks = require_permission(Permission.PAGE_TASKS)
_create_tasks = require_all_permissions(Permission.PAGE_TASKS, Permission.TASK_CREATE)
_edit_tasks = require_all_permissions(Permission.PAGE_TASKS, Permission.TASK_EDIT)
_delete_tasks = require_all_permissions(Permission.PAGE_TASKS, Permission.TASK_DELETE)


class CreateTaskRequest(BaseModel):
    client_id: UUID
    title: str
    description: str = ""
    assigned_to: list[UUID] = []
    requirement_id: UUID | None = None


class UpdateTaskRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    assigned_to: list[UUID] | None = None


class MoveTaskRequest(BaseModel):
    status: str
    note: str = ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _valid_assignees(members: MemberRepository, requested: list[UUID],
                           workspace_id: UUID) -> list[UUID]:
    """Keep workspace members and the owner, in request order."""
    allowed = set(await members.filter_ids_in_workspace(requested, workspace_id))
    allowed.add(workspace_id)
    return [p for p in dict.fromkeys(requested) if p in allowed]


async def _task_in_workspace(tasks: TaskRepository, task_id: UUID,
                             identity: Identity) -> TaskRow:
    task = await tasks.get_in_workspace(task_id, identity.workspace_id)
    if task is None:
        raise NotFound("Task not found")
    return task


async def _visible_task(tasks: TaskRepository, task_id: UUID, identity: Identity) -> TaskRow:
    """Raises:
        NotFound: missing or in another workspace.
        Forbidden: exists but the caller may not see it.
    """
    task = await _task_in_workspace(tasks, task_id, identity)
    if not can_view(identity, task, await tasks.assignees(task_id)):
        raise Forbidden("Access denied")
    return task


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_task(
    body: CreateTaskRequest,
    identity: Identity = Depends(_create_tasks),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
    clients: ClientRepository = Depends(get_client_repo),
    members: MemberRepository = Depends(get_member_repo),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    title = body.title.strip()
    if not title:
        raise ValidationFailed("Title is required")
    client = await clients.get_in_workspace(body.client_id, identity.workspace_id)
    if client is None or client.status not in (ClientStatus.ACTIVE, ClientStatus.INVITED):
        raise NotFound("Active client not found in your workspace")

    task = await tasks.create(
        task_id=new_uuid7(), workspace_id=identity.workspace_id, client_id=client.client_id,
        title=title, description=body.description.strip(), created_by=identity.principal_id,
        assignees=await _valid_assignees(members, body.assigned_to, identity.workspace_id),
    )

    if body.requirement_id is not None:
        requirement = await requirements.get_in_workspace(
            body.requirement_id, identity.workspace_id, client_id=client.client_id,
        )
        if requirement is not None:
            await requirements.link_task(requirement.requirement_id, task.task_id)
            if requirement.status == RequirementStatus.OPEN:
                await requirements.set_status(requirement, RequirementStatus.IN_PROGRESS)
        else:
            logger.info(
                "task_requirement_link_skipped",
                task_id=str(task.task_id), requirement_id=str(body.requirement_id),
            )

    return {"message": "Task created", "task": await serialize_task(session, task)}


@router.get("")
async def list_tasks(
    client_id: UUID | None = None,
    status: str | None = None,
    identity: Identity = Depends(_view_tasks),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    rows = await tasks.list_for_workspace(
        identity.workspace_id,
        client_id=client_id,
        status=status if status in TaskStatus.__members__ else None,
        visible_to=None if identity.has(Permission.TASK_VIEW_ALL) else identity.principal_id,
    )
    payload = await serialize_tasks(session, rows)
    return {"tasks": payload, "total": len(payload)}


@router.get("/{task_id}")
async def get_task(
    task_id: UUID,
    identity: Identity = Depends(_view_tasks),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    task = await _visible_task(tasks, task_id, identity)
    return {"task": await serialize_task(session, task)}


@router.patch("/{task_id}")
async def update_task(
    task_id: UUID,
    body: UpdateTaskRequest,
    identity: Identity = Depends(_edit_tasks),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
    members: MemberRepository = Depends(get_member_repo),
) -> dict:
    task = await _task_in_workspace(tasks, task_id, identity)
    ensure_editable(task)

    title = None
    if body.title is not None:
        title = body.title.strip()
        if not title:
            raise ValidationFailed("Title cannot be empty")
    description = body.description.strip() if body.description is not None else None
    await tasks.update_fields(task, title=title, description=description)
    if body.assigned_to is not None:
        await tasks.set_assignees(
            task_id, await _valid_assignees(members, body.assigned_to, identity.workspace_id),
        )
    return {"message": "Task updated", "task": await serialize_task(session, task)}


@router.post("/{task_id}/move")
async def move_task(
    task_id: UUID,
    body: MoveTaskRequest,
    identity: Identity = Depends(_view_tasks),
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    outcome = await TaskWorkflow(session).apply(identity, task_id, body.status, body.note)
    return {
        "message": f"Task moved to {outcome.task.status}",
        "task": await serialize_task(session, outcome.task),
    }


@router.delete("/{task_id}")
async def delete_task(
    task_id: UUID,
    identity: Identity = Depends(_delete_tasks),
    tasks: TaskRepository = Depends(get_task_repo),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    task = await _task_in_workspace(tasks, task_id, identity)
    keys = [a.key for a in await tasks.attachments(task_id)]
    await requirements.unlink_task_everywhere(task_id)
    await tasks.delete(task)
    await discard_objects(store, keys)
    return {"message": "Task deleted"}


@router.post("/{task_id}/attachments")
async def upload_task_attachments(
    task_id: UUID,
    files: list[UploadFile] = File(...),
    context: str = Form(AttachmentContext.REFERENCE.value),
    identity: Identity = Depends(_view_tasks),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    task = await _visible_task(tasks, task_id, identity)
    ensure_editable(task, "Cannot add attachments to a completed task")
    incoming = await read_uploads(files)
    if context not in {c.value for c in AttachmentContext}:
        context = AttachmentContext.REFERENCE.value

    uploader_name = identity.name or await resolve_actor_name(session, identity.principal_id)
    stored: list[str] = []
    uploaded = []
    try:
        for item in incoming:
            key = await store.upload(
                item.content, identity.workspace_id, task_id, item.filename, item.mime_type,
            )
            stored.append(key)
            uploaded.append(await tasks.add_attachment(
                task_id=task_id, key=key, name=item.filename, size=item.size,
                mime_type=item.mime_type, uploaded_by=identity.principal_id,
                uploaded_by_name=uploader_name, context=context,
            ))
    except ValidationFailed:
        await discard_objects(store, stored)
        raise
    return {
        "message": f"{len(uploaded)} file(s) uploaded",
        "attachments": [task_attachment_payload(a) for a in uploaded],
    }


@router.get("/{task_id}/attachments/url")
async def task_attachment_url(
    task_id: UUID,
    key: str,
    identity: Identity = Depends(_view_tasks),
    tasks: TaskRepository = Depends(get_task_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    await _visible_task(tasks, task_id, identity)
    attachment = await tasks.get_attachment(task_id, key)
    if attachment is None:
        raise NotFound("Attachment not found")
    return {
        "url": await store.presigned_url(key),
        "name": attachment.name,
        "mime_type": attachment.mime_type,
    }


@router.delete("/{task_id}/attachments")
async def delete_task_attachment(
    task_id: UUID,
    key: str,
    identity: Identity = Depends(_edit_tasks),
    tasks: TaskRepository = Depends(get_task_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    task = await _task_in_workspace(tasks, task_id, identity)
    ensure_editable(task, "Cannot modify attachments on a completed task")
    attachment = await tasks.get_attachment(task_id, key)
    if attachment is None:
        raise NotFound("Attachment not found")
    await tasks.remove_attachment(attachment)
    await discard_objects(store, [key])
    return {"message": "Attachment deleted"}
