"""FastAPI client portal endpoints.

POST /v1/portal/accept-invite                           — public; activate and log in
GET  /v1/portal/dashboard                               — counts and recent activity
POST /v1/portal/requirements                            — raise a requirement
GET  /v1/portal/requirements                            — own requirements
GET  /v1/portal/requirements/{requirement_id}           — detail with thread
POST /v1/portal/requirements/{requirement_id}/comments  — comment
POST /v1/portal/requirements/{requirement_id}/attachments — upload files
GET  /v1/portal/requirements/{requirement_id}/attachments/url — signed link
GET  /v1/portal/tasks                                   — own tasks
POST /v1/portal/tasks/{task_id}/respond                 — approve or request changes
GET  /v1/portal/tasks/{task_id}/attachments/url         — signed link

Every lookup is scoped to the caller's workspace and client id; rows
belonging to another client answer 404.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, File, Response, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_app_settings,
    get_attachment_store,
    get_client_repo,
    get_lifetimes,
    get_permission_resolver,
    get_requirement_repo,
    get_task_repo,
)
from src.api.serializers import (
    comment_payload,
    requirement_attachment_payload,
    serialize_requirement_detail,
    serialize_requirements,
    serialize_tasks,
)
from src.api.uploads import discard_objects, read_uploads
from src.auth.cookies import set_auth_cookies
from src.auth.login import start_session
from src.auth.passwords import MIN_PASSWORD_LENGTH, hash_password
from src.auth.principals import PrincipalHandle
from src.auth.tokens import TokenLifetimes, generate_key_pair, hash_invite_token
from src.config.settings import Settings
from src.db.session import get_async_session
from src.db.tables import RequirementRow, TaskRow
from src.models.common import (
    ClientStatus,
    PrincipalKind,
    RequirementPriority,
    RequirementStatus,
    TaskStatus,
    new_uuid7,
)
from src.models.errors import NotFound, ValidationFailed
from src.models.identity import Identity
from src.rbac.gate import require_client_portal
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import ClientRepository
from src.repositories.requirements import RequirementRepository
from src.repositories.tasks import TaskRepository
from src.storage.attachments import AttachmentStore
from src.workflow.task_machine import TaskWorkflow

router = APIRouter(prefix="/v1/portal", tags=["portal"])

_DECISIONS = (TaskStatus.DONE, TaskStatus.REVISION)


class AcceptClientInviteRequest(BaseModel):
    token: str
    password: str


class CreateRequirementRequest(BaseModel):
    title: str
    description: str = ""
    priority: str | None = None


class CommentRequest(BaseModel):
    message: str


class RespondRequest(BaseModel):
    decision: str
    note: str = ""


async def _own_requirement(requirements: RequirementRepository, requirement_id: UUID,
                           identity: Identity) -> RequirementRow:
    row = await requirements.get_in_workspace(
        requirement_id, identity.workspace_id, client_id=identity.client_id,
    )
    if row is None:
        raise NotFound("Requirement not found")
    return row


async def _own_task(tasks: TaskRepository, task_id: UUID, identity: Identity) -> TaskRow:
    row = await tasks.get_in_workspace(task_id, identity.workspace_id, client_id=identity.client_id)
    if row is None:
        raise NotFound("Task not found")
    return row


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


@router.post("/accept-invite")
async def accept_client_invite(
    body: AcceptClientInviteRequest,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    clients: ClientRepository = Depends(get_client_repo),
    permissions: PermissionResolver = Depends(get_permission_resolver),
    settings: Settings = Depends(get_app_settings),
    lifetimes: TokenLifetimes = Depends(get_lifetimes),
) -> dict:
    if not body.token or not body.password:
        raise ValidationFailed("Token and password are required")
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    client = await clients.get_by_invite_hash(hash_invite_token(body.token))
    if client is None or client.status == ClientStatus.ARCHIVED:
        raise ValidationFailed("Invalid or expired invitation link")

    keys = generate_key_pair()
    client.password_hash = hash_password(body.password)
    client.private_key = keys.private_key
    client.public_key = keys.public_key
    client.status = ClientStatus.ACTIVE
    client.invite_token_hash = None
    client.invite_expires_at = None
    await clients.save(client)

    handle = PrincipalHandle(kind=PrincipalKind.CLIENT, row=client)
    started = await start_session(session, handle, False, permissions, lifetimes)
    set_auth_cookies(
        response, started.tokens, False, secure=not settings.is_development, lifetimes=lifetimes,
    )
    return {"message": "Account set up successfully", "user": started.identity.to_profile()}


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/dashboard")
async def dashboard(
    identity: Identity = Depends(require_client_portal),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    ws, client_id = identity.workspace_id, identity.client_id
    recent_requirements = await requirements.list_for_workspace(
        ws, client_id=client_id, order_by_updated=True, limit=5,
    )
    recent_tasks = await tasks.list_for_workspace(
        ws, client_id=client_id, statuses=[TaskStatus.SENT_TO_CLIENT, TaskStatus.DONE],
        order_by_updated=True, limit=5,
    )
    return {
        "stats": {
            "requirements": {
                "open": await requirements.count(ws, client_id, [RequirementStatus.OPEN]),
                "in_progress": await requirements.count(ws, client_id, [RequirementStatus.IN_PROGRESS]),
                "completed": await requirements.count(
                    ws, client_id, [RequirementStatus.COMPLETED, RequirementStatus.CLOSED],
                ),
            },
            "tasks": {
                "pending_review": await tasks.count(ws, client_id, TaskStatus.SENT_TO_CLIENT),
                "done": await tasks.count(ws, client_id, TaskStatus.DONE),
                "total": await tasks.count(ws, client_id),
            },
        },
        "recent_requirements": [
            {
                "id": str(r.requirement_id), "title": r.title, "status": r.status,
                "priority": r.priority, "updated_at": r.updated_at,
            }
            for r in recent_requirements
        ],
        "recent_tasks": [
            {"id": str(t.task_id), "title": t.title, "status": t.status, "updated_at": t.updated_at}
            for t in recent_tasks
        ],
    }


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


@router.post("/requirements", status_code=201)
async def create_requirement(
    body: CreateRequirementRequest,
    identity: Identity = Depends(require_client_portal),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    title = body.title.strip()
    if not title:
        raise ValidationFailed("Title is required")
    if body.priority and body.priority not in RequirementPriority.__members__:
        allowed = ", ".join(p.value for p in RequirementPriority)
        raise ValidationFailed(f"Priority must be one of: {allowed}")

    row = await requirements.create(
        requirement_id=new_uuid7(), workspace_id=identity.workspace_id,
        client_id=identity.client_id, title=title, description=body.description.strip(),
        priority=body.priority or RequirementPriority.MEDIUM, created_by=identity.principal_id,
    )
    return {
        "message": "Requirement submitted",
        "requirement": (await serialize_requirements(session, [row]))[0],
    }


@router.get("/requirements")
async def list_requirements(
    status: str | None = None,
    identity: Identity = Depends(require_client_portal),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    rows = await requirements.list_for_workspace(
        identity.workspace_id, client_id=identity.client_id,
        status=status if status in RequirementStatus.__members__ else None,
    )
    return {"requirements": await serialize_requirements(session, rows)}


@router.get("/requirements/{requirement_id}")
async def get_requirement(
    requirement_id: UUID,
    identity: Identity = Depends(require_client_portal),
    session: AsyncSession = Depends(get_async_session),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    row = await _own_requirement(requirements, requirement_id, identity)
    return {"requirement": await serialize_requirement_detail(session, row)}


@router.post("/requirements/{requirement_id}/comments", status_code=201)
async def add_comment(
    requirement_id: UUID,
    body: CommentRequest,
    identity: Identity = Depends(require_client_portal),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    message = body.message.strip()
    if not message:
        raise ValidationFailed("Message is required")
    row = await _own_requirement(requirements, requirement_id, identity)
    comment = await requirements.add_comment(
        requirement_id=row.requirement_id, author_id=identity.principal_id,
        author_name=identity.name or "Client", author_kind=PrincipalKind.CLIENT.value,
        message=message,
    )
    return {"message": "Comment added", "comment": comment_payload(comment)}


@router.post("/requirements/{requirement_id}/attachments")
async def upload_requirement_attachments(
    requirement_id: UUID,
    files: list[UploadFile] = File(...),
    identity: Identity = Depends(require_client_portal),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    row = await _own_requirement(requirements, requirement_id, identity)
    incoming = await read_uploads(files)
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
                uploaded_by=identity.principal_id, uploaded_by_name=identity.name or "Client",
                uploaded_by_kind=PrincipalKind.CLIENT.value,
            ))
    except ValidationFailed:
        await discard_objects(store, stored)
        raise
    return {
        "message": f"{len(uploaded)} file(s) uploaded",
        "attachments": [requirement_attachment_payload(a) for a in uploaded],
    }


@router.get("/requirements/{requirement_id}/attachments/url")
async def requirement_attachment_url(
    requirement_id: UUID,
    key: str,
    identity: Identity = Depends(require_client_portal),
    requirements: RequirementRepository = Depends(get_requirement_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    row = await _own_requirement(requirements, requirement_id, identity)
    attachment = await requirements.get_attachment(row.requirement_id, key)
    if attachment is None:
        raise NotFound("Attachment not found")
    return {
        "url": await store.presigned_url(key),
        "name": attachment.name,
        "mime_type": attachment.mime_type,
    }


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(
    status: str | None = None,
    identity: Identity = Depends(require_client_portal),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    rows = await tasks.list_for_workspace(
        identity.workspace_id, client_id=identity.client_id,
        status=status if status in TaskStatus.__members__ else None,
        order_by_updated=True,
    )
    payload = await serialize_tasks(session, rows)
    for item in payload:
        item["can_respond"] = item["status"] == TaskStatus.SENT_TO_CLIENT
    return {"tasks": payload}


@router.post("/tasks/{task_id}/respond")
async def respond_to_task(
    task_id: UUID,
    body: RespondRequest,
    identity: Identity = Depends(require_client_portal),
    session: AsyncSession = Depends(get_async_session),
    tasks: TaskRepository = Depends(get_task_repo),
) -> dict:
    if body.decision not in _DECISIONS:
        raise ValidationFailed("Decision must be DONE or REVISION")
    note = body.note.strip()
    if body.decision == TaskStatus.REVISION and not note:
        raise ValidationFailed("A note is required when requesting changes")

    task = await _own_task(tasks, task_id, identity)
    if task.status != TaskStatus.SENT_TO_CLIENT:
        raise ValidationFailed("This task is not awaiting your review")

    approved = body.decision == TaskStatus.DONE
    if not note:
        note = "Client approved" if approved else "Client requested changes"
    outcome = await TaskWorkflow(session).apply(identity, task_id, body.decision, note)
    return {
        "message": "Task approved" if approved else "Changes requested",
        "task": {
            "id": str(outcome.task.task_id),
            "title": outcome.task.title,
            "status": outcome.task.status,
        },
    }


@router.get("/tasks/{task_id}/attachments/url")
async def task_attachment_url(
    task_id: UUID,
    key: str,
    identity: Identity = Depends(require_client_portal),
    tasks: TaskRepository = Depends(get_task_repo),
    store: AttachmentStore = Depends(get_attachment_store),
) -> dict:
    await _own_task(tasks, task_id, identity)
    attachment = await tasks.get_attachment(task_id, key)
    if attachment is None:
        raise NotFound("Attachment not found")
    return {
        "url": await store.presigned_url(key),
        "name": attachment.name,
        "mime_type": attachment.mime_type,
    }
