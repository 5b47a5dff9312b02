"""FastAPI client (customer) endpoints.

POST  /v1/clients                           — create client, invite when emailed
GET   /v1/clients                           — list clients
PATCH /v1/clients/{client_id}               — rename / contact / email / status
POST  /v1/clients/{client_id}/resend-invite — fresh portal invite link
GET   /v1/clients/{client_id}/requirements  — requirements raised by the client
"""

from datetime import timedelta
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_app_settings,
    get_client_repo,
    get_email_sender,
    get_requirement_repo,
    get_workspace_repo,
)
from src.auth.tokens import new_invite_token
from src.config.settings import Settings
from src.db.session import get_async_session
from src.db.tables import ClientRow
from src.models.common import ClientStatus, new_uuid7, normalize_email, utc_now
from src.models.errors import Conflict, NotFound, ValidationFailed
from src.models.identity import Identity
from src.notifications.email import EmailSender
from src.rbac.catalog import Permission
from src.rbac.gate import require_all_permissions, require_permission
from src.repositories.principals import ClientRepository, WorkspaceRepository, email_in_use
from src.repositories.requirements import RequirementRepository

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/clients", tags=["clients"])

_view_clients = require_permission(Permission.PAGE_CLIENTS)
_manage_clients = require_all_permissions(Permission.PAGE_CLIENTS, Permission.CLIENT_MANAGE)

_EDITABLE_STATUSES = (ClientStatus.ACTIVE, ClientStatus.ARCHIVED)


class CreateClientRequest(BaseModel):
    name: str
    contact_name: str = ""
    email: str | None = None


class UpdateClientRequest(BaseModel):
    name: str | None = None
    contact_name: str | None = None
    email: str | None = None
    status: str | None = None


def client_payload(row: ClientRow) -> dict:
    return {
        "id": str(row.client_id),
        "name": row.name,
        "contact_name": row.contact_name or "",
        "email": row.email or "",
        "status": row.status,
        "has_portal_access": bool(row.email and row.status == ClientStatus.ACTIVE),
        "created_at": row.created_at,
    }


def client_invite_link(settings: Settings, token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/accept-client-invite?token={token}"


async def _send_client_invite(email_sender: EmailSender, workspaces: WorkspaceRepository,
                              client: ClientRow, link: str) -> bool:
    workspace = await workspaces.get(client.workspace_id)
    sent = await email_sender.send_client_invite(
        to=client.email, workspace_name=workspace.name if workspace else "Your workspace",
        client_name=client.contact_name or client.name, link=link,
    )
    if not sent:
        logger.warning("client_invite_email_failed", client_id=str(client.client_id))
    return sent


@router.post("", status_code=201)
async def create_client(
    body: CreateClientRequest,
    identity: Identity = Depends(_manage_clients),
    session: AsyncSession = Depends(get_async_session),
    clients: ClientRepository = Depends(get_client_repo),
    workspaces: WorkspaceRepository = Depends(get_workspace_repo),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    name = body.name.strip()
    if not name:
        raise ValidationFailed("Client name is required")

    email = None
    if body.email and body.email.strip():
        email = normalize_email(body.email)
        if email is None:
            raise ValidationFailed("Invalid email address")
        if (message := await email_in_use(session, email)) is not None:
            raise Conflict(message)

    token = token_hash = None
    if email is not None:
        token, token_hash = new_invite_token()
    client = await clients.create(
        client_id=new_uuid7(), workspace_id=identity.workspace_id, name=name,
        contact_name=body.contact_name.strip(), email=email,
        status=ClientStatus.INVITED if email else ClientStatus.ACTIVE,
        invite_token_hash=token_hash,
        invite_expires_at=(
            utc_now() + timedelta(hours=settings.CLIENT_INVITE_TTL_HOURS) if email else None
        ),
    )

    sent = False
    payload: dict = {"client": client_payload(client)}
    if token is not None:
        link = client_invite_link(settings, token)
        sent = await _send_client_invite(email_sender, workspaces, client, link)
        payload["message"] = (
            "Client created and invitation sent" if sent
            else "Client created but invitation email failed"
        )
        if settings.is_development or not sent:
            payload["invite_link"] = link
    else:
        payload["message"] = "Client created successfully"
    payload["email_sent"] = sent
    return payload


@router.get("")
async def list_clients(
    status: str | None = None,
    identity: Identity = Depends(_view_clients),
    clients: ClientRepository = Depends(get_client_repo),
) -> dict:
    rows = await clients.list_by_workspace(identity.workspace_id, status=status)
    return {"clients": [client_payload(r) for r in rows], "total": len(rows)}


@router.patch("/{client_id}")
async def update_client(
    client_id: UUID,
    body: UpdateClientRequest,
    identity: Identity = Depends(_manage_clients),
    session: AsyncSession = Depends(get_async_session),
    clients: ClientRepository = Depends(get_client_repo),
) -> dict:
    client = await clients.get_in_workspace(client_id, identity.workspace_id)
    if client is None:
        raise NotFound("Client not found in your workspace")

    if body.name is not None:
        name = body.name.strip()
        if not name:
            raise ValidationFailed("Client name cannot be empty")
        client.name = name
    if body.contact_name is not None:
        client.contact_name = body.contact_name.strip()
    if body.email is not None:
        email = normalize_email(body.email)
        if body.email.strip() and email is None:
            raise ValidationFailed("Invalid email address")
        if email and email != client.email:
            message = await email_in_use(session, email, exclude_client_id=client.client_id)
            if message is not None:
                raise Conflict(message)
            client.email = email
    if body.status is not None:
        if body.status not in _EDITABLE_STATUSES:
            raise ValidationFailed("Status must be ACTIVE or ARCHIVED")
        client.status = body.status

    await clients.save(client)
    verb = "archived" if client.status == ClientStatus.ARCHIVED else "updated"
    return {"message": f"Client {verb} successfully", "client": client_payload(client)}


@router.post("/{client_id}/resend-invite")
async def resend_client_invite(
    client_id: UUID,
    identity: Identity = Depends(_manage_clients),
    clients: ClientRepository = Depends(get_client_repo),
    workspaces: WorkspaceRepository = Depends(get_workspace_repo),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    client = await clients.get_in_workspace(client_id, identity.workspace_id)
    if client is None:
        raise NotFound("Client not found")
    if not client.email:
        raise ValidationFailed("Client has no email address set")
    if client.status == ClientStatus.ARCHIVED:
        raise ValidationFailed("Cannot invite an archived client")
    if client.password_hash:
        raise ValidationFailed("Client already has portal access")

    token, token_hash = new_invite_token()
    client.invite_token_hash = token_hash
    client.invite_expires_at = utc_now() + timedelta(hours=settings.CLIENT_INVITE_TTL_HOURS)
    client.status = ClientStatus.INVITED
    await clients.save(client)

    link = client_invite_link(settings, token)
    sent = await _send_client_invite(email_sender, workspaces, client, link)
    payload = {
        "message": "Invitation resent" if sent else "Invite generated but email failed",
        "email_sent": sent,
    }
    if settings.is_development or not sent:
        payload["invite_link"] = link
    return payload


@router.get("/{client_id}/requirements")
async def list_client_requirements(
    client_id: UUID,
    identity: Identity = Depends(_view_clients),
    clients: ClientRepository = Depends(get_client_repo),
    requirements: RequirementRepository = Depends(get_requirement_repo),
) -> dict:
    if await clients.get_in_workspace(client_id, identity.workspace_id) is None:
        raise NotFound("Client not found")
    rows = await requirements.list_for_workspace(identity.workspace_id, client_id=client_id)
    ids = [r.requirement_id for r in rows]
    links = await requirements.linked_task_ids_for(ids)
    comments = await requirements.comment_counts(ids)
    return {
        "requirements": [
            {
                "id": str(r.requirement_id),
                "title": r.title,
                "description": r.description,
                "priority": r.priority,
                "status": r.status,
                "linked_task_ids": [str(t) for t in links.get(r.requirement_id, [])],
                "comments_count": comments.get(r.requirement_id, 0),
                "created_at": r.created_at,
            }
            for r in rows
        ],
    }
