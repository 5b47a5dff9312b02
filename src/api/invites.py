"""FastAPI team invite endpoints.

POST /v1/invites                     — invite a member by email
GET  /v1/invites                     — list invites
POST /v1/invites/{invite_id}/revoke  — revoke a pending invite
POST /v1/invites/{invite_id}/resend  — fresh link for a pending invite
POST /v1/invites/accept              — public; create the member and log in
"""

from datetime import timedelta
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_app_settings,
    get_email_sender,
    get_invite_repo,
    get_lifetimes,
    get_member_repo,
    get_permission_resolver,
    get_role_repo,
    get_workspace_repo,
)
from src.auth.cookies import set_auth_cookies
from src.auth.login import start_session
from src.auth.passwords import MIN_PASSWORD_LENGTH, hash_password
from src.auth.principals import PrincipalHandle
from src.auth.tokens import TokenLifetimes, generate_key_pair, hash_invite_token, new_invite_token
from src.config.settings import Settings
from src.db.session import get_async_session
from src.db.tables import InviteRow
from src.models.common import InviteStatus, PrincipalKind, as_utc, new_uuid7, normalize_email, utc_now
from src.models.errors import Conflict, Forbidden, NotFound, ValidationFailed
from src.models.identity import Identity
from src.notifications.email import EmailSender
from src.rbac.catalog import OWNER_ROLE, Permission
from src.rbac.gate import require_permission
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import (
    InviteRepository,
    MemberRepository,
    WorkspaceRepository,
    email_in_use,
)
from src.repositories.roles import RoleRepository

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/invites", tags=["invites"])

_can_invite = require_permission(Permission.USER_INVITE)


class CreateInviteRequest(BaseModel):
    email: str
    role_id: UUID | None = None


class AcceptInviteRequest(BaseModel):
    token: str
    name: str
    password: str


def _invite_payload(row: InviteRow) -> dict:
    return {
        "id": str(row.invite_id),
        "email": row.email,
        "role_id": str(row.role_id) if row.role_id else None,
        "status": row.status,
        "expires_at": row.expires_at,
        "created_at": row.created_at,
        "expired": as_utc(row.expires_at) < utc_now(),
    }


def _invite_link(settings: Settings, token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/accept-invite?token={token}"


@router.post("", status_code=201)
async def create_invite(
    body: CreateInviteRequest,
    identity: Identity = Depends(_can_invite),
    workspaces: WorkspaceRepository = Depends(get_workspace_repo),
    members: MemberRepository = Depends(get_member_repo),
    invites: InviteRepository = Depends(get_invite_repo),
    roles: RoleRepository = Depends(get_role_repo),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    email = normalize_email(body.email)
    if email is None:
        raise ValidationFailed("Email is required")

    workspace = await workspaces.get(identity.workspace_id)
    if workspace is None:
        raise NotFound("Workspace not found")
    if workspace.email == email:
        raise Conflict("This email is already the workspace owner")
    existing = await members.get_by_email(email)
    if existing is not None and existing.workspace_id == identity.workspace_id:
        raise Conflict("This email is already a member of your workspace")
    if await invites.get_pending(identity.workspace_id, email) is not None:
        raise Conflict("An invite has already been sent to this email")

    if body.role_id is not None:
        role = await roles.get_in_workspace(body.role_id, identity.workspace_id)
        if role is None:
            raise NotFound("Role not found in your workspace")
        if role.is_system and role.name == OWNER_ROLE:
            raise Forbidden("Cannot assign the OWNER role to team members")

    token, token_hash = new_invite_token()
    invite = await invites.create(
        invite_id=new_uuid7(), workspace_id=identity.workspace_id, email=email,
        token_hash=token_hash, role_id=body.role_id,
        expires_at=utc_now() + timedelta(hours=settings.INVITE_TTL_HOURS),
    )
    link = _invite_link(settings, token)
    sent = await email_sender.send_invite(to=email, workspace_name=workspace.name, link=link)
    if not sent:
        logger.warning("invite_email_failed", invite_id=str(invite.invite_id))

    payload = {
        "message": "Invite sent successfully" if sent
        else "Invite created but email delivery failed, share the link manually",
        "invite": _invite_payload(invite),
        "email_sent": sent,
    }
    if settings.is_development or not sent:
        payload["invite_link"] = link
    return payload


@router.get("")
async def list_invites(
    identity: Identity = Depends(_can_invite),
    invites: InviteRepository = Depends(get_invite_repo),
) -> dict:
    rows = await invites.list_by_workspace(identity.workspace_id)
    return {"invites": [_invite_payload(r) for r in rows], "total": len(rows)}


@router.post("/{invite_id}/revoke")
async def revoke_invite(
    invite_id: UUID,
    identity: Identity = Depends(_can_invite),
    invites: InviteRepository = Depends(get_invite_repo),
) -> dict:
    invite = await invites.get_in_workspace(invite_id, identity.workspace_id)
    if invite is None:
        raise NotFound("Invite not found")
    if invite.status != InviteStatus.PENDING:
        raise ValidationFailed(f"Cannot revoke, invite is already {invite.status.lower()}")
    await invites.update_status(invite, InviteStatus.REVOKED)
    return {"message": "Invite revoked successfully"}


@router.post("/{invite_id}/resend")
async def resend_invite(
    invite_id: UUID,
    identity: Identity = Depends(_can_invite),
    workspaces: WorkspaceRepository = Depends(get_workspace_repo),
    invites: InviteRepository = Depends(get_invite_repo),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    invite = await invites.get_in_workspace(invite_id, identity.workspace_id)
    if invite is None or invite.status != InviteStatus.PENDING:
        raise NotFound("Pending invite not found")
    if as_utc(invite.expires_at) < utc_now():
        raise ValidationFailed("Invite has expired, create a new one instead")

    token, token_hash = new_invite_token()
    await invites.refresh_token(
        invite, token_hash, utc_now() + timedelta(hours=settings.INVITE_TTL_HOURS),
    )
    workspace = await workspaces.get(identity.workspace_id)
    link = _invite_link(settings, token)
    sent = await email_sender.send_invite(
        to=invite.email, workspace_name=workspace.name if workspace else "your workspace",
        link=link,
    )
    payload = {
        "message": "Invite resent successfully" if sent
        else "New link generated but email delivery failed",
        "email_sent": sent,
    }
    if settings.is_development or not sent:
        payload["invite_link"] = link
    return payload


@router.post("/accept")
async def accept_invite(
    body: AcceptInviteRequest,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    invites: InviteRepository = Depends(get_invite_repo),
    members: MemberRepository = Depends(get_member_repo),
    permissions: PermissionResolver = Depends(get_permission_resolver),
    settings: Settings = Depends(get_app_settings),
    lifetimes: TokenLifetimes = Depends(get_lifetimes),
) -> dict:
    name = body.name.strip()
    if not body.token or not name or not body.password:
        raise ValidationFailed("Token, name, and password are required")
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    invite = await invites.get_by_token_hash(hash_invite_token(body.token))
    if invite is None:
        raise NotFound("Invalid invite link")
    if invite.status == InviteStatus.ACCEPTED or invite.accepted_at is not None:
        raise ValidationFailed("This invite has already been used")
    if invite.status == InviteStatus.REVOKED:
        raise ValidationFailed("This invite has been revoked")
    if as_utc(invite.expires_at) < utc_now():
        raise ValidationFailed("This invite has expired")
    if (message := await email_in_use(session, invite.email)) is not None:
        raise Conflict(message)

    keys = generate_key_pair()
    member = await members.create(
        member_id=new_uuid7(), workspace_id=invite.workspace_id, name=name,
        email=invite.email, password_hash=hash_password(body.password),
        role_id=invite.role_id, private_key=keys.private_key, public_key=keys.public_key,
    )
    await invites.update_status(invite, InviteStatus.ACCEPTED)

    handle = PrincipalHandle(kind=PrincipalKind.MEMBER, row=member)
    started = await start_session(session, handle, False, permissions, lifetimes)
    set_auth_cookies(
        response, started.tokens, False, secure=not settings.is_development, lifetimes=lifetimes,
    )
    logger.info("invite_accepted", invite_id=str(invite.invite_id), member_id=str(member.member_id))
    return {"message": "Invite accepted successfully", "user": started.identity.to_profile()}
