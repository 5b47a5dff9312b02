"""FastAPI role, permission and member endpoints.

GET    /v1/permissions                 — catalog, flat and grouped
POST   /v1/roles                       — create role
GET    /v1/roles                       — list roles with member counts
PATCH  /v1/roles/{role_id}             — rename / replace permissions
DELETE /v1/roles/{role_id}             — delete; members fall back to MEMBER
POST   /v1/roles/{role_id}/assign      — assign role to a member
POST   /v1/roles/reset-defaults        — recreate missing starter roles
GET    /v1/members                     — owner, members and pending invites
PATCH  /v1/members/{member_id}         — rename / change role
DELETE /v1/members/{member_id}         — remove member

Every role or member change that can alter effective permissions
invalidates the cached permission sets it touches.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_cache,
    get_identity,
    get_invite_repo,
    get_member_repo,
    get_permission_repo,
    get_role_repo,
    get_workspace_repo,
)
from src.cache.redis_cache import RedisCache
from src.db.session import get_async_session
from src.db.tables import PermissionRow, RoleRow
from src.models.common import InviteStatus, as_utc, new_uuid7, utc_now
from src.models.errors import Conflict, Forbidden, NotFound, ValidationFailed
from src.models.identity import Identity
from src.rbac.catalog import MEMBER_ROLE, OWNER_ROLE, Permission, ensure_templates
from src.rbac.gate import require_all_permissions
from src.rbac.resolver import invalidate_all, invalidate_principal
from src.repositories.principals import (
    InviteRepository,
    MemberRepository,
    WorkspaceRepository,
)
from src.repositories.roles import PermissionRepository, RoleRepository

router = APIRouter(tags=["roles"])

_manage_roles = require_all_permissions(Permission.PAGE_SETTINGS, Permission.ROLE_MANAGE)
_manage_members = require_all_permissions(Permission.PAGE_SETTINGS, Permission.USER_INVITE)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateRoleRequest(BaseModel):
    name: str
    permissions: list[UUID] = []


class UpdateRoleRequest(BaseModel):
    name: str | None = None
    permissions: list[UUID] | None = None


class AssignRoleRequest(BaseModel):
    member_id: UUID


class UpdateMemberRequest(BaseModel):
    name: str | None = None
    role_id: UUID | None = None
    clear_role: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _permission_payload(row: PermissionRow) -> dict:
    return {
        "id": str(row.permission_id),
        "key": row.key,
        "label": row.label or row.key,
        "description": row.description,
        "group": row.group,
    }


async def _role_payload(roles: RoleRepository, row: RoleRow) -> dict:
    return {
        "id": str(row.role_id),
        "name": row.name,
        "is_system": row.is_system,
        "permissions": [_permission_payload(p) for p in await roles.permissions_for(row.role_id)],
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def _assignable_role(roles: RoleRepository, role_id: UUID, workspace_id: UUID) -> RoleRow:
    role = await roles.get_in_workspace(role_id, workspace_id)
    if role is None:
        raise NotFound("Role not found in your workspace")
    if role.is_system and role.name == OWNER_ROLE:
        raise Forbidden("Cannot assign the OWNER role to team members")
    return role


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/v1/permissions")
async def list_permissions(
    _identity: Identity = Depends(get_identity),
    repo: PermissionRepository = Depends(get_permission_repo),
) -> dict:
    rows = await repo.list_all()
    grouped: dict[str, list[dict]] = {}
    for row in rows:
        grouped.setdefault(row.group, []).append(_permission_payload(row))
    return {
        "permissions": [_permission_payload(r) for r in rows],
        "grouped": grouped,
        "total": len(rows),
    }


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.post("/v1/roles", status_code=201)
async def create_role(
    body: CreateRoleRequest,
    identity: Identity = Depends(_manage_roles),
    roles: RoleRepository = Depends(get_role_repo),
    permissions: PermissionRepository = Depends(get_permission_repo),
) -> dict:
    name = body.name.strip()
    if not name:
        raise ValidationFailed("Role name is required")
    if await roles.get_by_name(identity.workspace_id, name) is not None:
        raise Conflict("A role with this name already exists")
    row = await roles.create(
        role_id=new_uuid7(), workspace_id=identity.workspace_id, name=name,
        permission_ids=await permissions.filter_valid_ids(body.permissions),
    )
    return {"message": "Role created successfully", "role": await _role_payload(roles, row)}


@router.get("/v1/roles")
async def list_roles(
    identity: Identity = Depends(get_identity),
    roles: RoleRepository = Depends(get_role_repo),
    members: MemberRepository = Depends(get_member_repo),
) -> dict:
    rows = await roles.list_by_workspace(identity.workspace_id)
    counts = await members.count_by_role(identity.workspace_id)
    payload = []
    for row in rows:
        item = await _role_payload(roles, row)
        item["member_count"] = counts.get(row.role_id, 0)
        payload.append(item)
    return {"roles": payload, "total": len(payload)}


@router.post("/v1/roles/reset-defaults")
async def reset_default_roles(
    identity: Identity = Depends(_manage_roles),
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    created = await ensure_templates(session, identity.workspace_id)
    if created == 0:
        return {"message": "All default roles already exist. Nothing to restore.", "created": 0}
    plural = "s" if created != 1 else ""
    return {"message": f"Restored {created} default role{plural}", "created": created}


@router.patch("/v1/roles/{role_id}")
async def update_role(
    role_id: UUID,
    body: UpdateRoleRequest,
    identity: Identity = Depends(_manage_roles),
    roles: RoleRepository = Depends(get_role_repo),
    permissions: PermissionRepository = Depends(get_permission_repo),
    cache: RedisCache = Depends(get_cache),
) -> dict:
    role = await roles.get_in_workspace(role_id, identity.workspace_id)
    if role is None:
        raise NotFound("Role not found in your workspace")
    if role.is_system and role.name == OWNER_ROLE:
        raise Forbidden("Cannot modify the system OWNER role")

    # System roles keep their names; MEMBER permissions stay editable.
    if body.name is not None and not role.is_system:
        name = body.name.strip()
        if not name:
            raise ValidationFailed("Role name cannot be empty")
        duplicate = await roles.get_by_name(identity.workspace_id, name)
        if duplicate is not None and duplicate.role_id != role.role_id:
            raise Conflict("A role with this name already exists")
        await roles.rename(role, name)

    if body.permissions is not None:
        await roles.set_permissions(role, await permissions.filter_valid_ids(body.permissions))

    await invalidate_all(cache)
    return {"message": "Role updated successfully", "role": await _role_payload(roles, role)}


@router.delete("/v1/roles/{role_id}")
async def delete_role(
    role_id: UUID,
    identity: Identity = Depends(_manage_roles),
    roles: RoleRepository = Depends(get_role_repo),
    members: MemberRepository = Depends(get_member_repo),
    cache: RedisCache = Depends(get_cache),
) -> dict:
    role = await roles.get_in_workspace(role_id, identity.workspace_id)
    if role is None:
        raise NotFound("Role not found in your workspace")
    if role.is_system:
        raise Forbidden("Cannot delete system roles")

    member_role = await roles.get_by_name(identity.workspace_id, MEMBER_ROLE, system=True)
    await members.reassign_role(
        identity.workspace_id, role.role_id, member_role.role_id if member_role else None,
    )
    name = role.name
    await roles.delete(role)
    await invalidate_all(cache)
    return {"message": f'Role "{name}" deleted. Affected members moved to MEMBER role.'}


@router.post("/v1/roles/{role_id}/assign")
async def assign_role(
    role_id: UUID,
    body: AssignRoleRequest,
    identity: Identity = Depends(_manage_roles),
    roles: RoleRepository = Depends(get_role_repo),
    members: MemberRepository = Depends(get_member_repo),
    cache: RedisCache = Depends(get_cache),
) -> dict:
    role = await _assignable_role(roles, role_id, identity.workspace_id)
    member = await members.get_in_workspace(body.member_id, identity.workspace_id)
    if member is None:
        raise NotFound("Member not found in your workspace")
    await members.set_role(member, role.role_id)
    await invalidate_principal(cache, member.member_id)
    return {
        "message": f'Role "{role.name}" assigned to {member.name}',
        "member": {
            "id": str(member.member_id), "name": member.name,
            "email": member.email, "role_id": str(role.role_id),
        },
    }


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/v1/members")
async def list_members(
    identity: Identity = Depends(get_identity),
    workspaces: WorkspaceRepository = Depends(get_workspace_repo),
    members: MemberRepository = Depends(get_member_repo),
    invites: InviteRepository = Depends(get_invite_repo),
) -> dict:
    workspace = await workspaces.get(identity.workspace_id)
    if workspace is None:
        raise NotFound("Workspace not found")
    users = [{
        "id": str(workspace.workspace_id), "name": workspace.owner_name,
        "email": workspace.email, "role": "OWNER", "kind": "owner",
        "role_id": None, "joined_at": workspace.created_at,
    }]
    for member in await members.list_by_workspace(identity.workspace_id):
        users.append({
            "id": str(member.member_id), "name": member.name, "email": member.email,
            "role": "MEMBER", "kind": "member",
            "role_id": str(member.role_id) if member.role_id else None,
            "joined_at": member.created_at,
        })
    now = utc_now()
    pending = [
        {
            "id": str(invite.invite_id), "email": invite.email,
            "role_id": str(invite.role_id) if invite.role_id else None,
            "expires_at": invite.expires_at, "created_at": invite.created_at,
            "status": invite.status, "expired": as_utc(invite.expires_at) < now,
        }
        for invite in await invites.list_by_workspace(identity.workspace_id)
        if invite.status == InviteStatus.PENDING
    ]
    return {"users": users, "pending_invites": pending}


@router.patch("/v1/members/{member_id}")
async def update_member(
    member_id: UUID,
    body: UpdateMemberRequest,
    identity: Identity = Depends(_manage_members),
    members: MemberRepository = Depends(get_member_repo),
    roles: RoleRepository = Depends(get_role_repo),
    cache: RedisCache = Depends(get_cache),
) -> dict:
    member = await members.get_in_workspace(member_id, identity.workspace_id)
    if member is None:
        raise NotFound("Member not found in your workspace")

    if body.name is not None:
        name = body.name.strip()
        if not name:
            raise ValidationFailed("Name cannot be empty")
        member.name = name

    role_changed = False
    if body.clear_role:
        await members.set_role(member, None)
        role_changed = True
    elif body.role_id is not None:
        role = await _assignable_role(roles, body.role_id, identity.workspace_id)
        await members.set_role(member, role.role_id)
        role_changed = True
    await members.save(member)

    if role_changed:
        await invalidate_principal(cache, member.member_id)
    return {
        "message": "Member updated successfully",
        "member": {
            "id": str(member.member_id), "name": member.name, "email": member.email,
            "role_id": str(member.role_id) if member.role_id else None,
        },
    }


@router.delete("/v1/members/{member_id}")
async def delete_member(
    member_id: UUID,
    identity: Identity = Depends(_manage_members),
    members: MemberRepository = Depends(get_member_repo),
    invites: InviteRepository = Depends(get_invite_repo),
    cache: RedisCache = Depends(get_cache),
) -> dict:
    member = await members.get_in_workspace(member_id, identity.workspace_id)
    if member is None:
        raise NotFound("Member not found in your workspace")
    name = member.name
    if member.email:
        await invites.delete_for_email(identity.workspace_id, member.email)
    await members.delete(member)
    await invalidate_principal(cache, member_id)
    return {"message": f"{name} has been removed from the workspace"}
