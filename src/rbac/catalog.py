"""Platform permission catalog, system roles and default role templates.

The catalog is platform-wide and read-only for workspaces. Every workspace
gets two system roles: OWNER (whole catalog, never assignable to members)
and MEMBER (the fallback for members without a role), plus a set of
editable starter roles.
"""

from dataclasses import dataclass
from enum import StrEnum
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.common import new_uuid7
from src.repositories.principals import WorkspaceRepository
from src.repositories.roles import PermissionRepository, RoleRepository

logger = structlog.get_logger(__name__)


class Permission(StrEnum):
    PAGE_DASHBOARD = "PAGE_DASHBOARD"
    PAGE_TASKS = "PAGE_TASKS"
    PAGE_CLIENTS = "PAGE_CLIENTS"
    PAGE_SETTINGS = "PAGE_SETTINGS"
    TASK_CREATE = "TASK_CREATE"
    TASK_EDIT = "TASK_EDIT"
    TASK_DELETE = "TASK_DELETE"
    TASK_VIEW_ALL = "TASK_VIEW_ALL"
    TASK_MOVE_OWN = "TASK_MOVE_OWN"
    TASK_REVIEW = "TASK_REVIEW"
    TASK_SEND_TO_CLIENT = "TASK_SEND_TO_CLIENT"
    TASK_CLIENT_DECISION = "TASK_CLIENT_DECISION"
    CLIENT_MANAGE = "CLIENT_MANAGE"
    USER_INVITE = "USER_INVITE"
    ROLE_MANAGE = "ROLE_MANAGE"


@dataclass(frozen=True)
class PermissionSpec:
    key: Permission
    label: str
    description: str
    group: str


PERMISSIONS: tuple[PermissionSpec, ...] = (
    PermissionSpec(Permission.PAGE_DASHBOARD, "Dashboard", "View the workspace dashboard", "Page Access"),
    PermissionSpec(Permission.PAGE_TASKS, "Tasks Page", "Access the tasks section", "Page Access"),
    PermissionSpec(Permission.PAGE_CLIENTS, "Clients Page", "Access the clients section", "Page Access"),
    PermissionSpec(Permission.PAGE_SETTINGS, "Settings", "Access workspace settings", "Page Access"),
    PermissionSpec(Permission.TASK_CREATE, "Create Tasks", "Create new tasks and assign to team members", "Tasks"),
    PermissionSpec(Permission.TASK_EDIT, "Edit Tasks", "Edit task details, title, description, and assignees", "Tasks"),
    PermissionSpec(Permission.TASK_DELETE, "Delete Tasks", "Permanently delete tasks", "Tasks"),
    PermissionSpec(Permission.TASK_VIEW_ALL, "View All Tasks", "See all tasks in the workspace", "Tasks"),
    PermissionSpec(Permission.TASK_MOVE_OWN, "Move Own Tasks", "Move assigned tasks through the workflow", "Tasks"),
    PermissionSpec(Permission.TASK_REVIEW, "Review Tasks", "Request changes on submitted tasks", "Tasks"),
    PermissionSpec(Permission.TASK_SEND_TO_CLIENT, "Send to Client", "Send reviewed tasks to the client", "Tasks"),
    PermissionSpec(Permission.TASK_CLIENT_DECISION, "Client Decision", "Record client approval or rejection", "Tasks"),
    PermissionSpec(Permission.CLIENT_MANAGE, "Manage Clients", "Create, edit, and archive client accounts", "Clients"),
    PermissionSpec(Permission.USER_INVITE, "Invite Members", "Invite new members and manage existing team", "Team"),
    PermissionSpec(Permission.ROLE_MANAGE, "Manage Roles", "Create, edit, and assign roles and permissions", "Team"),
)

PERMISSION_KEYS: frozenset[str] = frozenset(p.key.value for p in PERMISSIONS)

OWNER_ROLE = "OWNER"
MEMBER_ROLE = "MEMBER"
SYSTEM_ROLE_NAMES = frozenset({OWNER_ROLE, MEMBER_ROLE})

MEMBER_PERMISSIONS: tuple[Permission, ...] = (
    Permission.PAGE_DASHBOARD,
    Permission.PAGE_TASKS,
    Permission.TASK_MOVE_OWN,
)

DEFAULT_ROLE_TEMPLATES: dict[str, tuple[Permission, ...]] = {
    "Manager": tuple(p.key for p in PERMISSIONS if p.key != Permission.ROLE_MANAGE),
    "Editor": (
        Permission.PAGE_DASHBOARD, Permission.PAGE_TASKS, Permission.PAGE_CLIENTS,
        Permission.TASK_CREATE, Permission.TASK_EDIT, Permission.TASK_VIEW_ALL,
        Permission.TASK_MOVE_OWN, Permission.TASK_REVIEW, Permission.CLIENT_MANAGE,
    ),
    "Social Media Manager": (
        Permission.PAGE_DASHBOARD, Permission.PAGE_TASKS, Permission.PAGE_CLIENTS,
        Permission.TASK_CREATE, Permission.TASK_EDIT, Permission.TASK_MOVE_OWN,
        Permission.TASK_SEND_TO_CLIENT, Permission.TASK_CLIENT_DECISION,
    ),
    "Graphic Designer": (
        Permission.PAGE_DASHBOARD, Permission.PAGE_TASKS, Permission.TASK_MOVE_OWN,
    ),
    "Secretary": (
        Permission.PAGE_DASHBOARD, Permission.PAGE_TASKS, Permission.PAGE_CLIENTS,
        Permission.PAGE_SETTINGS, Permission.TASK_CREATE, Permission.TASK_EDIT,
        Permission.TASK_VIEW_ALL, Permission.TASK_MOVE_OWN, Permission.CLIENT_MANAGE,
        Permission.USER_INVITE,
    ),
}


async def seed_permissions(session: AsyncSession) -> int:
    """Upsert the catalog and drop keys no longer in it. Idempotent."""
    repo = PermissionRepository(session)
    for spec in PERMISSIONS:
        await repo.upsert(
            permission_id=new_uuid7(), key=spec.key.value, label=spec.label,
            description=spec.description, group=spec.group,
        )
    removed = await repo.delete_not_in(sorted(PERMISSION_KEYS))
    if removed:
        logger.info("permissions_removed", count=removed)
    return len(PERMISSIONS)


async def _upsert_system_role(roles: RoleRepository, workspace_id: UUID, name: str,
                              permission_ids: list[UUID]) -> None:
    row = await roles.get_by_name(workspace_id, name, system=True)
    if row is None:
        await roles.create(
            role_id=new_uuid7(), workspace_id=workspace_id, name=name,
            permission_ids=permission_ids, is_system=True,
        )
    else:
        await roles.set_permissions(row, permission_ids)


async def ensure_templates(session: AsyncSession, workspace_id: UUID) -> int:
    """Create any missing default template roles. Existing ones are untouched."""
    roles = RoleRepository(session)
    permissions = PermissionRepository(session)
    created = 0
    for name, keys in DEFAULT_ROLE_TEMPLATES.items():
        if await roles.get_by_name(workspace_id, name) is not None:
            continue
        await roles.create(
            role_id=new_uuid7(), workspace_id=workspace_id, name=name,
            permission_ids=await permissions.ids_for_keys([k.value for k in keys]),
        )
        created += 1
    return created


async def bootstrap_workspace_roles(session: AsyncSession, workspace_id: UUID) -> None:
    """Upsert OWNER and MEMBER system roles, then the starter templates."""
    roles = RoleRepository(session)
    permissions = PermissionRepository(session)
    all_ids = await permissions.ids_for_keys(await permissions.all_keys())
    member_ids = await permissions.ids_for_keys([k.value for k in MEMBER_PERMISSIONS])
    await _upsert_system_role(roles, workspace_id, OWNER_ROLE, all_ids)
    await _upsert_system_role(roles, workspace_id, MEMBER_ROLE, member_ids)
    await ensure_templates(session, workspace_id)


async def sync_system_roles(session: AsyncSession) -> int:
    """Recompute system roles for every workspace after a catalog change."""
    workspace_ids = await WorkspaceRepository(session).list_ids()
    for workspace_id in workspace_ids:
        await bootstrap_workspace_roles(session, workspace_id)
    logger.info("system_roles_synced", workspaces=len(workspace_ids))
    return len(workspace_ids)
