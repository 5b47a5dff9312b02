"""Seed script — load the permission catalog and a demo studio into Atelier.

Creates:
1. The permission catalog (upserted, stale keys removed)
2. OWNER/MEMBER system roles re-synced for every existing workspace
3. A demo workspace (Northwind Studio) with the default role templates
4. Two members (Editor, Graphic Designer) and an active portal client
5. One requirement raised by the client, linked to a task in progress

Idempotent: safe to run multiple times — the catalog is always re-synced,
the demo workspace is skipped if its owner email already exists.

Usage:
    python -m scripts.seed          # against DATABASE_URL from .env
    pytest tests/scripts/test_seed.py  # against aiosqlite in-memory
"""

import asyncio
import sys

from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.passwords import hash_password
from src.auth.tokens import generate_key_pair
from src.db.tables import ClientRow, MemberRow, WorkspaceRow
from src.models.common import ClientStatus, RequirementStatus, TaskStatus, new_uuid7
from src.rbac.catalog import bootstrap_workspace_roles, seed_permissions, sync_system_roles
from src.repositories.principals import ClientRepository, MemberRepository, WorkspaceRepository
from src.repositories.requirements import RequirementRepository
from src.repositories.roles import RoleRepository
from src.repositories.tasks import TaskRepository

# ---------------------------------------------------------------------------
# Demo studio
# ---------------------------------------------------------------------------

DEMO_PASSWORD = "atelier-demo"

DEMO_WORKSPACE = {
    "name": "Northwind Studio",
    "owner_name": "Nora North",
    "email": "owner@northwind.example",
    "phone": "+1 555 0100",
}

DEMO_MEMBERS = [
    {"name": "Eli Editor", "email": "eli@northwind.example", "role": "Editor"},
    {"name": "Gia Designer", "email": "gia@northwind.example", "role": "Graphic Designer"},
]

DEMO_CLIENT = {
    "name": "Fabrikam",
    "contact_name": "Frank Fabrikam",
    "email": "frank@fabrikam.example",
}

DEMO_REQUIREMENT = {
    "title": "Autumn campaign visuals",
    "description": "Three social banners and one landing hero image.",
    "priority": "HIGH",
}

DEMO_TASK = {
    "title": "Draft banner concepts",
    "description": "Two directions, 1080x1080, brand palette only.",
}


async def seed_catalog(session: AsyncSession) -> dict:
    """Upsert the permission catalog and re-sync system roles everywhere."""
    permission_count = await seed_permissions(session)
    workspace_count = await sync_system_roles(session)
    return {"permission_count": permission_count, "workspace_count": workspace_count}


async def seed_workspace(session: AsyncSession) -> WorkspaceRow:
    """Create the demo workspace with its system roles and templates."""
    keys = generate_key_pair()
    workspace = await WorkspaceRepository(session).create(
        workspace_id=new_uuid7(),
        name=DEMO_WORKSPACE["name"],
        owner_name=DEMO_WORKSPACE["owner_name"],
        email=DEMO_WORKSPACE["email"],
        phone=DEMO_WORKSPACE["phone"],
        password_hash=hash_password(DEMO_PASSWORD),
        private_key=keys.private_key,
        public_key=keys.public_key,
    )
    await bootstrap_workspace_roles(session, workspace.workspace_id)
    return workspace


async def seed_members(session: AsyncSession, workspace: WorkspaceRow) -> list[MemberRow]:
    roles = RoleRepository(session)
    members = MemberRepository(session)
    created = []
    for spec in DEMO_MEMBERS:
        role = await roles.get_by_name(workspace.workspace_id, spec["role"])
        keys = generate_key_pair()
        created.append(await members.create(
            member_id=new_uuid7(),
            workspace_id=workspace.workspace_id,
            name=spec["name"],
            email=spec["email"],
            password_hash=hash_password(DEMO_PASSWORD),
            role_id=role.role_id if role is not None else None,
            private_key=keys.private_key,
            public_key=keys.public_key,
        ))
    return created


async def seed_client(session: AsyncSession, workspace: WorkspaceRow) -> ClientRow:
    """Create an already-activated portal client."""
    client = await ClientRepository(session).create(
        client_id=new_uuid7(),
        workspace_id=workspace.workspace_id,
        name=DEMO_CLIENT["name"],
        contact_name=DEMO_CLIENT["contact_name"],
        email=DEMO_CLIENT["email"],
        status=ClientStatus.ACTIVE,
    )
    keys = generate_key_pair()
    client.password_hash = hash_password(DEMO_PASSWORD)
    client.private_key = keys.private_key
    client.public_key = keys.public_key
    await session.flush()
    return client


async def seed_work(session: AsyncSession, workspace: WorkspaceRow, client: ClientRow,
                    assignees: list[MemberRow]) -> tuple:
    """One client requirement with a linked task already in progress."""
    requirement_repo = RequirementRepository(session)
    task_repo = TaskRepository(session)

    requirement = await requirement_repo.create(
        requirement_id=new_uuid7(),
        workspace_id=workspace.workspace_id,
        client_id=client.client_id,
        created_by=client.client_id,
        status=RequirementStatus.IN_PROGRESS,
        **DEMO_REQUIREMENT,
    )
    task = await task_repo.create(
        task_id=new_uuid7(),
        workspace_id=workspace.workspace_id,
        client_id=client.client_id,
        created_by=workspace.workspace_id,
        assignees=[m.member_id for m in assignees],
        status=TaskStatus.DOING,
        **DEMO_TASK,
    )
    await task_repo.append_history(
        task_id=task.task_id,
        from_status=TaskStatus.TODO,
        to_status=TaskStatus.DOING,
        actor_id=workspace.workspace_id,
        actor_name=workspace.owner_name,
        note="",
    )
    await requirement_repo.link_task(requirement.requirement_id, task.task_id)
    return requirement, task


async def seed_demo(session: AsyncSession) -> dict:
    """Idempotent demo seed: catalog + workspace + members + client work.

    Returns dict with keys: created (bool), workspace_id, permission_count.
    If the demo owner already exists, the catalog is still re-synced but the
    studio is left alone and created=False.
    """
    catalog = await seed_catalog(session)

    existing = await WorkspaceRepository(session).get_by_email(DEMO_WORKSPACE["email"])
    if existing is not None:
        return {
            "created": False,
            "workspace_id": existing.workspace_id,
            "permission_count": catalog["permission_count"],
        }

    workspace = await seed_workspace(session)
    members = await seed_members(session, workspace)
    client = await seed_client(session, workspace)
    requirement, task = await seed_work(session, workspace, client, members[1:])

    return {
        "created": True,
        "workspace_id": workspace.workspace_id,
        "permission_count": catalog["permission_count"],
        "member_count": len(members),
        "client_id": client.client_id,
        "requirement_id": requirement.requirement_id,
        "task_id": task.task_id,
    }


# ---------------------------------------------------------------------------
# CLI entry point: python -m scripts.seed
# ---------------------------------------------------------------------------


async def _run_seed() -> None:
    """Run the full seed against the configured database (idempotent)."""
    from src.config.settings import get_settings
    from src.db.session import build_session_factory, create_engine_from_settings

    engine = create_engine_from_settings(get_settings())
    session_factory = build_session_factory(engine)
    try:
        async with session_factory() as session:
            result = await seed_demo(session)
            await session.commit()
    finally:
        await engine.dispose()

    print(f"Permission catalog synced ({result['permission_count']} keys).")
    if not result["created"]:
        print(f"Demo studio already seeded ({DEMO_WORKSPACE['email']} exists). Skipping.")
        print(f"  Workspace: {result['workspace_id']}")
        return

    print("Seed complete.")
    print(f"  Workspace:    {result['workspace_id']}")
    print(f"  Members:      {result['member_count']}")
    print(f"  Client:       {result['client_id']}")
    print(f"  Requirement:  {result['requirement_id']}")
    print(f"  Task:         {result['task_id']}")
    print()
    _print_logins()


def _print_logins() -> None:
    """Print the demo accounts."""
    print(f"Demo logins (password: {DEMO_PASSWORD}):")
    print(f"  {'Who':<18} {'Email':<28} {'Kind':<8}")
    print(f"  {'─' * 18} {'─' * 28} {'─' * 8}")
    print(f"  {DEMO_WORKSPACE['owner_name']:<18} {DEMO_WORKSPACE['email']:<28} {'owner':<8}")
    for spec in DEMO_MEMBERS:
        print(f"  {spec['name']:<18} {spec['email']:<28} {'member':<8}")
    print(f"  {DEMO_CLIENT['contact_name']:<18} {DEMO_CLIENT['email']:<28} {'client':<8}")


if __name__ == "__main__":
    asyncio.run(_run_seed())


def __getattr__(name: str):  # type: ignore[misc]
    """Allow `python -m scripts.seed` to work."""
    if name == "__main__":
        asyncio.run(_run_seed())
        sys.exit(0)
    raise AttributeError(name)
