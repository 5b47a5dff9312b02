"""Permission catalog and role repositories."""

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import PermissionRow, RolePermissionRow, RoleRow
from src.models.common import utc_now


class PermissionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, *, permission_id: UUID, key: str, label: str,
                     description: str, group: str) -> PermissionRow:
        result = await self._session.execute(
            select(PermissionRow).where(PermissionRow.key == key)
        )
        row = result.scalars().first()
        if row is None:
            row = PermissionRow(
                permission_id=permission_id, key=key, label=label,
                description=description, group=group,
            )
            self._session.add(row)
        else:
            row.label = label
            row.description = description
            row.group = group
        await self._session.flush()
        return row

    async def delete_not_in(self, keys: list[str]) -> int:
        result = await self._session.execute(
            select(PermissionRow.permission_id).where(PermissionRow.key.not_in(keys))
        )
        stale = list(result.scalars().all())
        if stale:
            await self._session.execute(
                delete(RolePermissionRow).where(RolePermissionRow.permission_id.in_(stale))
            )
            await self._session.execute(
                delete(PermissionRow).where(PermissionRow.permission_id.in_(stale))
            )
        return len(stale)

    async def list_all(self) -> list[PermissionRow]:
        result = await self._session.execute(
            select(PermissionRow).order_by(PermissionRow.group, PermissionRow.key)
        )
        return list(result.scalars().all())

    async def all_keys(self) -> list[str]:
        result = await self._session.execute(select(PermissionRow.key))
        return list(result.scalars().all())

    async def ids_for_keys(self, keys: list[str]) -> list[UUID]:
        if not keys:
            return []
        result = await self._session.execute(
            select(PermissionRow.permission_id).where(PermissionRow.key.in_(keys))
        )
        return list(result.scalars().all())

    async def filter_valid_ids(self, ids: list[UUID]) -> list[UUID]:
        if not ids:
            return []
        result = await self._session.execute(
            select(PermissionRow.permission_id).where(PermissionRow.permission_id.in_(ids))
        )
        return list(result.scalars().all())


class RoleRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, role_id: UUID, workspace_id: UUID, name: str,
                     permission_ids: list[UUID], is_system: bool = False) -> RoleRow:
        now = utc_now()
        row = RoleRow(
            role_id=role_id, workspace_id=workspace_id, name=name,
            is_system=is_system, created_at=now, updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        await self.set_permissions(row, permission_ids)
        return row

    async def get(self, role_id: UUID) -> RoleRow | None:
        return await self._session.get(RoleRow, role_id)

    async def get_in_workspace(self, role_id: UUID, workspace_id: UUID) -> RoleRow | None:
        row = await self.get(role_id)
        if row is None or row.workspace_id != workspace_id:
            return None
        return row

    async def get_by_name(self, workspace_id: UUID, name: str, *,
                          system: bool | None = None) -> RoleRow | None:
        stmt = select(RoleRow).where(RoleRow.workspace_id == workspace_id, RoleRow.name == name)
        if system is not None:
            stmt = stmt.where(RoleRow.is_system == system)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_by_workspace(self, workspace_id: UUID) -> list[RoleRow]:
        result = await self._session.execute(
            select(RoleRow)
            .where(RoleRow.workspace_id == workspace_id)
            .order_by(RoleRow.is_system.desc(), RoleRow.name)
        )
        return list(result.scalars().all())

    async def permissions_for(self, role_id: UUID) -> list[PermissionRow]:
        result = await self._session.execute(
            select(PermissionRow)
            .join(RolePermissionRow, RolePermissionRow.permission_id == PermissionRow.permission_id)
            .where(RolePermissionRow.role_id == role_id)
            .order_by(PermissionRow.group, PermissionRow.key)
        )
        return list(result.scalars().all())

    async def permission_keys(self, role_id: UUID) -> list[str]:
        return [p.key for p in await self.permissions_for(role_id)]

    async def set_permissions(self, row: RoleRow, permission_ids: list[UUID]) -> None:
        """Replace the role's permission set."""
        await self._session.execute(
            delete(RolePermissionRow).where(RolePermissionRow.role_id == row.role_id)
        )
        for permission_id in dict.fromkeys(permission_ids):
            self._session.add(RolePermissionRow(role_id=row.role_id, permission_id=permission_id))
        row.updated_at = utc_now()
        await self._session.flush()

    async def rename(self, row: RoleRow, name: str) -> RoleRow:
        row.name = name
        row.updated_at = utc_now()
        await self._session.flush()
        return row

    async def delete(self, row: RoleRow) -> None:
        await self._session.execute(
            delete(RolePermissionRow).where(RolePermissionRow.role_id == row.role_id)
        )
        await self._session.delete(row)
        await self._session.flush()
