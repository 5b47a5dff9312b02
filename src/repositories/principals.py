"""Workspace (owner), member, client and invite repositories."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import ClientRow, InviteRow, MemberRow, WorkspaceRow
from src.models.common import ClientStatus, InviteStatus, utc_now

PrincipalRow = WorkspaceRow | MemberRow | ClientRow


async def store_session(session: AsyncSession, row: PrincipalRow, *, refresh_token: str | None,
                        refresh_expires: datetime | None, remember_me: bool) -> None:
    """Overwrite the principal's single refresh token slot."""
    row.refresh_token = refresh_token
    row.refresh_token_expires = refresh_expires
    row.remember_me = remember_me
    row.updated_at = utc_now()
    await session.flush()


async def email_in_use(session: AsyncSession, email: str, *,
                       exclude_client_id: UUID | None = None) -> str | None:
    """Check email uniqueness across all principal kinds.

    Returns a user-facing message when taken, None when free.
    """
    if await session.scalar(select(WorkspaceRow.workspace_id).where(WorkspaceRow.email == email)):
        return "This email is already in use"
    if await session.scalar(select(MemberRow.member_id).where(MemberRow.email == email)):
        return "This email is already in use"
    stmt = select(ClientRow.client_id).where(ClientRow.email == email)
    if exclude_client_id is not None:
        stmt = stmt.where(ClientRow.client_id != exclude_client_id)
    if await session.scalar(stmt):
        return "This email is already in use by another client"
    return None


class WorkspaceRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, workspace_id: UUID, name: str, owner_name: str,
                     email: str, password_hash: str, phone: str = "",
                     private_key: str | None = None,
                     public_key: str | None = None) -> WorkspaceRow:
        now = utc_now()
        row = WorkspaceRow(
            workspace_id=workspace_id, name=name, owner_name=owner_name,
            email=email, password_hash=password_hash, phone=phone,
            private_key=private_key, public_key=public_key,
            remember_me=False, created_at=now, updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, workspace_id: UUID) -> WorkspaceRow | None:
        return await self._session.get(WorkspaceRow, workspace_id)

    async def get_by_email(self, email: str) -> WorkspaceRow | None:
        result = await self._session.execute(
            select(WorkspaceRow).where(WorkspaceRow.email == email)
        )
        return result.scalars().first()

    async def list_ids(self) -> list[UUID]:
        result = await self._session.execute(select(WorkspaceRow.workspace_id))
        return list(result.scalars().all())


class MemberRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, member_id: UUID, workspace_id: UUID, name: str,
                     email: str, password_hash: str, role_id: UUID | None,
                     private_key: str, public_key: str) -> MemberRow:
        now = utc_now()
        row = MemberRow(
            member_id=member_id, workspace_id=workspace_id, name=name,
            email=email, password_hash=password_hash, role_id=role_id,
            private_key=private_key, public_key=public_key,
            remember_me=False, created_at=now, updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, member_id: UUID) -> MemberRow | None:
        return await self._session.get(MemberRow, member_id)

    async def get_in_workspace(self, member_id: UUID, workspace_id: UUID) -> MemberRow | None:
        row = await self.get(member_id)
        if row is None or row.workspace_id != workspace_id:
            return None
        return row

    async def get_by_email(self, email: str) -> MemberRow | None:
        result = await self._session.execute(
            select(MemberRow).where(MemberRow.email == email)
        )
        return result.scalars().first()

    async def list_by_workspace(self, workspace_id: UUID) -> list[MemberRow]:
        result = await self._session.execute(
            select(MemberRow)
            .where(MemberRow.workspace_id == workspace_id)
            .order_by(MemberRow.created_at)
        )
        return list(result.scalars().all())

    async def filter_ids_in_workspace(self, ids: list[UUID], workspace_id: UUID) -> list[UUID]:
        if not ids:
            return []
        result = await self._session.execute(
            select(MemberRow.member_id).where(
                MemberRow.member_id.in_(ids),
                MemberRow.workspace_id == workspace_id,
            )
        )
        return list(result.scalars().all())

    async def count_by_role(self, workspace_id: UUID) -> dict[UUID | None, int]:
        result = await self._session.execute(
            select(MemberRow.role_id, func.count())
            .where(MemberRow.workspace_id == workspace_id)
            .group_by(MemberRow.role_id)
        )
        return {role_id: count for role_id, count in result.all()}

    async def set_role(self, row: MemberRow, role_id: UUID | None) -> MemberRow:
        row.role_id = role_id
        row.updated_at = utc_now()
        await self._session.flush()
        return row

    async def save(self, row: MemberRow) -> MemberRow:
        row.updated_at = utc_now()
        await self._session.flush()
        return row

    async def reassign_role(self, workspace_id: UUID, from_role_id: UUID,
                            to_role_id: UUID | None) -> list[UUID]:
        """Move every member off a role. Returns the affected member ids."""
        result = await self._session.execute(
            select(MemberRow).where(
                MemberRow.workspace_id == workspace_id,
                MemberRow.role_id == from_role_id,
            )
        )
        rows = list(result.scalars().all())
        for row in rows:
            row.role_id = to_role_id
            row.updated_at = utc_now()
        await self._session.flush()
        return [row.member_id for row in rows]

    async def delete(self, row: MemberRow) -> None:
        await self._session.delete(row)
        await self._session.flush()


class ClientRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, client_id: UUID, workspace_id: UUID, name: str,
                     contact_name: str = "", email: str | None = None,
                     status: str = ClientStatus.ACTIVE,
                     invite_token_hash: str | None = None,
                     invite_expires_at: datetime | None = None) -> ClientRow:
        now = utc_now()
        row = ClientRow(
            client_id=client_id, workspace_id=workspace_id, name=name,
            contact_name=contact_name, email=email, status=status,
            invite_token_hash=invite_token_hash,
            invite_expires_at=invite_expires_at,
            remember_me=False, created_at=now, updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, client_id: UUID) -> ClientRow | None:
        return await self._session.get(ClientRow, client_id)

    async def get_in_workspace(self, client_id: UUID, workspace_id: UUID, *,
                               active_only: bool = False) -> ClientRow | None:
        row = await self.get(client_id)
        if row is None or row.workspace_id != workspace_id:
            return None
        if active_only and row.status == ClientStatus.ARCHIVED:
            return None
        return row

    async def get_by_email(self, email: str) -> ClientRow | None:
        result = await self._session.execute(
            select(ClientRow).where(ClientRow.email == email)
        )
        return result.scalars().first()

    async def get_by_invite_hash(self, token_hash: str) -> ClientRow | None:
        result = await self._session.execute(
            select(ClientRow).where(
                ClientRow.invite_token_hash == token_hash,
                ClientRow.invite_expires_at > utc_now(),
            )
        )
        return result.scalars().first()

    async def list_by_workspace(self, workspace_id: UUID,
                                status: str | None = None) -> list[ClientRow]:
        stmt = select(ClientRow).where(ClientRow.workspace_id == workspace_id)
        if status is not None:
            stmt = stmt.where(ClientRow.status == status)
        result = await self._session.execute(stmt.order_by(ClientRow.created_at.desc()))
        return list(result.scalars().all())

    async def names(self, client_ids: set[UUID]) -> dict[UUID, str]:
        if not client_ids:
            return {}
        result = await self._session.execute(
            select(ClientRow.client_id, ClientRow.name).where(ClientRow.client_id.in_(client_ids))
        )
        return dict(result.all())

    async def save(self, row: ClientRow) -> ClientRow:
        row.updated_at = utc_now()
        await self._session.flush()
        return row


class InviteRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, invite_id: UUID, workspace_id: UUID, email: str,
                     token_hash: str, expires_at: datetime,
                     role_id: UUID | None = None) -> InviteRow:
        row = InviteRow(
            invite_id=invite_id, workspace_id=workspace_id, email=email,
            role_id=role_id, token_hash=token_hash,
            status=InviteStatus.PENDING, expires_at=expires_at,
            created_at=utc_now(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_in_workspace(self, invite_id: UUID, workspace_id: UUID) -> InviteRow | None:
        row = await self._session.get(InviteRow, invite_id)
        if row is None or row.workspace_id != workspace_id:
            return None
        return row

    async def get_by_token_hash(self, token_hash: str) -> InviteRow | None:
        result = await self._session.execute(
            select(InviteRow).where(InviteRow.token_hash == token_hash)
        )
        return result.scalars().first()

    async def get_pending(self, workspace_id: UUID, email: str) -> InviteRow | None:
        result = await self._session.execute(
            select(InviteRow).where(
                InviteRow.workspace_id == workspace_id,
                InviteRow.email == email,
                InviteRow.status == InviteStatus.PENDING,
                InviteRow.expires_at > utc_now(),
            )
        )
        return result.scalars().first()

    async def list_by_workspace(self, workspace_id: UUID) -> list[InviteRow]:
        result = await self._session.execute(
            select(InviteRow)
            .where(InviteRow.workspace_id == workspace_id)
            .order_by(InviteRow.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(self, row: InviteRow, status: str) -> InviteRow:
        row.status = status
        if status == InviteStatus.ACCEPTED:
            row.accepted_at = utc_now()
        await self._session.flush()
        return row

    async def refresh_token(self, row: InviteRow, token_hash: str,
                            expires_at: datetime) -> InviteRow:
        row.token_hash = token_hash
        row.expires_at = expires_at
        await self._session.flush()
        return row

    async def delete_for_email(self, workspace_id: UUID, email: str) -> None:
        await self._session.execute(
            delete(InviteRow).where(
                InviteRow.workspace_id == workspace_id,
                InviteRow.email == email,
            )
        )
