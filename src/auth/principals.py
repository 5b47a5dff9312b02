"""Principal resolver — token claims to Owner / Member / Client records.

The three principal kinds share credential columns but differ in shape, so
they travel as a ``PrincipalHandle`` tagged with ``kind``. Everything that
depends on the kind (claims, display name, ids) dispatches on that tag.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import ClientRow, MemberRow, WorkspaceRow
from src.models.common import PrincipalKind, as_utc
from src.repositories.principals import PrincipalRow

logger = structlog.get_logger(__name__)

_ROW_TYPES: dict[PrincipalKind, type] = {
    PrincipalKind.OWNER: WorkspaceRow,
    PrincipalKind.MEMBER: MemberRow,
    PrincipalKind.CLIENT: ClientRow,
}

# Probe order for tokens minted before the ``kind`` claim existed.
LEGACY_PROBE_ORDER = (PrincipalKind.OWNER, PrincipalKind.MEMBER, PrincipalKind.CLIENT)


@dataclass
class PrincipalHandle:
    kind: PrincipalKind
    row: PrincipalRow

    @property
    def principal_id(self) -> UUID:
        if self.kind == PrincipalKind.OWNER:
            return self.row.workspace_id
        if self.kind == PrincipalKind.MEMBER:
            return self.row.member_id
        return self.row.client_id

    @property
    def workspace_id(self) -> UUID:
        return self.row.workspace_id

    @property
    def display_name(self) -> str:
        if self.kind == PrincipalKind.OWNER:
            return self.row.owner_name or self.row.name
        if self.kind == PrincipalKind.CLIENT:
            return self.row.contact_name or self.row.name
        return self.row.name

    @property
    def role_id(self) -> UUID | None:
        return self.row.role_id if self.kind == PrincipalKind.MEMBER else None

    @property
    def public_key(self) -> str | None:
        return self.row.public_key

    @property
    def private_key(self) -> str | None:
        return self.row.private_key

    @property
    def refresh_token(self) -> str | None:
        return self.row.refresh_token

    @property
    def refresh_token_expires(self) -> datetime | None:
        return as_utc(self.row.refresh_token_expires)

    @property
    def remember_me(self) -> bool:
        return bool(self.row.remember_me)

    def build_claims(self) -> dict:
        return build_claims(self)


def build_claims(handle: PrincipalHandle) -> dict:
    """Identity claims embedded in both tokens of a pair."""
    row = handle.row
    claims = {
        "id": str(handle.principal_id),
        "email": row.email,
        "name": handle.display_name,
        "workspace_id": str(handle.workspace_id),
        "kind": handle.kind.value,
    }
    if handle.kind == PrincipalKind.OWNER:
        claims.update(role="OWNER", role_id=None)
    elif handle.kind == PrincipalKind.MEMBER:
        claims.update(role="MEMBER", role_id=str(row.role_id) if row.role_id else None)
    else:
        claims.update(
            role="CLIENT", role_id=None,
            client_id=str(row.client_id), client_name=row.name,
        )
    return claims


def _parse_id(value: object) -> UUID | None:
    if not isinstance(value, str):
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


class PrincipalResolver:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def load(self, kind: PrincipalKind, principal_id: UUID) -> PrincipalHandle | None:
        row = await self._session.get(_ROW_TYPES[kind], principal_id)
        return PrincipalHandle(kind=kind, row=row) if row is not None else None

    async def resolve(self, claims: dict | None) -> PrincipalHandle | None:
        """Find the principal a token speaks for. None when it does not exist."""
        if not claims:
            return None
        principal_id = _parse_id(claims.get("id"))
        if principal_id is None:
            return None
        kind = claims.get("kind")
        if kind is None:
            return await self._resolve_legacy(principal_id)
        try:
            return await self.load(PrincipalKind(kind), principal_id)
        except ValueError:
            return None

    async def _resolve_legacy(self, principal_id: UUID) -> PrincipalHandle | None:
        """Compatibility path for tokens without a ``kind`` claim.

        First match wins; an id present under two kinds would be masked.
        """
        for kind in LEGACY_PROBE_ORDER:
            handle = await self.load(kind, principal_id)
            if handle is not None:
                logger.warning(
                    "legacy_token_resolved",
                    principal_id=str(principal_id), kind=kind.value,
                )
                return handle
        return None

    async def find_by_email(self, email: str) -> PrincipalHandle | None:
        """Login lookup: Owner, then Member, then Client."""
        for kind in LEGACY_PROBE_ORDER:
            row_type = _ROW_TYPES[kind]
            result = await self._session.execute(select(row_type).where(row_type.email == email))
            row = result.scalars().first()
            if row is not None:
                return PrincipalHandle(kind=kind, row=row)
        return None


async def resolve_actor_names(session: AsyncSession, ids: set[UUID]) -> dict[UUID, str]:
    """Display names for history and assignee lists. Unknown ids are omitted."""
    names: dict[UUID, str] = {}
    if not ids:
        return names
    result = await session.execute(
        select(MemberRow.member_id, MemberRow.name).where(MemberRow.member_id.in_(ids))
    )
    names.update(result.all())
    remaining = ids - names.keys()
    if remaining:
        result = await session.execute(
            select(WorkspaceRow.workspace_id, WorkspaceRow.owner_name)
            .where(WorkspaceRow.workspace_id.in_(remaining))
        )
        names.update(result.all())
    remaining = ids - names.keys()
    if remaining:
        result = await session.execute(
            select(ClientRow.client_id, ClientRow.contact_name, ClientRow.name)
            .where(ClientRow.client_id.in_(remaining))
        )
        for client_id, contact_name, name in result.all():
            names[client_id] = contact_name or name
    return names


async def resolve_actor_name(session: AsyncSession, principal_id: UUID) -> str:
    return (await resolve_actor_names(session, {principal_id})).get(principal_id, "Unknown")
