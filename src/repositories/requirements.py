"""Requirement repository — rows, task links, comments, attachments."""

from collections import defaultdict
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import (
    RequirementAttachmentRow,
    RequirementCommentRow,
    RequirementRow,
    RequirementTaskLinkRow,
)
from src.models.common import utc_now


class RequirementRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, requirement_id: UUID, workspace_id: UUID, client_id: UUID,
                     title: str, description: str, priority: str,
                     created_by: UUID, status: str = "OPEN") -> RequirementRow:
        now = utc_now()
        row = RequirementRow(
            requirement_id=requirement_id, workspace_id=workspace_id,
            client_id=client_id, title=title, description=description,
            priority=priority, status=status, created_by=created_by,
            created_at=now, updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, requirement_id: UUID) -> RequirementRow | None:
        return await self._session.get(RequirementRow, requirement_id)

    async def get_fresh(self, requirement_id: UUID) -> RequirementRow | None:
        """Re-read the persisted row, discarding any stale in-session state."""
        result = await self._session.execute(
            select(RequirementRow)
            .where(RequirementRow.requirement_id == requirement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_in_workspace(self, requirement_id: UUID, workspace_id: UUID, *,
                               client_id: UUID | None = None) -> RequirementRow | None:
        row = await self.get_fresh(requirement_id)
        if row is None or row.workspace_id != workspace_id:
            return None
        if client_id is not None and row.client_id != client_id:
            return None
        return row

    async def list_for_workspace(self, workspace_id: UUID, *,
                                 client_id: UUID | None = None,
                                 status: str | None = None,
                                 priority: str | None = None,
                                 order_by_updated: bool = False,
                                 limit: int | None = None) -> list[RequirementRow]:
        stmt = select(RequirementRow).where(RequirementRow.workspace_id == workspace_id)
        if client_id is not None:
            stmt = stmt.where(RequirementRow.client_id == client_id)
        if status is not None:
            stmt = stmt.where(RequirementRow.status == status)
        if priority is not None:
            stmt = stmt.where(RequirementRow.priority == priority)
        order = RequirementRow.updated_at if order_by_updated else RequirementRow.created_at
        stmt = stmt.order_by(order.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, workspace_id: UUID, client_id: UUID, statuses: list[str]) -> int:
        return int(await self._session.scalar(
            select(func.count()).select_from(RequirementRow).where(
                RequirementRow.workspace_id == workspace_id,
                RequirementRow.client_id == client_id,
                RequirementRow.status.in_(statuses),
            )
        ) or 0)

    async def get_status(self, requirement_id: UUID) -> str | None:
        return await self._session.scalar(
            select(RequirementRow.status).where(RequirementRow.requirement_id == requirement_id)
        )

    async def compare_and_set_status(self, requirement_id: UUID, expected: str,
                                     new: str) -> bool:
        """Set status only if unchanged since it was read."""
        result = await self._session.execute(
            update(RequirementRow)
            .where(
                RequirementRow.requirement_id == requirement_id,
                RequirementRow.status == expected,
            )
            .values(status=new, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_status(self, row: RequirementRow, status: str) -> RequirementRow:
        row.status = status
        row.updated_at = utc_now()
        await self._session.flush()
        return row

    # --- Task links ---

    async def link_task(self, requirement_id: UUID, task_id: UUID) -> None:
        existing = await self._session.get(RequirementTaskLinkRow, (requirement_id, task_id))
        if existing is None:
            self._session.add(RequirementTaskLinkRow(
                requirement_id=requirement_id, task_id=task_id, linked_at=utc_now(),
            ))
            await self._session.flush()

    async def unlink_task_everywhere(self, task_id: UUID) -> None:
        await self._session.execute(
            delete(RequirementTaskLinkRow).where(RequirementTaskLinkRow.task_id == task_id)
        )

    async def ids_linked_to_task(self, task_id: UUID) -> list[UUID]:
        result = await self._session.execute(
            select(RequirementTaskLinkRow.requirement_id)
            .where(RequirementTaskLinkRow.task_id == task_id)
        )
        return list(result.scalars().all())

    async def linked_task_ids(self, requirement_id: UUID) -> list[UUID]:
        return (await self.linked_task_ids_for([requirement_id])).get(requirement_id, [])

    async def linked_task_ids_for(self, requirement_ids: list[UUID]) -> dict[UUID, list[UUID]]:
        if not requirement_ids:
            return {}
        result = await self._session.execute(
            select(RequirementTaskLinkRow.requirement_id, RequirementTaskLinkRow.task_id)
            .where(RequirementTaskLinkRow.requirement_id.in_(requirement_ids))
            .order_by(RequirementTaskLinkRow.linked_at)
        )
        grouped: dict[UUID, list[UUID]] = defaultdict(list)
        for requirement_id, task_id in result.all():
            grouped[requirement_id].append(task_id)
        return dict(grouped)

    # --- Comments ---

    async def add_comment(self, *, requirement_id: UUID, author_id: UUID,
                          author_name: str, author_kind: str,
                          message: str) -> RequirementCommentRow:
        row = RequirementCommentRow(
            requirement_id=requirement_id, author_id=author_id,
            author_name=author_name, author_kind=author_kind,
            message=message, at=utc_now(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def comments(self, requirement_id: UUID) -> list[RequirementCommentRow]:
        result = await self._session.execute(
            select(RequirementCommentRow)
            .where(RequirementCommentRow.requirement_id == requirement_id)
            .order_by(RequirementCommentRow.row_id)
        )
        return list(result.scalars().all())

    async def comment_counts(self, requirement_ids: list[UUID]) -> dict[UUID, int]:
        if not requirement_ids:
            return {}
        result = await self._session.execute(
            select(RequirementCommentRow.requirement_id, func.count())
            .where(RequirementCommentRow.requirement_id.in_(requirement_ids))
            .group_by(RequirementCommentRow.requirement_id)
        )
        return dict(result.all())

    # --- Attachments ---

    async def add_attachment(self, *, requirement_id: UUID, key: str, name: str,
                             size: int, mime_type: str, uploaded_by: UUID,
                             uploaded_by_name: str,
                             uploaded_by_kind: str) -> RequirementAttachmentRow:
        row = RequirementAttachmentRow(
            requirement_id=requirement_id, key=key, name=name, size=size,
            mime_type=mime_type, uploaded_by=uploaded_by,
            uploaded_by_name=uploaded_by_name, uploaded_by_kind=uploaded_by_kind,
            at=utc_now(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def attachments(self, requirement_id: UUID) -> list[RequirementAttachmentRow]:
        result = await self._session.execute(
            select(RequirementAttachmentRow)
            .where(RequirementAttachmentRow.requirement_id == requirement_id)
            .order_by(RequirementAttachmentRow.row_id)
        )
        return list(result.scalars().all())

    async def attachment_counts(self, requirement_ids: list[UUID]) -> dict[UUID, int]:
        if not requirement_ids:
            return {}
        result = await self._session.execute(
            select(RequirementAttachmentRow.requirement_id, func.count())
            .where(RequirementAttachmentRow.requirement_id.in_(requirement_ids))
            .group_by(RequirementAttachmentRow.requirement_id)
        )
        return dict(result.all())

    async def get_attachment(self, requirement_id: UUID,
                             key: str) -> RequirementAttachmentRow | None:
        result = await self._session.execute(
            select(RequirementAttachmentRow).where(
                RequirementAttachmentRow.requirement_id == requirement_id,
                RequirementAttachmentRow.key == key,
            )
        )
        return result.scalars().first()

    async def remove_attachment(self, row: RequirementAttachmentRow) -> None:
        await self._session.delete(row)
        await self._session.flush()
