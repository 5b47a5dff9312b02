"""Task repository — rows, assignees, history ledger, attachments.

Status changes go through ``compare_and_set_status`` so two concurrent
transitions from the same origin cannot both win. History and attachment
entries are separate rows: appends are inserts, never list rewrites.
"""

from collections import defaultdict
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import (
    TaskAssigneeRow,
    TaskAttachmentRow,
    TaskHistoryRow,
    TaskRow,
)
from src.models.common import utc_now


class TaskRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # --- Tasks ---

    async def create(self, *, task_id: UUID, workspace_id: UUID, client_id: UUID,
                     title: str, description: str, created_by: UUID,
                     assignees: list[UUID] | None = None,
                     status: str = "TODO") -> TaskRow:
        now = utc_now()
        row = TaskRow(
            task_id=task_id, workspace_id=workspace_id, client_id=client_id,
            title=title, description=description, status=status,
            created_by=created_by, created_at=now, updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        await self.set_assignees(task_id, assignees or [])
        return row

    async def get(self, task_id: UUID) -> TaskRow | None:
        return await self._session.get(TaskRow, task_id)

    async def get_in_workspace(self, task_id: UUID, workspace_id: UUID, *,
                               client_id: UUID | None = None) -> TaskRow | None:
        row = await self.get_fresh(task_id)
        if row is None or row.workspace_id != workspace_id:
            return None
        if client_id is not None and row.client_id != client_id:
            return None
        return row

    async def get_fresh(self, task_id: UUID) -> TaskRow | None:
        """Re-read the persisted row, discarding any stale in-session state."""
        result = await self._session.execute(
            select(TaskRow)
            .where(TaskRow.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_for_workspace(self, workspace_id: UUID, *,
                                 client_id: UUID | None = None,
                                 status: str | None = None,
                                 statuses: list[str] | None = None,
                                 visible_to: UUID | None = None,
                                 order_by_updated: bool = False,
                                 limit: int | None = None) -> list[TaskRow]:
        """List tasks; ``visible_to`` restricts to creator-or-assignee rows."""
        stmt = select(TaskRow).where(TaskRow.workspace_id == workspace_id)
        if client_id is not None:
            stmt = stmt.where(TaskRow.client_id == client_id)
        if status is not None:
            stmt = stmt.where(TaskRow.status == status)
        if statuses:
            stmt = stmt.where(TaskRow.status.in_(statuses))
        if visible_to is not None:
            assigned = select(TaskAssigneeRow.task_id).where(
                TaskAssigneeRow.principal_id == visible_to
            )
            stmt = stmt.where(or_(TaskRow.created_by == visible_to, TaskRow.task_id.in_(assigned)))
        order = TaskRow.updated_at if order_by_updated else TaskRow.created_at
        stmt = stmt.order_by(order.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, workspace_id: UUID, client_id: UUID,
                    status: str | None = None) -> int:
        stmt = select(func.count()).select_from(TaskRow).where(
            TaskRow.workspace_id == workspace_id, TaskRow.client_id == client_id,
        )
        if status is not None:
            stmt = stmt.where(TaskRow.status == status)
        return int(await self._session.scalar(stmt) or 0)

    async def statuses(self, task_ids: list[UUID]) -> dict[UUID, str]:
        if not task_ids:
            return {}
        result = await self._session.execute(
            select(TaskRow.task_id, TaskRow.status)
            .where(TaskRow.task_id.in_(task_ids))
        )
        return dict(result.all())

    async def summaries(self, task_ids: list[UUID]) -> dict[UUID, TaskRow]:
        if not task_ids:
            return {}
        result = await self._session.execute(
            select(TaskRow)
            .where(TaskRow.task_id.in_(task_ids))
            .execution_options(populate_existing=True)
        )
        return {row.task_id: row for row in result.scalars().all()}

    async def update_fields(self, row: TaskRow, *, title: str | None = None,
                            description: str | None = None) -> TaskRow:
        if title is not None:
            row.title = title
        if description is not None:
            row.description = description
        row.updated_at = utc_now()
        await self._session.flush()
        return row

    async def compare_and_set_status(self, task_id: UUID, expected: str, new: str) -> bool:
        """Set status only if it still equals ``expected``. True when applied."""
        result = await self._session.execute(
            update(TaskRow)
            .where(TaskRow.task_id == task_id, TaskRow.status == expected)
            .values(status=new, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete(self, row: TaskRow) -> None:
        task_id = row.task_id
        for table in (TaskAssigneeRow, TaskHistoryRow, TaskAttachmentRow):
            await self._session.execute(delete(table).where(table.task_id == task_id))
        await self._session.delete(row)
        await self._session.flush()

    # --- Assignees ---

    async def set_assignees(self, task_id: UUID, principal_ids: list[UUID]) -> None:
        await self._session.execute(
            delete(TaskAssigneeRow).where(TaskAssigneeRow.task_id == task_id)
        )
        for position, principal_id in enumerate(dict.fromkeys(principal_ids)):
            self._session.add(TaskAssigneeRow(
                task_id=task_id, principal_id=principal_id, position=position,
            ))
        await self._session.flush()

    async def assignees(self, task_id: UUID) -> list[UUID]:
        return (await self.assignees_for([task_id])).get(task_id, [])

    async def assignees_for(self, task_ids: list[UUID]) -> dict[UUID, list[UUID]]:
        if not task_ids:
            return {}
        result = await self._session.execute(
            select(TaskAssigneeRow.task_id, TaskAssigneeRow.principal_id)
            .where(TaskAssigneeRow.task_id.in_(task_ids))
            .order_by(TaskAssigneeRow.position)
        )
        grouped: dict[UUID, list[UUID]] = defaultdict(list)
        for task_id, principal_id in result.all():
            grouped[task_id].append(principal_id)
        return dict(grouped)

    # --- History ---

    async def append_history(self, *, task_id: UUID, from_status: str, to_status: str,
                             actor_id: UUID, actor_name: str, note: str,
                             at: datetime | None = None) -> TaskHistoryRow:
        row = TaskHistoryRow(
            task_id=task_id, from_status=from_status, to_status=to_status,
            actor_id=actor_id, actor_name=actor_name, note=note,
            at=at or utc_now(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def history(self, task_id: UUID) -> list[TaskHistoryRow]:
        return (await self.history_for([task_id])).get(task_id, [])

    async def history_for(self, task_ids: list[UUID]) -> dict[UUID, list[TaskHistoryRow]]:
        if not task_ids:
            return {}
        result = await self._session.execute(
            select(TaskHistoryRow)
            .where(TaskHistoryRow.task_id.in_(task_ids))
            .order_by(TaskHistoryRow.row_id)
        )
        grouped: dict[UUID, list[TaskHistoryRow]] = defaultdict(list)
        for row in result.scalars().all():
            grouped[row.task_id].append(row)
        return dict(grouped)

    # --- Attachments ---

    async def add_attachment(self, *, task_id: UUID, key: str, name: str, size: int,
                             mime_type: str, uploaded_by: UUID, uploaded_by_name: str,
                             context: str) -> TaskAttachmentRow:
        row = TaskAttachmentRow(
            task_id=task_id, key=key, name=name, size=size, mime_type=mime_type,
            uploaded_by=uploaded_by, uploaded_by_name=uploaded_by_name,
            context=context, at=utc_now(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def attachments(self, task_id: UUID) -> list[TaskAttachmentRow]:
        return (await self.attachments_for([task_id])).get(task_id, [])

    async def attachments_for(self, task_ids: list[UUID]) -> dict[UUID, list[TaskAttachmentRow]]:
        if not task_ids:
            return {}
        result = await self._session.execute(
            select(TaskAttachmentRow)
            .where(TaskAttachmentRow.task_id.in_(task_ids))
            .order_by(TaskAttachmentRow.row_id)
        )
        grouped: dict[UUID, list[TaskAttachmentRow]] = defaultdict(list)
        for row in result.scalars().all():
            grouped[row.task_id].append(row)
        return dict(grouped)

    async def get_attachment(self, task_id: UUID, key: str) -> TaskAttachmentRow | None:
        result = await self._session.execute(
            select(TaskAttachmentRow).where(
                TaskAttachmentRow.task_id == task_id, TaskAttachmentRow.key == key,
            )
        )
        return result.scalars().first()

    async def remove_attachment(self, row: TaskAttachmentRow) -> None:
        await self._session.delete(row)
        await self._session.flush()
