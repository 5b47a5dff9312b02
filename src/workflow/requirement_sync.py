"""Requirement sync engine — derive requirement status from linked tasks.

- CLOSED is set by hand and frozen against derivation.
- Every linked task DONE (and at least one linked) -> COMPLETED.
- Any linked task in flight -> IN_PROGRESS, from OPEN or COMPLETED.
  Reopening work on a completed requirement reverts it.
- Otherwise unchanged.

Only changed statuses are written, so re-running a sync is a no-op.
"""

from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.common import RequirementStatus, TaskStatus
from src.repositories.requirements import RequirementRepository
from src.repositories.tasks import TaskRepository

logger = structlog.get_logger(__name__)

IN_FLIGHT: frozenset[TaskStatus] = frozenset({
    TaskStatus.DOING,
    TaskStatus.READY_FOR_REVIEW,
    TaskStatus.SENT_TO_CLIENT,
    TaskStatus.REVISION,
})


def derive_requirement_status(
    current: RequirementStatus | str,
    linked_statuses: list[TaskStatus | str],
) -> RequirementStatus | None:
    """New status for a requirement, or None when it should not change."""
    current = RequirementStatus(current)
    if current == RequirementStatus.CLOSED:
        return None
    statuses = [TaskStatus(s) for s in linked_statuses]
    if statuses and all(s == TaskStatus.DONE for s in statuses):
        target = RequirementStatus.COMPLETED
    elif any(s in IN_FLIGHT for s in statuses) and current in (
        RequirementStatus.OPEN, RequirementStatus.COMPLETED,
    ):
        target = RequirementStatus.IN_PROGRESS
    else:
        return None
    return target if target != current else None


class RequirementSyncEngine:
    def __init__(self, session: AsyncSession) -> None:
        self._requirements = RequirementRepository(session)
        self._tasks = TaskRepository(session)

    async def sync(self, task_id: UUID, new_status: TaskStatus | str | None = None) -> list[UUID]:
        """Re-derive every requirement linked to a task. Returns changed ids.

        ``new_status`` is informational; statuses are always re-read so a
        stale caller cannot push a requirement backwards.
        """
        changed: list[UUID] = []
        for requirement_id in await self._requirements.ids_linked_to_task(task_id):
            current = await self._requirements.get_status(requirement_id)
            if current is None:
                continue
            task_ids = await self._requirements.linked_task_ids(requirement_id)
            statuses = await self._tasks.statuses(task_ids)
            target = derive_requirement_status(current, list(statuses.values()))
            if target is None:
                continue
            if await self._requirements.compare_and_set_status(requirement_id, current, target):
                changed.append(requirement_id)
                logger.info(
                    "requirement_status_derived",
                    requirement_id=str(requirement_id),
                    from_status=current, to_status=target.value,
                    task_id=str(task_id), task_status=str(new_status) if new_status else None,
                )
        return changed
