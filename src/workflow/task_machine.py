"""Task state machine.

TODO -> DOING -> READY_FOR_REVIEW -> SENT_TO_CLIENT -> DONE
                        |                 |
                        v                 v
                     REVISION <-----------+
                        |
                        +-> DOING

DONE is terminal. Ungated moves (Start, Submit for Review, Start Rework) are
open to the owner, to TASK_VIEW_ALL holders, and to TASK_MOVE_OWN holders
who created or are assigned to the task. Gated moves need their permission;
the owner bypasses every gate, and the task's own client may record its
decision on a task sent to it.

Every applied transition is read-then-validate-then-write against the
latest persisted status, appends one history row, and only then triggers
requirement sync inside a savepoint.
"""

from dataclasses import dataclass, field
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.principals import resolve_actor_name
from src.db.tables import TaskHistoryRow, TaskRow
from src.models.common import TaskStatus
from src.models.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationFailed
from src.models.identity import Identity
from src.rbac.catalog import Permission
from src.repositories.tasks import TaskRepository
from src.workflow.requirement_sync import RequirementSyncEngine

logger = structlog.get_logger(__name__)

MAX_APPLY_ATTEMPTS = 3


@dataclass(frozen=True)
class Transition:
    source: TaskStatus
    target: TaskStatus
    permission: Permission | None
    label: str

    @property
    def gated(self) -> bool:
        return self.permission is not None


_T = TaskStatus

TRANSITIONS: dict[TaskStatus, tuple[Transition, ...]] = {
    _T.TODO: (
        Transition(_T.TODO, _T.DOING, None, "Start"),
    ),
    _T.DOING: (
        Transition(_T.DOING, _T.READY_FOR_REVIEW, None, "Submit for Review"),
    ),
    _T.READY_FOR_REVIEW: (
        Transition(_T.READY_FOR_REVIEW, _T.SENT_TO_CLIENT, Permission.TASK_SEND_TO_CLIENT, "Send to Client"),
        Transition(_T.READY_FOR_REVIEW, _T.REVISION, Permission.TASK_REVIEW, "Request Changes"),
    ),
    _T.SENT_TO_CLIENT: (
        Transition(_T.SENT_TO_CLIENT, _T.DONE, Permission.TASK_CLIENT_DECISION, "Client Approved"),
        Transition(_T.SENT_TO_CLIENT, _T.REVISION, Permission.TASK_CLIENT_DECISION, "Client Rejected"),
    ),
    _T.REVISION: (
        Transition(_T.REVISION, _T.DOING, None, "Start Rework"),
    ),
    _T.DONE: (),
}


def allowed_targets(status: TaskStatus | str) -> list[TaskStatus]:
    return [t.target for t in TRANSITIONS.get(TaskStatus(status), ())]


def find_transition(status: TaskStatus | str, target: TaskStatus | str) -> Transition | None:
    for transition in TRANSITIONS.get(TaskStatus(status), ()):
        if transition.target == target:
            return transition
    return None


def transition_error(status: TaskStatus | str, target: TaskStatus | str) -> InvalidTransition:
    allowed = ", ".join(t.value for t in allowed_targets(status)) or "none (terminal)"
    return InvalidTransition(
        f"Cannot move from {TaskStatus(status).value} to {target}. Allowed: {allowed}"
    )


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def is_involved(identity: Identity, task: TaskRow, assignees: list[UUID]) -> bool:
    return task.created_by == identity.principal_id or identity.principal_id in assignees


def can_view(identity: Identity, task: TaskRow, assignees: list[UUID]) -> bool:
    if task.workspace_id != identity.workspace_id:
        return False
    if identity.is_client:
        return task.client_id == identity.client_id
    if identity.has(Permission.TASK_VIEW_ALL):
        return True
    return is_involved(identity, task, assignees)


def can_apply(identity: Identity, task: TaskRow, assignees: list[UUID],
              transition: Transition) -> bool:
    if identity.is_owner:
        return True
    if transition.permission is not None:
        if transition.permission in identity.permissions:
            return True
        return (
            transition.permission == Permission.TASK_CLIENT_DECISION
            and identity.is_client
            and identity.client_id == task.client_id
        )
    if Permission.TASK_VIEW_ALL in identity.permissions:
        return True
    return Permission.TASK_MOVE_OWN in identity.permissions and is_involved(identity, task, assignees)


def forbidden_for(transition: Transition) -> Forbidden:
    if transition.permission is not None:
        return Forbidden(f"You need the {transition.permission.value} permission for this action")
    return Forbidden("You can only update tasks assigned to you")


def ensure_editable(task: TaskRow, message: str = "Cannot edit a completed task") -> None:
    """Raises:
        ValidationFailed: if the task is DONE.
    """
    if task.status == TaskStatus.DONE:
        raise ValidationFailed(message)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


@dataclass
class TransitionOutcome:
    task: TaskRow
    history: TaskHistoryRow
    transition: Transition
    requirements_changed: list[UUID] = field(default_factory=list)


class TaskWorkflow:
    def __init__(self, session: AsyncSession,
                 sync_engine: RequirementSyncEngine | None = None) -> None:
        self._session = session
        self._tasks = TaskRepository(session)
        self._sync = sync_engine or RequirementSyncEngine(session)

    async def apply(self, identity: Identity, task_id: UUID, target: TaskStatus | str,
                    note: str = "") -> TransitionOutcome:
        """Move a task to ``target`` on behalf of ``identity``.

        Raises:
            NotFound: task missing, in another workspace, or not the client's.
            InvalidTransition: no edge from the current status to ``target``.
            Forbidden: the identity may not apply this edge.
            Conflict: the status kept changing underneath every attempt.
        """
        try:
            target = TaskStatus(target)
        except ValueError:
            raise ValidationFailed(f"Invalid status: {target}") from None

        for _attempt in range(MAX_APPLY_ATTEMPTS):
            task = await self._tasks.get_fresh(task_id)
            if task is None or task.workspace_id != identity.workspace_id:
                raise NotFound("Task not found")
            if identity.is_client and task.client_id != identity.client_id:
                raise NotFound("Task not found")

            current = TaskStatus(task.status)
            transition = find_transition(current, target)
            if transition is None:
                raise transition_error(current, target)
            assignees = await self._tasks.assignees(task_id)
            if not can_apply(identity, task, assignees, transition):
                raise forbidden_for(transition)

            if await self._tasks.compare_and_set_status(task_id, current, target):
                break
            logger.info("task_transition_raced", task_id=str(task_id), expected=current.value)
        else:
            raise Conflict("Task was modified concurrently, please retry")

        actor_name = identity.name or await resolve_actor_name(self._session, identity.principal_id)
        history = await self._tasks.append_history(
            task_id=task_id, from_status=current.value, to_status=target.value,
            actor_id=identity.principal_id, actor_name=actor_name,
            note=(note or "").strip(),
        )
        changed = await self.sync_requirements(task_id, target)
        task = await self._tasks.get_fresh(task_id)
        return TransitionOutcome(
            task=task, history=history, transition=transition, requirements_changed=changed,
        )

    async def sync_requirements(self, task_id: UUID, status: TaskStatus) -> list[UUID]:
        """Run requirement sync in a savepoint; failures never reach the caller."""
        try:
            async with self._session.begin_nested():
                return await self._sync.sync(task_id, status)
        except Exception:
            logger.exception("requirement_sync_failed", task_id=str(task_id), status=status.value)
            return []
