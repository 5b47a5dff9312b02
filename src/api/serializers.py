"""Response payloads shared by the staff and portal routers.

Batch loaders: one query per related table for a whole page of rows.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.principals import resolve_actor_names
from src.db.tables import (
    RequirementAttachmentRow,
    RequirementCommentRow,
    RequirementRow,
    TaskAttachmentRow,
    TaskHistoryRow,
    TaskRow,
)
from src.repositories.principals import ClientRepository
from src.repositories.requirements import RequirementRepository
from src.repositories.tasks import TaskRepository


def task_attachment_payload(row: TaskAttachmentRow) -> dict:
    return {
        "key": row.key,
        "name": row.name,
        "size": row.size,
        "mime_type": row.mime_type,
        "uploaded_by": str(row.uploaded_by),
        "uploaded_by_name": row.uploaded_by_name or "Unknown",
        "context": row.context,
        "at": row.at,
    }


def history_payload(row: TaskHistoryRow) -> dict:
    return {
        "from": row.from_status,
        "to": row.to_status,
        "by": str(row.actor_id),
        "by_name": row.actor_name or "Unknown",
        "note": row.note,
        "at": row.at,
    }


async def serialize_tasks(session: AsyncSession, rows: list[TaskRow]) -> list[dict]:
    if not rows:
        return []
    tasks = TaskRepository(session)
    ids = [r.task_id for r in rows]
    assignees = await tasks.assignees_for(ids)
    attachments = await tasks.attachments_for(ids)
    history = await tasks.history_for(ids)
    client_names = await ClientRepository(session).names({r.client_id for r in rows})
    people = {r.created_by for r in rows}
    for principal_ids in assignees.values():
        people.update(principal_ids)
    names = await resolve_actor_names(session, people)

    return [
        {
            "id": str(r.task_id),
            "client_id": str(r.client_id),
            "client_name": client_names.get(r.client_id, "Unknown"),
            "title": r.title,
            "description": r.description,
            "status": r.status,
            "assigned_to": [
                {"id": str(p), "name": names.get(p, "Unknown")}
                for p in assignees.get(r.task_id, [])
            ],
            "attachments": [task_attachment_payload(a) for a in attachments.get(r.task_id, [])],
            "history": [history_payload(h) for h in history.get(r.task_id, [])],
            "created_by": str(r.created_by),
            "created_by_name": names.get(r.created_by, "Unknown"),
            "created_at": r.created_at,
            "updated_at": r.updated_at,
        }
        for r in rows
    ]


async def serialize_task(session: AsyncSession, row: TaskRow) -> dict:
    return (await serialize_tasks(session, [row]))[0]


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


def requirement_attachment_payload(row: RequirementAttachmentRow) -> dict:
    return {
        "key": row.key,
        "name": row.name,
        "size": row.size,
        "mime_type": row.mime_type,
        "uploaded_by": str(row.uploaded_by),
        "uploaded_by_name": row.uploaded_by_name or "Unknown",
        "uploaded_by_kind": row.uploaded_by_kind,
        "at": row.at,
    }


def comment_payload(row: RequirementCommentRow) -> dict:
    return {
        "by": str(row.author_id),
        "by_name": row.author_name or "Unknown",
        "by_kind": row.author_kind,
        "message": row.message,
        "at": row.at,
    }


async def serialize_requirements(session: AsyncSession,
                                 rows: list[RequirementRow]) -> list[dict]:
    """List view: counts and linked task summaries, no threads."""
    if not rows:
        return []
    requirements = RequirementRepository(session)
    ids = [r.requirement_id for r in rows]
    links = await requirements.linked_task_ids_for(ids)
    comment_counts = await requirements.comment_counts(ids)
    attachment_counts = await requirements.attachment_counts(ids)
    all_task_ids = [t for task_ids in links.values() for t in task_ids]
    summaries = await TaskRepository(session).summaries(all_task_ids)
    client_names = await ClientRepository(session).names({r.client_id for r in rows})

    payload = []
    for r in rows:
        linked = [summaries[t] for t in links.get(r.requirement_id, []) if t in summaries]
        payload.append({
            "id": str(r.requirement_id),
            "client_id": str(r.client_id),
            "client_name": client_names.get(r.client_id, "Unknown"),
            "title": r.title,
            "description": r.description,
            "priority": r.priority,
            "status": r.status,
            "linked_tasks": [
                {"id": str(t.task_id), "title": t.title, "status": t.status} for t in linked
            ],
            "linked_task_count": len(linked),
            "comments_count": comment_counts.get(r.requirement_id, 0),
            "attachments_count": attachment_counts.get(r.requirement_id, 0),
            "created_at": r.created_at,
            "updated_at": r.updated_at,
        })
    return payload


async def serialize_requirement_detail(session: AsyncSession, row: RequirementRow) -> dict:
    requirements = RequirementRepository(session)
    payload = (await serialize_requirements(session, [row]))[0]
    names = await resolve_actor_names(session, {row.created_by})
    payload["created_by"] = str(row.created_by)
    payload["created_by_name"] = names.get(row.created_by, "Unknown")
    payload["comments"] = [comment_payload(c) for c in await requirements.comments(row.requirement_id)]
    payload["attachments"] = [
        requirement_attachment_payload(a)
        for a in await requirements.attachments(row.requirement_id)
    ]
    return payload
