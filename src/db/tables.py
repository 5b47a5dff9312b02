"""SQLAlchemy ORM table models for Atelier.

All tables defined in a single file. No ORM relationships: repositories join
explicitly with ``select``.

Categories:
- PRINCIPALS: Workspace (owner), Member, Client, Invite
- RBAC: Permission (platform-wide), Role, RolePermission
- WORK: Task, TaskAssignee, TaskHistory, TaskAttachment
- REQUIREMENTS: Requirement, RequirementTaskLink, RequirementComment,
  RequirementAttachment
- APPEND-ONLY: TaskHistory, RequirementComment (rows are inserted, never
  rewritten, so concurrent appends cannot lose entries)
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.db.session import Base


class PrincipalCredentialsMixin:
    """Columns shared by the three principal kinds."""

    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    password_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    private_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_expires: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    remember_me: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


class WorkspaceRow(PrincipalCredentialsMixin, Base):
    """A workspace and its owner. The owner's principal id is workspace_id."""

    __tablename__ = "workspaces"

    workspace_id: Mapped[UUID] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MemberRow(PrincipalCredentialsMixin, Base):
    __tablename__ = "members"

    member_id: Mapped[UUID] = mapped_column(primary_key=True)
    workspace_id: Mapped[UUID] = mapped_column(
        ForeignKey("workspaces.workspace_id"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role_id: Mapped[UUID | None] = mapped_column(nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ClientRow(PrincipalCredentialsMixin, Base):
    """Portal-only principal. No password means invited, not yet activated."""

    __tablename__ = "clients"

    client_id: Mapped[UUID] = mapped_column(primary_key=True)
    workspace_id: Mapped[UUID] = mapped_column(
        ForeignKey("workspaces.workspace_id"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    invite_token_hash: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    invite_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InviteRow(Base):
    """Operational — status transitions allowed."""

    __tablename__ = "invites"

    invite_id: Mapped[UUID] = mapped_column(primary_key=True)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role_id: Mapped[UUID | None] = mapped_column(nullable=True)
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


class PermissionRow(Base):
    """Platform-wide capability key, shared read-only by every workspace."""

    __tablename__ = "permissions"

    permission_id: Mapped[UUID] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    group: Mapped[str] = mapped_column(String(100), nullable=False)


class RoleRow(Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_role_workspace_name"),
    )

    role_id: Mapped[UUID] = mapped_column(primary_key=True)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RolePermissionRow(Base):
    __tablename__ = "role_permissions"

    role_id: Mapped[UUID] = mapped_column(
        ForeignKey("roles.role_id", ondelete="CASCADE"), primary_key=True,
    )
    permission_id: Mapped[UUID] = mapped_column(
        ForeignKey("permissions.permission_id", ondelete="CASCADE"), primary_key=True,
    )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskRow(Base):
    """Operational — status only changes through conditional updates."""

    __tablename__ = "tasks"

    task_id: Mapped[UUID] = mapped_column(primary_key=True)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    client_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="TODO", nullable=False)
    created_by: Mapped[UUID] = mapped_column(nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskAssigneeRow(Base):
    __tablename__ = "task_assignees"

    task_id: Mapped[UUID] = mapped_column(
        ForeignKey("tasks.task_id", ondelete="CASCADE"), primary_key=True,
    )
    principal_id: Mapped[UUID] = mapped_column(primary_key=True, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TaskHistoryRow(Base):
    """Append-only transition ledger."""

    __tablename__ = "task_history"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[UUID] = mapped_column(
        ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_status: Mapped[str] = mapped_column(String(30), nullable=False)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(nullable=False)
    actor_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    note: Mapped[str] = mapped_column(Text, default="", nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskAttachmentRow(Base):
    __tablename__ = "task_attachments"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[UUID] = mapped_column(
        ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False, index=True,
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(200), nullable=False)
    uploaded_by: Mapped[UUID] = mapped_column(nullable=False)
    uploaded_by_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    context: Mapped[str] = mapped_column(String(20), default="reference", nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


class RequirementRow(Base):
    """Status is derived from linked tasks except for manual CLOSED."""

    __tablename__ = "requirements"

    requirement_id: Mapped[UUID] = mapped_column(primary_key=True)
    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    client_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="MEDIUM", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="OPEN", nullable=False)
    created_by: Mapped[UUID] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RequirementTaskLinkRow(Base):
    __tablename__ = "requirement_task_links"

    requirement_id: Mapped[UUID] = mapped_column(
        ForeignKey("requirements.requirement_id", ondelete="CASCADE"), primary_key=True,
    )
    task_id: Mapped[UUID] = mapped_column(primary_key=True, index=True)
    linked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RequirementCommentRow(Base):
    """Append-only comment thread."""

    __tablename__ = "requirement_comments"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requirement_id: Mapped[UUID] = mapped_column(
        ForeignKey("requirements.requirement_id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    author_id: Mapped[UUID] = mapped_column(nullable=False)
    author_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    author_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RequirementAttachmentRow(Base):
    __tablename__ = "requirement_attachments"

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requirement_id: Mapped[UUID] = mapped_column(
        ForeignKey("requirements.requirement_id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(200), nullable=False)
    uploaded_by: Mapped[UUID] = mapped_column(nullable=False)
    uploaded_by_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    uploaded_by_kind: Mapped[str] = mapped_column(String(20), default="client", nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
