"""Initial schema — principals, RBAC, tasks and requirements.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _credential_columns() -> list[sa.Column]:
    return [
        sa.Column("email", sa.String(320), nullable=True, index=True),
        sa.Column("password_hash", sa.Text, nullable=True),
        sa.Column("private_key", sa.Text, nullable=True),
        sa.Column("public_key", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("refresh_token_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remember_me", sa.Boolean, server_default=sa.false(), nullable=False),
    ]


def upgrade() -> None:
    # -- Principals --
    op.create_table(
        "workspaces",
        sa.Column("workspace_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("owner_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), server_default="", nullable=False),
        *_credential_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "members",
        sa.Column("member_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", UUID(as_uuid=True),
                  sa.ForeignKey("workspaces.workspace_id"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("role_id", UUID(as_uuid=True), nullable=True, index=True),
        *_credential_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "clients",
        sa.Column("client_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", UUID(as_uuid=True),
                  sa.ForeignKey("workspaces.workspace_id"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_name", sa.String(255), server_default="", nullable=False),
        sa.Column("status", sa.String(20), server_default="ACTIVE", nullable=False),
        sa.Column("invite_token_hash", sa.String(128), nullable=True, index=True),
        sa.Column("invite_expires_at", sa.DateTime(timezone=True), nullable=True),
        *_credential_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "invites",
        sa.Column("invite_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("role_id", UUID(as_uuid=True), nullable=True),
        sa.Column("token_hash", sa.String(128), nullable=False, index=True),
        sa.Column("status", sa.String(20), server_default="PENDING", nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # -- RBAC --
    op.create_table(
        "permissions",
        sa.Column("permission_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("key", sa.String(100), nullable=False, unique=True),
        sa.Column("label", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, server_default="", nullable=False),
        sa.Column("group", sa.String(100), nullable=False),
    )

    op.create_table(
        "roles",
        sa.Column("role_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_system", sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("workspace_id", "name", name="uq_role_workspace_name"),
    )

    op.create_table(
        "role_permissions",
        sa.Column("role_id", UUID(as_uuid=True),
                  sa.ForeignKey("roles.role_id", ondelete="CASCADE"), primary_key=True),
        sa.Column("permission_id", UUID(as_uuid=True),
                  sa.ForeignKey("permissions.permission_id", ondelete="CASCADE"),
                  primary_key=True),
    )

    # -- Tasks --
    op.create_table(
        "tasks",
        sa.Column("task_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, server_default="", nullable=False),
        sa.Column("status", sa.String(30), server_default="TODO", nullable=False),
        sa.Column("created_by", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "task_assignees",
        sa.Column("task_id", UUID(as_uuid=True),
                  sa.ForeignKey("tasks.task_id", ondelete="CASCADE"), primary_key=True),
        sa.Column("principal_id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column("position", sa.Integer, server_default="0", nullable=False),
    )

    # -- Task history (APPEND-ONLY) --
    op.create_table(
        "task_history",
        sa.Column("row_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("task_id", UUID(as_uuid=True),
                  sa.ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("from_status", sa.String(30), nullable=False),
        sa.Column("to_status", sa.String(30), nullable=False),
        sa.Column("actor_id", UUID(as_uuid=True), nullable=False),
        sa.Column("actor_name", sa.String(255), server_default="", nullable=False),
        sa.Column("note", sa.Text, server_default="", nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "task_attachments",
        sa.Column("row_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("task_id", UUID(as_uuid=True),
                  sa.ForeignKey("tasks.task_id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("key", sa.Text, nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("size", sa.Integer, nullable=False),
        sa.Column("mime_type", sa.String(200), nullable=False),
        sa.Column("uploaded_by", UUID(as_uuid=True), nullable=False),
        sa.Column("uploaded_by_name", sa.String(255), server_default="", nullable=False),
        sa.Column("context", sa.String(20), server_default="reference", nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )

    # -- Requirements --
    op.create_table(
        "requirements",
        sa.Column("requirement_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, server_default="", nullable=False),
        sa.Column("priority", sa.String(20), server_default="MEDIUM", nullable=False),
        sa.Column("status", sa.String(20), server_default="OPEN", nullable=False),
        sa.Column("created_by", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "requirement_task_links",
        sa.Column("requirement_id", UUID(as_uuid=True),
                  sa.ForeignKey("requirements.requirement_id", ondelete="CASCADE"),
                  primary_key=True),
        sa.Column("task_id", UUID(as_uuid=True), primary_key=True, index=True),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False),
    )

    # -- Requirement comments (APPEND-ONLY) --
    op.create_table(
        "requirement_comments",
        sa.Column("row_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("requirement_id", UUID(as_uuid=True),
                  sa.ForeignKey("requirements.requirement_id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("author_id", UUID(as_uuid=True), nullable=False),
        sa.Column("author_name", sa.String(255), server_default="", nullable=False),
        sa.Column("author_kind", sa.String(20), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "requirement_attachments",
        sa.Column("row_id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("requirement_id", UUID(as_uuid=True),
                  sa.ForeignKey("requirements.requirement_id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("key", sa.Text, nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("size", sa.Integer, nullable=False),
        sa.Column("mime_type", sa.String(200), nullable=False),
        sa.Column("uploaded_by", UUID(as_uuid=True), nullable=False),
        sa.Column("uploaded_by_name", sa.String(255), server_default="", nullable=False),
        sa.Column("uploaded_by_kind", sa.String(20), server_default="client", nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("requirement_attachments")
    op.drop_table("requirement_comments")
    op.drop_table("requirement_task_links")
    op.drop_table("requirements")
    op.drop_table("task_attachments")
    op.drop_table("task_history")
    op.drop_table("task_assignees")
    op.drop_table("tasks")
    op.drop_table("role_permissions")
    op.drop_table("roles")
    op.drop_table("permissions")
    op.drop_table("invites")
    op.drop_table("clients")
    op.drop_table("members")
    op.drop_table("workspaces")
