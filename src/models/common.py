"""Shared types, enums, and base models used across Atelier domain models."""

from datetime import datetime, timezone
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel
from uuid_extensions import uuid7


def utc_now() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(tz=timezone.utc)


def new_uuid7() -> UUID:
    """Generate a new time-sortable UUID v7."""
    return uuid7()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# --- Shared enums ---


class PrincipalKind(StrEnum):
    """Discriminator carried in token claims as ``kind``."""

    OWNER = "owner"
    MEMBER = "member"
    CLIENT = "client"


class TaskStatus(StrEnum):
    """Work item lifecycle states. DONE is terminal."""

    TODO = "TODO"
    DOING = "DOING"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    SENT_TO_CLIENT = "SENT_TO_CLIENT"
    REVISION = "REVISION"
    DONE = "DONE"


class RequirementStatus(StrEnum):
    """Requirement status. CLOSED is set manually and freezes derivation."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"


class RequirementPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ClientStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INVITED = "INVITED"
    ARCHIVED = "ARCHIVED"


class InviteStatus(StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REVOKED = "REVOKED"


class AttachmentContext(StrEnum):
    """Why a file is attached to a task."""

    REFERENCE = "reference"
    DELIVERABLE = "deliverable"


# --- Base model ---


class AtelierBase(BaseModel):
    """Base model with common configuration for all Atelier Pydantic models."""

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,
        "protected_namespaces": (),
    }


def normalize_email(value: str | None) -> str | None:
    """Lower-case and trim an address. None when it cannot be an address."""
    if value is None:
        return None
    email = value.strip().lower()
    local, _, domain = email.partition("@")
    if not local or "." not in domain or " " in email:
        return None
    return email
