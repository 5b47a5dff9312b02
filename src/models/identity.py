"""Request-scoped identity established by the session guard."""

from uuid import UUID

from pydantic import Field

from src.models.common import AtelierBase, PrincipalKind


class Identity(AtelierBase):
    """Authenticated principal plus its resolved permission set."""

    model_config = {**AtelierBase.model_config, "frozen": True}

    principal_id: UUID
    kind: PrincipalKind
    workspace_id: UUID
    name: str = ""
    email: str | None = None
    role: str = Field(default="MEMBER", description="Role label carried in tokens.")
    role_id: UUID | None = None
    role_name: str = ""
    client_id: UUID | None = None
    client_name: str | None = None
    permissions: frozenset[str] = frozenset()

    @property
    def is_owner(self) -> bool:
        return self.kind == PrincipalKind.OWNER

    @property
    def is_client(self) -> bool:
        return self.kind == PrincipalKind.CLIENT

    def has(self, permission: str) -> bool:
        return self.is_owner or permission in self.permissions

    def to_profile(self) -> dict:
        """User payload returned by the auth endpoints."""
        profile = {
            "id": str(self.principal_id),
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "role_id": str(self.role_id) if self.role_id else None,
            "role_name": self.role_name,
            "workspace_id": str(self.workspace_id),
            "kind": self.kind.value,
            "permissions": sorted(self.permissions),
        }
        if self.is_client:
            profile["client_id"] = str(self.client_id)
            profile["client_name"] = self.client_name
        return profile
