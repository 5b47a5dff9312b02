"""Permission gate and its FastAPI dependency factories.

Owners always pass so a workspace owner can never lock themselves out.
Failure is ``Forbidden``; the identity is already known at this point.
"""

from collections.abc import Callable, Iterable
from typing import Literal

from fastapi import Depends

from src.api.dependencies import get_identity
from src.models.errors import Forbidden
from src.models.identity import Identity

Mode = Literal["any", "all"]


def authorize(identity: Identity, required: Iterable[str], mode: Mode = "any") -> bool:
    if identity.is_owner:
        return True
    required = list(required)
    if mode == "all":
        return all(p in identity.permissions for p in required)
    return any(p in identity.permissions for p in required)


def _gate(required: tuple[str, ...], mode: Mode) -> Callable:
    async def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not authorize(identity, required, mode):
            raise Forbidden()
        return identity

    return dependency


def require_permission(*keys: str) -> Callable:
    """Dependency passing when the identity holds any of ``keys``."""
    return _gate(keys, "any")


def require_all_permissions(*keys: str) -> Callable:
    """Dependency passing only when the identity holds every key."""
    return _gate(keys, "all")


async def require_client_portal(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_client:
        raise Forbidden("Client portal access only")
    return identity
