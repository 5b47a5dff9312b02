"""Permission resolver with a Redis read-through cache.

Rules, in priority order:

- Client: empty set, role name "Client". Never cached.
- Owner: the whole platform catalog, role name "Owner".
- Member with a role: that role's keys and name. A dangling role id
  resolves to an empty set named "Member".
- Member without a role: the workspace's system MEMBER role, "Member".

Results are cached under ``perms:{principal_id}`` for five minutes. The
cache is optional; a miss or an outage falls through to the database.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.principals import PrincipalHandle
from src.cache.redis_cache import RedisCache
from src.models.common import PrincipalKind
from src.rbac.catalog import MEMBER_ROLE
from src.repositories.roles import PermissionRepository, RoleRepository

CACHE_PREFIX = "perms:"
DEFAULT_TTL_SECONDS = 300


@dataclass(frozen=True)
class ResolvedPermissions:
    permission_keys: frozenset[str]
    role_name: str

    def to_cache(self) -> dict:
        return {"permissions": sorted(self.permission_keys), "role_name": self.role_name}

    @classmethod
    def from_cache(cls, payload: object) -> "ResolvedPermissions | None":
        if not isinstance(payload, dict):
            return None
        keys = payload.get("permissions")
        role_name = payload.get("role_name")
        if not isinstance(keys, list) or not isinstance(role_name, str):
            return None
        return cls(permission_keys=frozenset(keys), role_name=role_name)


CLIENT_PERMISSIONS = ResolvedPermissions(permission_keys=frozenset(), role_name="Client")


def cache_key(principal_id: UUID) -> str:
    return f"{CACHE_PREFIX}{principal_id}"


class PermissionResolver:
    def __init__(self, session: AsyncSession, cache: RedisCache,
                 ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._session = session
        self._cache = cache
        self._ttl = ttl_seconds

    async def resolve(self, handle: PrincipalHandle) -> ResolvedPermissions:
        if handle.kind == PrincipalKind.CLIENT:
            return CLIENT_PERMISSIONS

        key = cache_key(handle.principal_id)
        cached = ResolvedPermissions.from_cache(await self._cache.get_json(key))
        if cached is not None:
            return cached

        resolved = await self.compute(handle)
        await self._cache.set_json(key, resolved.to_cache(), self._ttl)
        return resolved

    async def compute(self, handle: PrincipalHandle) -> ResolvedPermissions:
        """Resolve straight from the database, bypassing the cache."""
        if handle.kind == PrincipalKind.CLIENT:
            return CLIENT_PERMISSIONS
        if handle.kind == PrincipalKind.OWNER:
            keys = await PermissionRepository(self._session).all_keys()
            return ResolvedPermissions(permission_keys=frozenset(keys), role_name="Owner")

        roles = RoleRepository(self._session)
        if handle.role_id is not None:
            role = await roles.get(handle.role_id)
            if role is None:
                return ResolvedPermissions(permission_keys=frozenset(), role_name="Member")
            keys = await roles.permission_keys(role.role_id)
            return ResolvedPermissions(permission_keys=frozenset(keys), role_name=role.name or "Member")

        member_role = await roles.get_by_name(handle.workspace_id, MEMBER_ROLE, system=True)
        if member_role is None:
            return ResolvedPermissions(permission_keys=frozenset(), role_name="Member")
        keys = await roles.permission_keys(member_role.role_id)
        return ResolvedPermissions(permission_keys=frozenset(keys), role_name="Member")


async def invalidate_principal(cache: RedisCache, *principal_ids: UUID) -> None:
    await cache.delete(*(cache_key(pid) for pid in principal_ids))


async def invalidate_all(cache: RedisCache) -> None:
    """Role-level mutations can affect any member sharing the role."""
    await cache.delete_pattern(f"{CACHE_PREFIX}*")
