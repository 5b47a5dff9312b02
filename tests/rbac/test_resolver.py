"""Tests for the permission resolver and its cache behaviour."""

import json

import pytest

from src.auth.principals import PrincipalHandle
from src.cache.redis_cache import RedisCache
from src.models.common import PrincipalKind
from src.rbac.catalog import MEMBER_PERMISSIONS, PERMISSION_KEYS
from src.rbac.resolver import (
    CLIENT_PERMISSIONS,
    PermissionResolver,
    ResolvedPermissions,
    cache_key,
    invalidate_all,
    invalidate_principal,
)
from src.repositories.roles import RoleRepository


@pytest.fixture
def resolver(db_session, cache) -> PermissionResolver:
    return PermissionResolver(db_session, cache, ttl_seconds=300)


class TestResolutionRules:

    @pytest.mark.anyio
    async def test_owner_gets_whole_catalog(self, resolver, factory) -> None:
        workspace = await factory.workspace()
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.OWNER, workspace))
        assert resolved.permission_keys == PERMISSION_KEYS
        assert resolved.role_name == "Owner"

    @pytest.mark.anyio
    async def test_member_with_role(self, resolver, factory) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Graphic Designer")
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))
        assert resolved.role_name == "Graphic Designer"
        assert resolved.permission_keys == {"PAGE_DASHBOARD", "PAGE_TASKS", "TASK_MOVE_OWN"}

    @pytest.mark.anyio
    async def test_member_without_role_falls_back_to_member_role(self, resolver, factory) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace)
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))
        assert resolved.role_name == "Member"
        assert resolved.permission_keys == {p.value for p in MEMBER_PERMISSIONS}

    @pytest.mark.anyio
    async def test_dangling_role_resolves_empty(self, resolver, factory, db_session) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, permissions=["PAGE_TASKS"])
        roles = RoleRepository(db_session)
        await roles.delete(await roles.get(member.role_id))

        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))
        assert resolved.permission_keys == frozenset()
        assert resolved.role_name == "Member"

    @pytest.mark.anyio
    async def test_client_is_empty_and_uncached(self, resolver, factory, fake_redis) -> None:
        workspace = await factory.workspace()
        client = await factory.client(workspace)
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.CLIENT, client))
        assert resolved == CLIENT_PERMISSIONS
        assert fake_redis.store == {}


class TestCaching:

    @pytest.mark.anyio
    async def test_result_cached_with_ttl(self, resolver, factory, fake_redis) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Editor")
        await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))

        key = cache_key(member.member_id)
        assert fake_redis.ttls[key] == 300
        payload = json.loads(fake_redis.store[key])
        assert payload["role_name"] == "Editor"
        assert payload["permissions"] == sorted(payload["permissions"])

    @pytest.mark.anyio
    async def test_cache_hit_skips_database(self, resolver, factory, fake_redis) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Editor")
        fake_redis.store[cache_key(member.member_id)] = json.dumps(
            {"permissions": ["PAGE_TASKS"], "role_name": "Cached"},
        )
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))
        assert resolved == ResolvedPermissions(frozenset({"PAGE_TASKS"}), "Cached")

    @pytest.mark.anyio
    async def test_corrupt_entry_is_a_miss(self, resolver, factory, fake_redis) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Editor")
        fake_redis.store[cache_key(member.member_id)] = json.dumps({"permissions": "nope"})
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))
        assert resolved.role_name == "Editor"

    @pytest.mark.anyio
    async def test_unreachable_cache_falls_through(
        self, db_session, factory, unreachable_redis,
    ) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Secretary")
        resolver = PermissionResolver(db_session, RedisCache(unreachable_redis))

        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.MEMBER, member))
        assert resolved.role_name == "Secretary"
        assert unreachable_redis.calls == 2

    @pytest.mark.anyio
    async def test_disabled_cache(self, db_session, factory) -> None:
        workspace = await factory.workspace()
        resolver = PermissionResolver(db_session, RedisCache(None))
        resolved = await resolver.resolve(PrincipalHandle(PrincipalKind.OWNER, workspace))
        assert resolved.role_name == "Owner"

    @pytest.mark.anyio
    async def test_role_change_visible_after_invalidation(
        self, resolver, factory, db_session, cache,
    ) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Graphic Designer")
        handle = PrincipalHandle(PrincipalKind.MEMBER, member)
        await resolver.resolve(handle)

        member.role_id = await factory.role_id(workspace, "Manager")
        await db_session.flush()
        assert (await resolver.resolve(handle)).role_name == "Graphic Designer"

        await invalidate_principal(cache, member.member_id)
        assert (await resolver.resolve(handle)).role_name == "Manager"


class TestInvalidation:

    @pytest.mark.anyio
    async def test_invalidate_all_only_touches_permission_keys(self, cache, fake_redis) -> None:
        fake_redis.store.update({"perms:a": "{}", "perms:b": "{}", "other:c": "{}"})
        await invalidate_all(cache)
        assert fake_redis.store == {"other:c": "{}"}

    @pytest.mark.anyio
    async def test_invalidate_principal(self, cache, fake_redis, factory) -> None:
        workspace = await factory.workspace()
        key = cache_key(workspace.workspace_id)
        fake_redis.store[key] = "{}"
        fake_redis.store["perms:someone-else"] = "{}"
        await invalidate_principal(cache, workspace.workspace_id)
        assert key not in fake_redis.store
        assert "perms:someone-else" in fake_redis.store
