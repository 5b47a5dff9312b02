"""Tests for registration, login and session endpoints."""

import pytest

from src.auth.cookies import ACCESS_COOKIE, REFRESH_COOKIE
from src.models.common import ClientStatus


class TestRegister:

    @pytest.mark.anyio
    async def test_register_creates_workspace_with_roles(self, client, password) -> None:
        response = await client.post("/v1/auth/register", json={
            "name": "Northwind", "owner_name": "Nora", "email": "Nora@Example.com",
            "password": password,
        })
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["email"] == "nora@example.com"
        assert user["workspace_name"] == "Northwind"

        login = await client.post("/v1/auth/login", json={
            "email": "nora@example.com", "password": password,
        })
        assert login.status_code == 200
        roles = await client.get("/v1/roles")
        names = {r["name"] for r in roles.json()["roles"]}
        assert {"OWNER", "MEMBER", "Editor", "Manager"} <= names

    @pytest.mark.anyio
    async def test_register_disabled(self, client, settings, password) -> None:
        settings.ALLOW_REGISTRATION = False
        response = await client.post("/v1/auth/register", json={
            "name": "Closed", "owner_name": "C", "email": "c@example.com", "password": password,
        })
        assert response.status_code == 403
        assert response.json()["message"] == "Registration is disabled"

    @pytest.mark.anyio
    async def test_register_rejects_taken_email(self, client, factory, password) -> None:
        workspace = await factory.workspace()
        response = await client.post("/v1/auth/register", json={
            "name": "Copy", "owner_name": "C", "email": workspace.email, "password": password,
        })
        assert response.status_code == 409

    @pytest.mark.anyio
    async def test_register_rejects_short_password(self, client) -> None:
        response = await client.post("/v1/auth/register", json={
            "name": "Short", "owner_name": "S", "email": "s@example.com", "password": "abc",
        })
        assert response.status_code == 400


class TestLogin:

    @pytest.mark.anyio
    async def test_owner_login_sets_cookies(self, client, factory, password) -> None:
        workspace = await factory.workspace()
        response = await client.post("/v1/auth/login", json={
            "email": workspace.email, "password": password,
        })
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Login successful"
        assert body["user"]["kind"] == "owner"
        assert body["user"]["role"] == "OWNER"
        assert ACCESS_COOKIE in response.cookies
        assert REFRESH_COOKIE in response.cookies

    @pytest.mark.anyio
    async def test_member_profile_carries_permissions(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace, role="Graphic Designer")
        user = await login(member.email)
        assert user["kind"] == "member"
        assert user["role_name"] == "Graphic Designer"
        assert "PAGE_TASKS" in user["permissions"]
        assert "TASK_CREATE" not in user["permissions"]

    @pytest.mark.anyio
    async def test_wrong_password(self, client, factory) -> None:
        workspace = await factory.workspace()
        response = await client.post("/v1/auth/login", json={
            "email": workspace.email, "password": "not-the-password",
        })
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    @pytest.mark.anyio
    async def test_unknown_email(self, client, password) -> None:
        response = await client.post("/v1/auth/login", json={
            "email": "ghost@example.com", "password": password,
        })
        assert response.status_code == 401

    @pytest.mark.anyio
    async def test_inactive_client_refused(self, client, factory, password) -> None:
        workspace = await factory.workspace()
        archived = await factory.client(workspace, status=ClientStatus.ARCHIVED)
        response = await client.post("/v1/auth/login", json={
            "email": archived.email, "password": password,
        })
        assert response.status_code == 403
        assert response.json()["message"] == "Client portal access is not active"


class TestSession:

    @pytest.mark.anyio
    async def test_me_requires_session(self, client) -> None:
        response = await client.get("/v1/auth/me")
        assert response.status_code == 401

    @pytest.mark.anyio
    async def test_me_after_login(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        response = await client.get("/v1/auth/me")
        assert response.status_code == 200
        assert response.json()["user"]["id"] == str(workspace.workspace_id)

    @pytest.mark.anyio
    async def test_verify_without_cookies(self, client) -> None:
        response = await client.post("/v1/auth/verify")
        assert response.status_code == 200
        assert response.json() == {"authenticated": False}

    @pytest.mark.anyio
    async def test_verify_refreshes_with_only_refresh_cookie(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        refresh = client.cookies.get(REFRESH_COOKIE)
        client.cookies.clear()
        client.cookies.set(REFRESH_COOKIE, refresh)

        response = await client.post("/v1/auth/verify")
        assert response.json()["authenticated"] is True
        assert ACCESS_COOKIE in response.cookies
        assert response.cookies[REFRESH_COOKIE] != refresh

    @pytest.mark.anyio
    async def test_second_login_invalidates_first(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        first_access = client.cookies.get(ACCESS_COOKIE)
        first_refresh = client.cookies.get(REFRESH_COOKIE)
        await login(workspace.email)

        client.cookies.clear()
        client.cookies.set(ACCESS_COOKIE, first_access)
        client.cookies.set(REFRESH_COOKIE, first_refresh)
        response = await client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["message"] == "Session invalidated"

    @pytest.mark.anyio
    async def test_logout_clears_session(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        refresh = client.cookies.get(REFRESH_COOKIE)

        response = await client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert workspace.refresh_token is None

        client.cookies.clear()
        client.cookies.set(REFRESH_COOKIE, refresh)
        assert (await client.post("/v1/auth/verify")).json() == {"authenticated": False}


class TestProfile:

    @pytest.mark.anyio
    async def test_rename_member(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        member = await factory.member(workspace)
        await login(member.email)
        response = await client.post("/v1/auth/profile", json={"name": "  Mira  "})
        assert response.status_code == 200
        assert response.json()["user"]["name"] == "Mira"
        assert member.name == "Mira"

    @pytest.mark.anyio
    async def test_change_password(self, client, factory, login, password) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        response = await client.post("/v1/auth/profile", json={
            "current_password": password, "new_password": "a-brand-new-secret",
        })
        assert response.status_code == 200
        await login(workspace.email, "a-brand-new-secret")

    @pytest.mark.anyio
    async def test_change_password_needs_current(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        response = await client.post("/v1/auth/profile", json={
            "current_password": "wrong-password", "new_password": "a-brand-new-secret",
        })
        assert response.status_code == 400
        assert response.json()["message"] == "Current password is incorrect"

    @pytest.mark.anyio
    async def test_nothing_to_update(self, client, factory, login) -> None:
        workspace = await factory.workspace()
        await login(workspace.email)
        response = await client.post("/v1/auth/profile", json={})
        assert response.status_code == 400
