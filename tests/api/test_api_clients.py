"""Tests for client management endpoints."""

import pytest

from src.models.common import ClientStatus


@pytest.fixture
async def owner(factory, login):
    workspace = await factory.workspace()
    await login(workspace.email)
    return workspace


class TestCreateClient:

    @pytest.mark.anyio
    async def test_without_email_is_active(self, client, owner, email_sender) -> None:
        response = await client.post("/v1/clients", json={"name": "Walk-in"})
        assert response.status_code == 201
        body = response.json()
        assert body["client"]["status"] == "ACTIVE"
        assert body["client"]["has_portal_access"] is False
        assert body["email_sent"] is False
        assert "invite_link" not in body
        assert email_sender.sent == []

    @pytest.mark.anyio
    async def test_with_email_is_invited(self, client, owner, email_sender) -> None:
        response = await client.post("/v1/clients", json={
            "name": "Globex", "contact_name": "Hank", "email": "hank@globex.test",
        })
        body = response.json()
        assert body["client"]["status"] == "INVITED"
        assert body["invite_link"].startswith("http://frontend.test/accept-client-invite?token=")
        assert email_sender.sent[-1]["kind"] == "client_invite"
        assert email_sender.sent[-1]["client"] == "Hank"

    @pytest.mark.anyio
    async def test_email_must_be_unique(self, client, owner, factory) -> None:
        member = await factory.member(owner)
        response = await client.post("/v1/clients", json={"name": "Dup", "email": member.email})
        assert response.status_code == 409

    @pytest.mark.anyio
    async def test_name_required(self, client, owner) -> None:
        response = await client.post("/v1/clients", json={"name": "  "})
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_requires_client_manage(self, client, owner, factory, login) -> None:
        member = await factory.member(owner, permissions=["PAGE_CLIENTS"])
        await login(member.email)
        assert (await client.get("/v1/clients")).status_code == 200
        assert (await client.post("/v1/clients", json={"name": "X"})).status_code == 403


class TestUpdateClient:

    @pytest.mark.anyio
    async def test_archive(self, client, owner, factory) -> None:
        acme = await factory.client(owner)
        response = await client.patch(f"/v1/clients/{acme.client_id}", json={"status": "ARCHIVED"})
        assert response.status_code == 200
        assert response.json()["message"] == "Client archived successfully"
        listed = (await client.get("/v1/clients", params={"status": "ARCHIVED"})).json()
        assert [c["id"] for c in listed["clients"]] == [str(acme.client_id)]

    @pytest.mark.anyio
    async def test_invited_is_not_settable(self, client, owner, factory) -> None:
        acme = await factory.client(owner)
        response = await client.patch(f"/v1/clients/{acme.client_id}", json={"status": "INVITED"})
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_keeping_own_email_is_allowed(self, client, owner, factory) -> None:
        acme = await factory.client(owner)
        response = await client.patch(f"/v1/clients/{acme.client_id}", json={
            "email": acme.email, "name": "Acme Corp",
        })
        assert response.status_code == 200
        assert response.json()["client"]["name"] == "Acme Corp"

    @pytest.mark.anyio
    async def test_other_workspace_is_not_found(self, client, owner, factory) -> None:
        other = await factory.workspace(name="Other")
        theirs = await factory.client(other)
        response = await client.patch(f"/v1/clients/{theirs.client_id}", json={"name": "Mine"})
        assert response.status_code == 404


class TestResendClientInvite:

    @pytest.mark.anyio
    async def test_resend_to_unactivated_client(self, client, owner, factory,
                                                email_sender) -> None:
        acme = await factory.client(owner, portal=False, email="buyer@acme.test")
        response = await client.post(f"/v1/clients/{acme.client_id}/resend-invite")
        assert response.status_code == 200
        assert "invite_link" in response.json()
        assert acme.status == ClientStatus.INVITED
        assert email_sender.sent[-1]["to"] == "buyer@acme.test"

    @pytest.mark.anyio
    async def test_already_active_portal(self, client, owner, factory) -> None:
        acme = await factory.client(owner)
        response = await client.post(f"/v1/clients/{acme.client_id}/resend-invite")
        assert response.status_code == 400
        assert response.json()["message"] == "Client already has portal access"

    @pytest.mark.anyio
    async def test_no_email(self, client, owner, factory) -> None:
        acme = await factory.client(owner, portal=False)
        response = await client.post(f"/v1/clients/{acme.client_id}/resend-invite")
        assert response.status_code == 400


class TestClientRequirements:

    @pytest.mark.anyio
    async def test_lists_with_links(self, client, owner, factory) -> None:
        acme = await factory.client(owner)
        task = await factory.task(owner, acme)
        requirement = await factory.requirement(owner, acme, task_ids=[task.task_id])
        body = (await client.get(f"/v1/clients/{acme.client_id}/requirements")).json()
        assert body["requirements"][0]["id"] == str(requirement.requirement_id)
        assert body["requirements"][0]["linked_task_ids"] == [str(task.task_id)]
