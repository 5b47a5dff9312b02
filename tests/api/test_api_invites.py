"""Tests for team invitations."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from src.auth.tokens import hash_invite_token
from src.config.settings import Environment
from src.models.common import InviteStatus, utc_now
from src.repositories.principals import InviteRepository


@pytest.fixture
async def owner(factory, login):
    workspace = await factory.workspace()
    await login(workspace.email)
    return workspace


def _token(link: str) -> str:
    return parse_qs(urlparse(link).query)["token"][0]


class TestCreateInvite:

    @pytest.mark.anyio
    async def test_create_sends_email_and_returns_link(self, client, owner, factory,
                                                       email_sender) -> None:
        editor = await factory.role_id(owner, "Editor")
        response = await client.post("/v1/invites", json={
            "email": "Designer@Example.com", "role_id": str(editor),
        })
        assert response.status_code == 201
        body = response.json()
        assert body["email_sent"] is True
        assert body["invite"]["email"] == "designer@example.com"
        assert body["invite_link"].startswith("http://frontend.test/accept-invite?token=")
        assert email_sender.sent[-1]["to"] == "designer@example.com"
        assert email_sender.sent[-1]["link"] == body["invite_link"]

    @pytest.mark.anyio
    async def test_failed_email_still_returns_link(self, client, owner, settings,
                                                   email_sender) -> None:
        settings.ENVIRONMENT = Environment.PROD
        email_sender.fail = True
        response = await client.post("/v1/invites", json={"email": "late@example.com"})
        body = response.json()
        assert body["email_sent"] is False
        assert "invite_link" in body

    @pytest.mark.anyio
    async def test_rejects_owner_email(self, client, owner) -> None:
        response = await client.post("/v1/invites", json={"email": owner.email})
        assert response.status_code == 409

    @pytest.mark.anyio
    async def test_rejects_existing_member(self, client, owner, factory) -> None:
        member = await factory.member(owner)
        response = await client.post("/v1/invites", json={"email": member.email})
        assert response.status_code == 409
        assert response.json()["message"] == "This email is already a member of your workspace"

    @pytest.mark.anyio
    async def test_rejects_second_pending_invite(self, client, owner) -> None:
        await client.post("/v1/invites", json={"email": "twice@example.com"})
        response = await client.post("/v1/invites", json={"email": "twice@example.com"})
        assert response.status_code == 409

    @pytest.mark.anyio
    async def test_rejects_owner_role(self, client, owner, factory) -> None:
        owner_role = await factory.role_id(owner, "OWNER")
        response = await client.post("/v1/invites", json={
            "email": "boss@example.com", "role_id": str(owner_role),
        })
        assert response.status_code == 403


class TestAcceptInvite:

    @pytest.mark.anyio
    async def test_accept_creates_member_and_session(self, client, owner, factory) -> None:
        editor = await factory.role_id(owner, "Editor")
        link = (await client.post("/v1/invites", json={
            "email": "joiner@example.com", "role_id": str(editor),
        })).json()["invite_link"]
        client.cookies.clear()

        response = await client.post("/v1/invites/accept", json={
            "token": _token(link), "name": "Jo", "password": "joiner-password",
        })
        assert response.status_code == 200
        user = response.json()["user"]
        assert user["kind"] == "member"
        assert user["role_name"] == "Editor"
        assert (await client.get("/v1/auth/me")).json()["user"]["email"] == "joiner@example.com"

        reused = await client.post("/v1/invites/accept", json={
            "token": _token(link), "name": "Jo", "password": "joiner-password",
        })
        assert reused.status_code == 400
        assert reused.json()["message"] == "This invite has already been used"

    @pytest.mark.anyio
    async def test_unknown_token(self, client) -> None:
        response = await client.post("/v1/invites/accept", json={
            "token": "nope", "name": "X", "password": "long-enough",
        })
        assert response.status_code == 404
        assert response.json()["message"] == "Invalid invite link"

    @pytest.mark.anyio
    async def test_revoked_invite(self, client, owner) -> None:
        created = (await client.post("/v1/invites", json={"email": "gone@example.com"})).json()
        revoke = await client.post(f"/v1/invites/{created['invite']['id']}/revoke")
        assert revoke.status_code == 200
        response = await client.post("/v1/invites/accept", json={
            "token": _token(created["invite_link"]), "name": "G", "password": "long-enough",
        })
        assert response.status_code == 400
        assert response.json()["message"] == "This invite has been revoked"

    @pytest.mark.anyio
    async def test_expired_invite(self, client, owner, db_session) -> None:
        created = (await client.post("/v1/invites", json={"email": "old@example.com"})).json()
        token = _token(created["invite_link"])
        invite = await InviteRepository(db_session).get_by_token_hash(hash_invite_token(token))
        invite.expires_at = utc_now() - timedelta(minutes=1)
        await db_session.flush()

        response = await client.post("/v1/invites/accept", json={
            "token": token, "name": "O", "password": "long-enough",
        })
        assert response.status_code == 400
        assert response.json()["message"] == "This invite has expired"


class TestManageInvites:

    @pytest.mark.anyio
    async def test_resend_rotates_token(self, client, owner, db_session) -> None:
        created = (await client.post("/v1/invites", json={"email": "again@example.com"})).json()
        invite_id = created["invite"]["id"]
        resent = await client.post(f"/v1/invites/{invite_id}/resend")
        assert resent.status_code == 200
        old, new = _token(created["invite_link"]), _token(resent.json()["invite_link"])
        assert old != new
        repo = InviteRepository(db_session)
        assert await repo.get_by_token_hash(hash_invite_token(old)) is None
        assert (await repo.get_by_token_hash(hash_invite_token(new))).status == InviteStatus.PENDING

    @pytest.mark.anyio
    async def test_revoke_twice(self, client, owner) -> None:
        created = (await client.post("/v1/invites", json={"email": "rv@example.com"})).json()
        invite_id = created["invite"]["id"]
        await client.post(f"/v1/invites/{invite_id}/revoke")
        again = await client.post(f"/v1/invites/{invite_id}/revoke")
        assert again.status_code == 400

    @pytest.mark.anyio
    async def test_list(self, client, owner) -> None:
        await client.post("/v1/invites", json={"email": "l1@example.com"})
        body = (await client.get("/v1/invites")).json()
        assert body["total"] == 1
        assert body["invites"][0]["status"] == "PENDING"

    @pytest.mark.anyio
    async def test_member_without_invite_permission(self, client, owner, factory, login) -> None:
        member = await factory.member(owner, role="Graphic Designer")
        await login(member.email)
        response = await client.post("/v1/invites", json={"email": "x@example.com"})
        assert response.status_code == 403
