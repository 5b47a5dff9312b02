"""Tests for staff-side requirement endpoints."""

import pytest

from src.models.common import RequirementStatus, TaskStatus
from src.repositories.requirements import RequirementRepository


@pytest.fixture
async def studio(factory, login):
    workspace = await factory.workspace()
    acme = await factory.client(workspace)
    await login(workspace.email)
    return workspace, acme


class TestListAndDetail:

    @pytest.mark.anyio
    async def test_list_filters(self, client, studio, factory) -> None:
        workspace, acme = studio
        globex = await factory.client(workspace, name="Globex")
        await factory.requirement(workspace, acme, title="Logo")
        await factory.requirement(workspace, globex, title="Site",
                                  status=RequirementStatus.IN_PROGRESS)

        assert (await client.get("/v1/requirements")).json()["total"] == 2
        by_client = (await client.get(
            "/v1/requirements", params={"client_id": str(globex.client_id)},
        )).json()
        assert [r["title"] for r in by_client["requirements"]] == ["Site"]
        by_status = (await client.get("/v1/requirements", params={"status": "OPEN"})).json()
        assert [r["title"] for r in by_status["requirements"]] == ["Logo"]

    @pytest.mark.anyio
    async def test_detail_includes_linked_tasks_and_thread(self, client, studio, factory) -> None:
        workspace, acme = studio
        task = await factory.task(workspace, acme, status=TaskStatus.DOING)
        requirement = await factory.requirement(workspace, acme, task_ids=[task.task_id])
        await client.post(
            f"/v1/requirements/{requirement.requirement_id}/comments",
            json={"message": "On it"},
        )

        detail = (await client.get(f"/v1/requirements/{requirement.requirement_id}")).json()
        body = detail["requirement"]
        assert body["client_name"] == "Acme"
        assert [t["id"] for t in body["linked_tasks"]] == [str(task.task_id)]
        assert body["linked_tasks"][0]["status"] == "DOING"
        assert body["comments"][0]["message"] == "On it"
        assert body["comments"][0]["by_kind"] == "owner"

    @pytest.mark.anyio
    async def test_other_workspace_is_not_found(self, client, studio, factory) -> None:
        other = await factory.workspace(name="Other")
        theirs = await factory.requirement(other, await factory.client(other))
        response = await client.get(f"/v1/requirements/{theirs.requirement_id}")
        assert response.status_code == 404


class TestStatusAndLinks:

    @pytest.mark.anyio
    async def test_manual_close(self, client, studio, factory) -> None:
        workspace, acme = studio
        requirement = await factory.requirement(workspace, acme)
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/status", json={"status": "CLOSED"},
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Requirement status changed from OPEN to CLOSED"

    @pytest.mark.anyio
    @pytest.mark.parametrize("target", ["COMPLETED", "IN_PROGRESS"])
    async def test_derived_statuses_cannot_be_set_by_hand(self, client, studio, factory,
                                                          db_session, target) -> None:
        workspace, acme = studio
        task = await factory.task(workspace, acme)
        requirement = await factory.requirement(workspace, acme, task_ids=[task.task_id])
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/status", json={"status": target},
        )
        assert response.status_code == 400
        status = await RequirementRepository(db_session).get_status(requirement.requirement_id)
        assert status == RequirementStatus.OPEN

    @pytest.mark.anyio
    async def test_reopen_rederives_from_tasks(self, client, studio, factory) -> None:
        workspace, acme = studio
        task = await factory.task(workspace, acme, status=TaskStatus.DONE)
        requirement = await factory.requirement(
            workspace, acme, status=RequirementStatus.CLOSED, task_ids=[task.task_id],
        )
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/status", json={"status": "OPEN"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"

    @pytest.mark.anyio
    async def test_only_closed_can_be_reopened(self, client, studio, factory) -> None:
        workspace, acme = studio
        requirement = await factory.requirement(workspace, acme)
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/status", json={"status": "OPEN"},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Only a closed requirement can be reopened"

    @pytest.mark.anyio
    async def test_invalid_status(self, client, studio, factory) -> None:
        workspace, acme = studio
        requirement = await factory.requirement(workspace, acme)
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/status", json={"status": "LOST"},
        )
        assert response.status_code == 400

    @pytest.mark.anyio
    async def test_link_task_syncs_status(self, client, studio, factory) -> None:
        workspace, acme = studio
        task = await factory.task(workspace, acme, status=TaskStatus.DONE)
        requirement = await factory.requirement(workspace, acme)
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/tasks",
            json={"task_id": str(task.task_id)},
        )
        assert response.status_code == 200
        assert response.json()["requirement"]["status"] == "COMPLETED"

    @pytest.mark.anyio
    async def test_link_task_of_other_client(self, client, studio, factory) -> None:
        workspace, acme = studio
        globex = await factory.client(workspace, name="Globex")
        task = await factory.task(workspace, globex)
        requirement = await factory.requirement(workspace, acme)
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/tasks",
            json={"task_id": str(task.task_id)},
        )
        assert response.status_code == 404


class TestRequirementAttachments:

    @pytest.mark.anyio
    async def test_upload_and_delete(self, client, studio, factory) -> None:
        workspace, acme = studio
        requirement = await factory.requirement(workspace, acme)
        url = f"/v1/requirements/{requirement.requirement_id}/attachments"
        uploaded = await client.post(url, files=[("files", ("brief.txt", b"brief", "text/plain"))])
        assert uploaded.status_code == 200
        attachment = uploaded.json()["attachments"][0]
        assert attachment["uploaded_by_kind"] == "owner"

        detail = (await client.get(f"/v1/requirements/{requirement.requirement_id}")).json()
        assert [a["key"] for a in detail["requirement"]["attachments"]] == [attachment["key"]]

        removed = await client.delete(url, params={"key": attachment["key"]})
        assert removed.status_code == 200
        missing = await client.get(f"{url}/url", params={"key": attachment["key"]})
        assert missing.status_code == 404

    @pytest.mark.anyio
    async def test_disallowed_type(self, client, studio, factory) -> None:
        workspace, acme = studio
        requirement = await factory.requirement(workspace, acme)
        response = await client.post(
            f"/v1/requirements/{requirement.requirement_id}/attachments",
            files=[("files", ("run.exe", b"MZ", "application/x-msdownload"))],
        )
        assert response.status_code == 400
