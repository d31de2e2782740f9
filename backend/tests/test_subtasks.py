# tests/test_subtasks.py — Subtask checklist endpoints
import pytest
from httpx import AsyncClient

from realtime import coordinator, manager, project_channel
from tests.conftest import get_auth_headers, make_task


async def _add(client: AsyncClient, user, task_id: str, **fields):
    resp = await client.post("/api/v1/subtasks", headers=get_auth_headers(user), json={
        "parent_task_id": task_id, **fields,
    })
    assert resp.status_code == 201
    return resp.json()["subtask"]


@pytest.mark.asyncio
class TestSubtasks:
    async def test_create_and_list(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        first = await _add(client, member, task.id, title="Outline", estimated_hours=2)
        second = await _add(client, member, task.id, title="Write", priority="high", tags=["docs"])

        assert first["status"] == "todo"
        assert first["estimated_hours"] == 2
        assert second["order"] == 1
        assert second["priority"] == "high"

        resp = await client.get(f"/api/v1/subtasks/task/{task.id}", headers=get_auth_headers(member))
        assert [s["title"] for s in resp.json()] == ["Outline", "Write"]

        history = await client.get(f"/api/v1/tasks/{task.id}/history", headers=get_auth_headers(member))
        assert [h["action"] for h in history.json()] == ["subtask_added", "subtask_added"]

    async def test_complete_and_stats(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        headers = get_auth_headers(member)
        subtask = await _add(client, member, task.id, title="Outline")
        await _add(client, member, task.id, title="Write")

        resp = await client.patch(f"/api/v1/subtasks/{subtask['id']}", headers=headers, json={"status": "done"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["changed"] is True
        assert body["subtask"]["is_completed"] is True
        assert body["subtask"]["completed_at"] is not None
        assert [h["action"] for h in body["history"]] == ["subtask_completed"]

        stats = await client.get(f"/api/v1/subtasks/task/{task.id}/stats", headers=headers)
        assert stats.json() == {
            "task_id": task.id, "total": 2, "completed": 1, "in_progress": 0, "todo": 1,
            "progress_percentage": 50,
        }

    async def test_empty_stats(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        stats = await client.get(f"/api/v1/subtasks/task/{task.id}/stats", headers=get_auth_headers(member))
        assert stats.json()["progress_percentage"] == 0

    async def test_reorder(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        ids = [(await _add(client, member, task.id, title=t))["id"] for t in ("a", "b", "c")]

        resp = await client.patch(
            f"/api/v1/subtasks/{ids[2]}/order", headers=get_auth_headers(member), json={"new_order": 0},
        )
        assert resp.status_code == 200
        assert [s["title"] for s in resp.json()] == ["c", "a", "b"]
        assert [s["order"] for s in resp.json()] == [0, 1, 2]

    async def test_delete(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        headers = get_auth_headers(member)
        subtask = await _add(client, member, task.id, title="Outline")

        resp = await client.delete(f"/api/v1/subtasks/{subtask['id']}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["history"][0]["action"] == "subtask_deleted"
        assert (await client.get(f"/api/v1/subtasks/{subtask['id']}", headers=headers)).status_code == 404

    async def test_viewer_reads_but_cannot_edit(self, client: AsyncClient, db_session, org_project,
                                                member, viewer):
        task = await make_task(db_session, member, org_project)
        subtask = await _add(client, member, task.id, title="Outline")
        headers = get_auth_headers(viewer)

        assert (await client.get(f"/api/v1/subtasks/{subtask['id']}", headers=headers)).status_code == 200
        resp = await client.post("/api/v1/subtasks", headers=headers, json={
            "parent_task_id": task.id, "title": "Nope",
        })
        assert resp.status_code == 403
        assert resp.json()["code"] == "TF-AUTH-003"
        resp = await client.patch(f"/api/v1/subtasks/{subtask['id']}", headers=headers, json={"status": "done"})
        assert resp.status_code == 403

    async def test_outsider_cannot_read(self, client: AsyncClient, db_session, org_project, member, outsider):
        task = await make_task(db_session, member, org_project)
        resp = await client.get(f"/api/v1/subtasks/task/{task.id}", headers=get_auth_headers(outsider))
        assert resp.status_code == 403

    async def test_missing_parent(self, client: AsyncClient, member):
        resp = await client.post("/api/v1/subtasks", headers=get_auth_headers(member), json={
            "parent_task_id": "does-not-exist", "title": "Orphan",
        })
        assert resp.status_code == 404

    async def test_change_reaches_board(self, client: AsyncClient, db_session, org_project, member, admin_user):
        task = await make_task(db_session, member, org_project)

        class Inbox:
            def __init__(self):
                self.sent = []

            async def send_json(self, message):
                self.sent.append(message)

        inbox = Inbox()
        manager.register(inbox, admin_user.id, "sess-checklist")
        manager.subscribe("sess-checklist", project_channel(org_project.id))
        try:
            subtask = await _add(client, member, task.id, title="Outline")
            await coordinator.drain()
        finally:
            manager.disconnect("sess-checklist")

        assert [e["type"] for e in inbox.sent] == ["subtask:created"]
        payload = inbox.sent[0]["payload"]
        assert payload["task_id"] == task.id
        assert payload["subtask"]["id"] == subtask["id"]
