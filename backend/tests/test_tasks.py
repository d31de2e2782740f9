# tests/test_tasks.py — Task endpoints, transitions and notifications
import pytest
from httpx import AsyncClient

from errors import ConflictingWrite
from realtime import coordinator, manager, project_channel, user_channel
from store import EntityStore
from tests.conftest import get_auth_headers, make_task


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


@pytest.fixture
def board_sessions():
    """Attach fake sockets to the process-wide connection manager"""
    sessions = []

    def attach(session_id, user_id, *channels):
        ws = RecordingSocket()
        manager.register(ws, user_id, session_id)
        for channel in channels:
            manager.subscribe(session_id, channel)
        sessions.append(session_id)
        return ws

    yield attach
    for session_id in sessions:
        manager.disconnect(session_id)


# ============================================================
# CREATE / READ
# ============================================================

@pytest.mark.asyncio
class TestTaskCrud:
    async def test_create_in_project(self, client: AsyncClient, org_project, member):
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(member), json={
            "title": "Ship board", "project_id": org_project.id, "priority": "high", "tags": ["ui"],
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["changed"] is True
        task = data["task"]
        assert task["status"] == "todo"
        assert task["status_display"] == "To Do"
        assert task["priority"] == "high"
        assert task["version"] == 1
        assert [h["action"] for h in data["history"]] == ["created"]

    async def test_create_with_display_status(self, client: AsyncClient, org_project, member):
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(member), json={
            "title": "Started", "project_id": org_project.id, "status": "In Progress",
        })
        task = resp.json()["task"]
        assert task["status"] == "in-progress"
        assert task["started_at"] is not None

    async def test_viewer_cannot_create(self, client: AsyncClient, org_project, viewer):
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(viewer), json={
            "title": "Nope", "project_id": org_project.id,
        })
        assert resp.status_code == 403
        body = resp.json()
        assert body["code"] == "TF-AUTH-003"
        assert body["retryable"] is False
        assert "request_id" in body

    async def test_admin_assigns_on_create(self, client: AsyncClient, org_project, admin_user, member):
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(admin_user), json={
            "title": "Delegated", "project_id": org_project.id, "assigned_users": [member.id],
        })
        assert resp.status_code == 201
        assert resp.json()["task"]["assigned_users"] == [member.id]

    async def test_assigning_viewer_rejected(self, client: AsyncClient, org_project, admin_user, viewer):
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(admin_user), json={
            "title": "Delegated", "project_id": org_project.id, "assigned_users": [viewer.id],
        })
        assert resp.status_code == 422
        assert resp.json()["code"] == "TF-VAL-001"

    async def test_list_project_tasks(self, client: AsyncClient, db_session, org_project, member, outsider):
        await make_task(db_session, member, org_project)
        await make_task(db_session, member, org_project, status="review")

        resp = await client.get(f"/api/v1/tasks?project_id={org_project.id}", headers=get_auth_headers(member))
        assert resp.status_code == 200
        assert len(resp.json()) == 2

        resp = await client.get(
            f"/api/v1/tasks?project_id={org_project.id}&status=review", headers=get_auth_headers(member),
        )
        assert [t["status"] for t in resp.json()] == ["review"]

        resp = await client.get(f"/api/v1/tasks?project_id={org_project.id}", headers=get_auth_headers(outsider))
        assert resp.status_code == 403

    async def test_personal_tasks_are_private(self, client: AsyncClient, solo_user, member):
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(solo_user), json={"title": "Groceries"})
        assert resp.status_code == 201
        task_id = resp.json()["task"]["id"]

        mine = await client.get("/api/v1/tasks", headers=get_auth_headers(solo_user))
        assert [t["id"] for t in mine.json()] == [task_id]

        theirs = await client.get(f"/api/v1/tasks/{task_id}", headers=get_auth_headers(member))
        assert theirs.status_code == 403

    async def test_missing_task(self, client: AsyncClient, member):
        resp = await client.get("/api/v1/tasks/does-not-exist", headers=get_auth_headers(member))
        assert resp.status_code == 404
        assert resp.json()["code"] == "TF-DB-002"


# ============================================================
# TRANSITIONS & HISTORY
# ============================================================

@pytest.mark.asyncio
class TestTransitions:
    async def test_transition_writes_history(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        headers = get_auth_headers(member)

        resp = await client.post(f"/api/v1/tasks/{task.id}/transition", headers=headers, json={"status": "Review"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["task"]["status"] == "review"
        assert data["task"]["version"] == 2
        assert data["history"][0]["details"] == "To Do → Review"

        history = await client.get(f"/api/v1/tasks/{task.id}/history", headers=headers)
        assert [h["action"] for h in history.json()] == ["status_changed"]

    async def test_same_status_is_noop(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project, status="review")
        resp = await client.post(
            f"/api/v1/tasks/{task.id}/transition", headers=get_auth_headers(member), json={"status": "review"},
        )
        assert resp.status_code == 200
        assert resp.json()["changed"] is False
        assert resp.json()["task"]["version"] == 1

    async def test_unknown_column(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        resp = await client.post(
            f"/api/v1/tasks/{task.id}/transition", headers=get_auth_headers(member), json={"status": "Archived"},
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "TF-WF-001"
        assert body["retryable"] is False

    async def test_viewer_cannot_transition(self, client: AsyncClient, db_session, org_project, member, viewer):
        task = await make_task(db_session, member, org_project)
        resp = await client.post(
            f"/api/v1/tasks/{task.id}/transition", headers=get_auth_headers(viewer), json={"status": "done"},
        )
        assert resp.status_code == 403

    async def test_conflict_exhaustion_is_retryable(self, client: AsyncClient, db_session, org_project,
                                                    member, monkeypatch):
        task = await make_task(db_session, member, org_project)

        async def always_conflict(self, model, entity_id, expected_version, patch, commit=True, guards=()):
            raise ConflictingWrite(entity_id)

        monkeypatch.setattr(EntityStore, "conditional_update", always_conflict)
        resp = await client.post(
            f"/api/v1/tasks/{task.id}/transition", headers=get_auth_headers(member), json={"status": "done"},
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "TF-DB-005"
        assert body["retryable"] is True
        assert resp.headers["Retry-After"] == "1"

    async def test_update_fields(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        resp = await client.patch(f"/api/v1/tasks/{task.id}", headers=get_auth_headers(member), json={
            "title": "Write more tests", "priority": "critical", "tags": ["qa"],
        })
        assert resp.status_code == 200
        actions = sorted(h["action"] for h in resp.json()["history"])
        assert actions == ["priority_changed", "tag_added", "title_updated"]
        assert resp.json()["task"]["title"] == "Write more tests"

    async def test_permission_summary(self, client: AsyncClient, db_session, org_project, member, viewer):
        task = await make_task(db_session, member, org_project)
        resp = await client.get(f"/api/v1/tasks/{task.id}/permissions", headers=get_auth_headers(viewer))
        assert resp.json() == {
            "task_id": task.id, "can_view": True, "can_edit": False,
            "can_assign": False, "can_create": False,
        }

    async def test_delete_hides_task(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        headers = get_auth_headers(member)
        resp = await client.delete(f"/api/v1/tasks/{task.id}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["task"]["is_active"] is False
        assert (await client.get(f"/api/v1/tasks/{task.id}", headers=headers)).status_code == 404

    async def test_purge_requires_super_admin(self, client: AsyncClient, db_session, org_project, member):
        task = await make_task(db_session, member, org_project)
        resp = await client.delete(f"/api/v1/tasks/{task.id}?purge=true", headers=get_auth_headers(member))
        assert resp.status_code == 403


# ============================================================
# NOTIFICATIONS
# ============================================================

@pytest.mark.asyncio
class TestNotifications:
    async def test_transition_reaches_peers_not_origin(self, client: AsyncClient, db_session, org_project,
                                                       member, admin_user, board_sessions):
        task = await make_task(db_session, member, org_project)
        origin = board_sessions("sess-member", member.id, project_channel(org_project.id))
        peer = board_sessions("sess-admin", admin_user.id, project_channel(org_project.id))

        headers = {**get_auth_headers(member), "X-Session-ID": "sess-member"}
        resp = await client.post(f"/api/v1/tasks/{task.id}/transition", headers=headers, json={"status": "done"})
        assert resp.status_code == 200
        await coordinator.drain()

        assert origin.sent == []
        assert len(peer.sent) == 1
        event = peer.sent[0]
        assert event["type"] == "task:updated"
        assert event["payload"]["task"]["status"] == "done"

    async def test_normalized_status_echoes_to_origin(self, client: AsyncClient, db_session, org_project,
                                                      member, board_sessions):
        task = await make_task(db_session, member, org_project)
        origin = board_sessions("sess-member", member.id, project_channel(org_project.id))

        headers = {**get_auth_headers(member), "X-Session-ID": "sess-member"}
        await client.post(f"/api/v1/tasks/{task.id}/transition", headers=headers, json={"status": "In Progress"})
        await coordinator.drain()
        assert len(origin.sent) == 1
        assert origin.sent[0]["payload"]["task"]["status"] == "in-progress"

    async def test_suppress_reemit(self, client: AsyncClient, db_session, org_project, member,
                                   admin_user, board_sessions):
        task = await make_task(db_session, member, org_project)
        peer = board_sessions("sess-admin", admin_user.id, project_channel(org_project.id))
        await client.post(
            f"/api/v1/tasks/{task.id}/transition",
            headers=get_auth_headers(member), json={"status": "done", "suppress_reemit": True},
        )
        await coordinator.drain()
        assert peer.sent == []

    async def test_personal_task_goes_to_owner_channels(self, client: AsyncClient, solo_user, board_sessions):
        inbox = board_sessions("sess-phone", solo_user.id, user_channel(solo_user.id))
        resp = await client.post("/api/v1/tasks", headers=get_auth_headers(solo_user), json={"title": "Call"})
        await coordinator.drain()
        assert [e["type"] for e in inbox.sent] == ["task:created"]
        assert inbox.sent[0]["payload"]["task"]["id"] == resp.json()["task"]["id"]

    async def test_unassigned_user_hears_about_personal_task(self, client: AsyncClient, db_session, member,
                                                             other_member, board_sessions):
        task = await make_task(db_session, member, assignees=[other_member])
        dropped = board_sessions("sess-colleague", other_member.id, user_channel(other_member.id))

        resp = await client.patch(
            f"/api/v1/tasks/{task.id}", headers=get_auth_headers(member), json={"assigned_users": []},
        )
        assert resp.status_code == 200
        assert resp.json()["task"]["assigned_users"] == []
        await coordinator.drain()

        assert [e["type"] for e in dropped.sent] == ["task:updated"]
        assert dropped.sent[0]["payload"]["task"]["id"] == task.id

    async def test_foreign_session_id_is_ignored(self, client: AsyncClient, db_session, org_project,
                                                 member, admin_user, board_sessions):
        task = await make_task(db_session, member, org_project)
        peer = board_sessions("sess-admin", admin_user.id, project_channel(org_project.id))

        # member claims the admin's socket as its origin
        headers = {**get_auth_headers(member), "X-Session-ID": "sess-admin"}
        resp = await client.post(f"/api/v1/tasks/{task.id}/transition", headers=headers, json={"status": "done"})
        assert resp.status_code == 200
        await coordinator.drain()

        assert len(peer.sent) == 1
        assert peer.sent[0]["origin_session"] is None
