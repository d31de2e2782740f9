# tests/test_users.py — Assignable-user endpoints
import pytest
from httpx import AsyncClient

from models import ProjectRole
from tests.conftest import get_auth_headers, make_project, make_task


def _ids(resp):
    return sorted(u["id"] for u in resp.json())


@pytest.mark.asyncio
async def test_org_admin_lists_active_org_members(client: AsyncClient, org_project, admin_user, member,
                                                  other_member, viewer, inactive_member, outsider):
    resp = await client.get(
        f"/api/v1/users/assignable?project_id={org_project.id}",
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    assert _ids(resp) == sorted([admin_user.id, member.id, other_member.id])
    assert {u["role"] for u in resp.json()} <= {"org_admin", "member"}


@pytest.mark.asyncio
async def test_project_member_cannot_assign(client: AsyncClient, org_project, member):
    resp = await client.get(
        f"/api/v1/users/assignable?project_id={org_project.id}",
        headers=get_auth_headers(member),
    )
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.asyncio
async def test_creator_of_task_may_assign_within_project(client: AsyncClient, db_session, org_project,
                                                         member, other_member, viewer):
    task = await make_task(db_session, member, org_project)
    resp = await client.get(
        f"/api/v1/users/assignable?task_id={task.id}",
        headers=get_auth_headers(member),
    )
    assert resp.status_code == 200
    ids = _ids(resp)
    assert member.id in ids and other_member.id in ids
    assert viewer.id not in ids


@pytest.mark.asyncio
async def test_individual_user_only_self(client: AsyncClient, solo_user):
    resp = await client.get("/api/v1/users/assignable", headers=get_auth_headers(solo_user))
    assert resp.status_code == 200
    assert _ids(resp) == [solo_user.id]


@pytest.mark.asyncio
async def test_orgless_project_pool_is_its_members(client: AsyncClient, db_session, solo_user, member):
    project = await make_project(db_session, solo_user, members={member.id: ProjectRole.MEMBER})
    resp = await client.get(
        f"/api/v1/users/assignable?project_id={project.id}",
        headers=get_auth_headers(solo_user),
    )
    assert _ids(resp) == sorted([solo_user.id, member.id])


@pytest.mark.asyncio
async def test_unknown_project_is_404(client: AsyncClient, member):
    resp = await client.get("/api/v1/users/assignable?project_id=nope", headers=get_auth_headers(member))
    assert resp.status_code == 404
    assert resp.json()["code"] == "TF-DB-002"


@pytest.mark.asyncio
async def test_validate_assignable_report(client: AsyncClient, org_project, admin_user, member,
                                          viewer, outsider):
    resp = await client.post(
        "/api/v1/users/validate-assignable",
        headers=get_auth_headers(admin_user),
        json={"user_ids": [member.id, viewer.id, outsider.id, "ghost"], "project_id": org_project.id},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["valid"] is False
    assert [u["id"] for u in data["valid_users"]] == [member.id]
    assert data["not_assignable"] == [viewer.id]
    assert data["invalid_users"] == [outsider.id, "ghost"]


@pytest.mark.asyncio
async def test_validate_assignable_all_valid(client: AsyncClient, org_project, admin_user, member, other_member):
    resp = await client.post(
        "/api/v1/users/validate-assignable",
        headers=get_auth_headers(admin_user),
        json={"user_ids": [member.id, other_member.id], "project_id": org_project.id},
    )
    assert resp.json()["valid"] is True
