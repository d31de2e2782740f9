# tests/test_organizations.py — Organisations, admins and teams
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


# ============================================================
# ORGANISATIONS
# ============================================================

@pytest.mark.asyncio
class TestOrganizations:
    async def test_individual_user_creates_org(self, client: AsyncClient, solo_user):
        headers = get_auth_headers(solo_user)
        resp = await client.post("/api/v1/organizations", headers=headers, json={"name": "Solo Works"})
        assert resp.status_code == 201
        org = resp.json()
        assert org["slug"] == "solo-works"
        assert org["owner_id"] == solo_user.id
        assert org["admin_ids"] == [solo_user.id]

        me = await client.get("/api/v1/auth/me", headers=headers)
        assert me.json()["organization_id"] == org["id"]

        # The owner administers the org even though the stored role is member
        invite = await client.post(
            f"/api/v1/organizations/{org['id']}/invitations",
            headers=headers, json={"email": "hire@solo.dev"},
        )
        assert invite.status_code == 201

    async def test_org_member_cannot_create_second_org(self, client: AsyncClient, member):
        resp = await client.post(
            "/api/v1/organizations", headers=get_auth_headers(member), json={"name": "Side Project"},
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "TF-VAL-001"

    async def test_duplicate_slug_conflicts(self, client: AsyncClient, test_org, super_admin):
        resp = await client.post(
            "/api/v1/organizations", headers=get_auth_headers(super_admin), json={"name": "Test Org"},
        )
        assert resp.status_code == 409

    async def test_get_org_members_only(self, client: AsyncClient, test_org, member, outsider, super_admin):
        assert (await client.get(
            f"/api/v1/organizations/{test_org.id}", headers=get_auth_headers(member)
        )).status_code == 200
        assert (await client.get(
            f"/api/v1/organizations/{test_org.id}", headers=get_auth_headers(outsider)
        )).status_code == 403
        assert (await client.get(
            f"/api/v1/organizations/{test_org.id}", headers=get_auth_headers(super_admin)
        )).status_code == 200

    async def test_missing_org_is_404(self, client: AsyncClient, member):
        resp = await client.get("/api/v1/organizations/nope", headers=get_auth_headers(member))
        assert resp.status_code == 404

    async def test_add_and_remove_admin(self, client: AsyncClient, test_org, admin_user, member):
        headers = get_auth_headers(admin_user)
        resp = await client.post(
            f"/api/v1/organizations/{test_org.id}/admins", headers=headers, json={"user_id": member.id},
        )
        assert resp.status_code == 200
        assert member.id in resp.json()["admin_ids"]

        # Granted admins can invite straight away
        invite = await client.post(
            f"/api/v1/organizations/{test_org.id}/invitations",
            headers=get_auth_headers(member), json={"email": "new@taskflow.dev"},
        )
        assert invite.status_code == 201

        resp = await client.delete(f"/api/v1/organizations/{test_org.id}/admins/{member.id}", headers=headers)
        assert resp.status_code == 200
        assert member.id not in resp.json()["admin_ids"]

    async def test_owner_cannot_be_removed(self, client: AsyncClient, test_org, admin_user):
        resp = await client.delete(
            f"/api/v1/organizations/{test_org.id}/admins/{admin_user.id}",
            headers=get_auth_headers(admin_user),
        )
        assert resp.status_code == 422

    async def test_cannot_promote_foreign_user(self, client: AsyncClient, test_org, admin_user, outsider):
        resp = await client.post(
            f"/api/v1/organizations/{test_org.id}/admins",
            headers=get_auth_headers(admin_user), json={"user_id": outsider.id},
        )
        assert resp.status_code == 422

    async def test_invite_existing_email_conflicts(self, client: AsyncClient, test_org, admin_user, member):
        resp = await client.post(
            f"/api/v1/organizations/{test_org.id}/invitations",
            headers=get_auth_headers(admin_user), json={"email": member.email},
        )
        assert resp.status_code == 409

    async def test_cannot_invite_super_admin(self, client: AsyncClient, test_org, admin_user):
        resp = await client.post(
            f"/api/v1/organizations/{test_org.id}/invitations",
            headers=get_auth_headers(admin_user), json={"email": "root@taskflow.dev", "role": "super_admin"},
        )
        assert resp.status_code == 422

    async def test_list_members(self, client: AsyncClient, test_org, admin_user, member, viewer):
        resp = await client.get(
            f"/api/v1/organizations/{test_org.id}/members", headers=get_auth_headers(member),
        )
        assert resp.status_code == 200
        emails = {m["email"] for m in resp.json()}
        assert {admin_user.email, member.email, viewer.email} <= emails


# ============================================================
# TEAMS
# ============================================================

@pytest.mark.asyncio
class TestTeams:
    async def test_org_admin_creates_team_with_lead(self, client: AsyncClient, test_org, admin_user, team_lead):
        resp = await client.post("/api/v1/teams", headers=get_auth_headers(admin_user), json={
            "organization_id": test_org.id, "name": "Mobile", "lead_id": team_lead.id,
        })
        assert resp.status_code == 201
        team = resp.json()
        assert team["lead_id"] == team_lead.id
        assert team["members"] == [{"user_id": team_lead.id, "role": "lead"}]

    async def test_duplicate_team_name(self, client: AsyncClient, test_org, admin_user, test_team):
        resp = await client.post("/api/v1/teams", headers=get_auth_headers(admin_user), json={
            "organization_id": test_org.id, "name": "Platform",
        })
        assert resp.status_code == 409

    async def test_member_cannot_create_team(self, client: AsyncClient, test_org, member):
        resp = await client.post("/api/v1/teams", headers=get_auth_headers(member), json={
            "organization_id": test_org.id, "name": "Rogue",
        })
        assert resp.status_code == 403

    async def test_lead_outside_org_rejected(self, client: AsyncClient, test_org, admin_user, outsider):
        resp = await client.post("/api/v1/teams", headers=get_auth_headers(admin_user), json={
            "organization_id": test_org.id, "name": "Mixed", "lead_id": outsider.id,
        })
        assert resp.status_code == 422

    async def test_lead_adds_member(self, client: AsyncClient, test_team, team_lead, other_member):
        resp = await client.post(
            f"/api/v1/teams/{test_team.id}/members",
            headers=get_auth_headers(team_lead), json={"user_id": other_member.id},
        )
        assert resp.status_code == 201
        assert other_member.id in {m["user_id"] for m in resp.json()["members"]}

    async def test_plain_member_cannot_add(self, client: AsyncClient, test_team, member, other_member):
        resp = await client.post(
            f"/api/v1/teams/{test_team.id}/members",
            headers=get_auth_headers(member), json={"user_id": other_member.id},
        )
        assert resp.status_code == 403

    async def test_duplicate_membership(self, client: AsyncClient, test_team, admin_user, member):
        resp = await client.post(
            f"/api/v1/teams/{test_team.id}/members",
            headers=get_auth_headers(admin_user), json={"user_id": member.id},
        )
        assert resp.status_code == 409

    async def test_promote_member_to_lead(self, client: AsyncClient, test_team, admin_user, team_lead, member):
        resp = await client.put(
            f"/api/v1/teams/{test_team.id}/members/{member.id}",
            headers=get_auth_headers(admin_user), json={"role": "lead"},
        )
        assert resp.status_code == 200
        assert resp.json()["lead_id"] == member.id

        resp = await client.put(
            f"/api/v1/teams/{test_team.id}/members/{member.id}",
            headers=get_auth_headers(admin_user), json={"role": "member"},
        )
        assert resp.json()["lead_id"] is None

    async def test_team_hidden_from_other_orgs(self, client: AsyncClient, test_team, outsider, member):
        assert (await client.get(
            f"/api/v1/teams/{test_team.id}", headers=get_auth_headers(outsider)
        )).status_code == 403
        assert (await client.get(
            f"/api/v1/teams/{test_team.id}", headers=get_auth_headers(member)
        )).status_code == 200
