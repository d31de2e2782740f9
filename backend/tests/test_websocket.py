# tests/test_websocket.py — WebSocket, health, and security tests
import pytest
from httpx import AsyncClient

from models import ProjectVisibility
from realtime import project_channel, user_channel
from routers.websocket_router import _may_subscribe
from tests.conftest import get_auth_headers, make_project


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint returns OK"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["database"] == "connected"


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "X-Request-ID" in resp.headers or "x-request-id" in resp.headers


@pytest.mark.asyncio
async def test_request_id_is_propagated(client: AsyncClient):
    resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Correlation-ID"] == "req-123"


@pytest.mark.asyncio
async def test_request_timing_header(client: AsyncClient):
    """Responses include timing header"""
    resp = await client.get("/health")
    headers_lower = {k.lower(): v for k, v in resp.headers.items()}
    assert "x-response-time" in headers_lower


# ============================================================
# CONNECTION STATS
# ============================================================

@pytest.mark.asyncio
async def test_ws_stats_requires_auth(client: AsyncClient):
    resp = await client.get("/ws/stats")
    assert resp.status_code in (401, 403)


@pytest.mark.asyncio
async def test_ws_stats_for_org_admin(client: AsyncClient, admin_user):
    resp = await client.get("/ws/stats", headers=get_auth_headers(admin_user))
    assert resp.status_code == 200
    assert set(resp.json()) == {"total_connections", "users", "channels"}


@pytest.mark.asyncio
async def test_ws_stats_forbidden_for_member(client: AsyncClient, member):
    resp = await client.get("/ws/stats", headers=get_auth_headers(member))
    assert resp.status_code == 403


# ============================================================
# CHANNEL SUBSCRIPTIONS
# ============================================================

@pytest.mark.asyncio
async def test_project_members_may_subscribe(db_session, org_project, member, viewer):
    channel = project_channel(org_project.id)
    assert await _may_subscribe(db_session, member.id, channel)
    assert await _may_subscribe(db_session, viewer.id, channel)


@pytest.mark.asyncio
async def test_outsider_may_not_subscribe(db_session, org_project, outsider, solo_user):
    channel = project_channel(org_project.id)
    assert not await _may_subscribe(db_session, outsider.id, channel)
    assert not await _may_subscribe(db_session, solo_user.id, channel)


@pytest.mark.asyncio
async def test_org_visible_project_open_to_org(db_session, admin_user, test_org, other_member):
    project = await make_project(db_session, admin_user, organization_id=test_org.id, visibility=ProjectVisibility.ORGANIZATION)
    assert await _may_subscribe(db_session, other_member.id, project_channel(project.id))


@pytest.mark.asyncio
async def test_user_channel_is_private(db_session, member, other_member):
    assert await _may_subscribe(db_session, member.id, user_channel(member.id))
    assert not await _may_subscribe(db_session, member.id, user_channel(other_member.id))


@pytest.mark.asyncio
async def test_unknown_channels_rejected(db_session, member):
    assert not await _may_subscribe(db_session, member.id, "project:missing")
    assert not await _may_subscribe(db_session, member.id, "board")
    assert not await _may_subscribe(db_session, member.id, "team:abc")
