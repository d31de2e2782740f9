# routers/websocket_router.py — Real-time board subscriptions over WebSocket
import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, require_min_role, user_from_token
from database import get_db_session
from models import Project, UserRole
from permissions import resolver
from realtime import manager, user_channel
from scopes import TaskView, load_actor, project_view
from store import EntityStore

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("taskflow.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _may_subscribe(db: AsyncSession, user_id: str, channel: str) -> bool:
    """project:<id> needs view access to the board; user:<id> is private to that user"""
    kind, _, target = channel.partition(":")
    if not target:
        return False
    if kind == "user":
        return channel == user_channel(user_id)
    if kind != "project":
        return False

    project = await EntityStore(db).get(Project, target)
    if project is None or not project.is_active:
        return False
    actor = await load_actor(db, user_id)
    if actor is None or not actor.is_active:
        return False
    placeholder = TaskView(id="", created_by="", project_id=project.id)
    return resolver.can_view_task(actor, placeholder, project_view(project))


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db_session),
):
    """Main WebSocket endpoint for board notifications"""
    try:
        user = await user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    user_id = user.id
    session = await manager.connect(websocket, user_id, str(uuid.uuid4()))
    # Personal tasks are always delivered to their owner
    manager.subscribe(session.id, user_channel(user_id))

    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "session_id": session.id,
        "channels": sorted(session.channels),
        "timestamp": _now(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})

            elif msg_type == "subscribe":
                channel = data.get("channel", "")
                if await _may_subscribe(db, user_id, channel):
                    manager.subscribe(session.id, channel)
                    await websocket.send_json({"type": "subscribed", "channel": channel})
                else:
                    logger.info(f"WS subscribe denied: session={session.id[:8]} channel={channel}")
                    await websocket.send_json({
                        "type": "error",
                        "code": "TF-AUTH-003",
                        "channel": channel,
                        "detail": "Not allowed to subscribe to this channel",
                    })

            elif msg_type == "unsubscribe":
                channel = data.get("channel", "")
                if channel:
                    manager.unsubscribe(session.id, channel)
                    await websocket.send_json({"type": "unsubscribed", "channel": channel})

            else:
                await websocket.send_json({"type": "error", "detail": f"Unknown message type: {msg_type}"})

    except WebSocketDisconnect:
        manager.disconnect(session.id)


@router.get("/ws/stats")
async def ws_stats(user: CurrentUser = Depends(require_min_role(UserRole.ORG_ADMIN))):
    """WebSocket connection statistics (org admins and above)"""
    return manager.get_stats()
