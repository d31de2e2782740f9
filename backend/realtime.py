# realtime.py — WebSocket transport and real-time fan-out coordination
"""
Transport: ConnectionManager keeps one entry per connected session and a
channel → sessions map. Channels are "project:<id>" for project boards and
"user:<id>" for personal tasks.

Fan-out: FanOutCoordinator turns a committed mutation into one event per
channel and hands it to the transport in the background. Delivery never
blocks or fails the write that produced it.

Loop prevention: a mutation flagged suppress_reemit (the caller was applying
a notification it had received) is never published, whatever else is set.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

from errors import ConflictingWrite, RateLimited, TaskFlowError

logger = logging.getLogger("taskflow.ws")


def project_channel(project_id: str) -> str:
    return f"project:{project_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# TRANSPORT
# ============================================================

@dataclass
class Session:
    id: str
    user_id: str
    websocket: Any
    channels: Set[str] = field(default_factory=set)


class ConnectionManager:
    """Manages WebSocket sessions and channel subscriptions"""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._subscriptions: Dict[str, Set[str]] = {}  # channel -> {session_ids}

    async def connect(self, websocket: WebSocket, user_id: str, session_id: Optional[str] = None) -> Session:
        await websocket.accept()
        return self.register(websocket, user_id, session_id)

    def register(self, websocket: Any, user_id: str, session_id: Optional[str] = None) -> Session:
        session = Session(id=session_id or str(uuid.uuid4()), user_id=user_id, websocket=websocket)
        self._sessions[session.id] = session
        logger.info(f"WS connected: session={session.id[:8]} user={user_id[:8]}")
        return session

    def disconnect(self, session_id: str):
        session = self._sessions.pop(session_id, None)
        for channel in list(self._subscriptions.keys()):
            self._subscriptions[channel].discard(session_id)
            if not self._subscriptions[channel]:
                del self._subscriptions[channel]
        if session is not None:
            logger.info(f"WS disconnected: session={session_id[:8]}")

    def subscribe(self, session_id: str, channel: str):
        if session_id not in self._sessions:
            return
        self._subscriptions.setdefault(channel, set()).add(session_id)
        self._sessions[session_id].channels.add(channel)

    def unsubscribe(self, session_id: str, channel: str):
        if channel in self._subscriptions:
            self._subscriptions[channel].discard(session_id)
            if not self._subscriptions[channel]:
                del self._subscriptions[channel]
        if session_id in self._sessions:
            self._sessions[session_id].channels.discard(channel)

    def owns(self, session_id: str, user_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.user_id == user_id

    def subscribers(self, channel: str) -> Set[str]:
        return set(self._subscriptions.get(channel, set()))

    async def send(self, session_id: str, message: dict) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        try:
            await session.websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"WS send failed for session={session_id[:8]}: {e}")
            self.disconnect(session_id)
            return False

    async def publish(self, channel: str, event: dict, exclude_session: Optional[str] = None) -> int:
        """Send event to every session on channel except exclude_session"""
        delivered = 0
        for session_id in self.subscribers(channel):
            if session_id == exclude_session:
                continue
            if await self.send(session_id, event):
                delivered += 1
        return delivered

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._sessions),
            "users": len({s.user_id for s in self._sessions.values()}),
            "channels": len(self._subscriptions),
        }


# ============================================================
# FAN-OUT
# ============================================================

class MutationKind(str, Enum):
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_DELETED = "task:deleted"
    SUBTASK_CREATED = "subtask:created"
    SUBTASK_UPDATED = "subtask:updated"
    SUBTASK_DELETED = "subtask:deleted"
    COLUMNS_UPDATED = "columns:updated"
    PROJECT_UPDATED = "project:updated"


@dataclass
class Mutation:
    kind: MutationKind
    actor_id: str
    payload: Dict[str, Any]
    project_id: Optional[str] = None
    # Users whose private channels carry personal-task events
    owner_ids: List[str] = field(default_factory=list)
    origin_session: Optional[str] = None
    suppress_reemit: bool = False
    echo_to_origin: bool = False


@dataclass
class Notification:
    channels: List[str]
    event: Dict[str, Any]
    exclude_session: Optional[str] = None


class FanOutCoordinator:
    """Builds notifications for committed mutations and delivers them off the write path"""

    def __init__(self, transport: ConnectionManager):
        self.transport = transport
        self._pending: Set[asyncio.Task] = set()

    def channels_for(self, mutation: Mutation) -> List[str]:
        if mutation.project_id:
            return [project_channel(mutation.project_id)]
        return [user_channel(uid) for uid in dict.fromkeys(mutation.owner_ids)]

    def plan(self, mutation: Mutation) -> Optional[Notification]:
        if mutation.suppress_reemit:
            return None
        channels = self.channels_for(mutation)
        if not channels:
            return None
        event = {
            "type": mutation.kind.value,
            "project_id": mutation.project_id,
            "actor_id": mutation.actor_id,
            "origin_session": mutation.origin_session,
            "payload": mutation.payload,
            "timestamp": _now(),
        }
        exclude = None if mutation.echo_to_origin else mutation.origin_session
        return Notification(channels=channels, event=event, exclude_session=exclude)

    async def deliver(self, notification: Notification) -> int:
        delivered = 0
        for channel in notification.channels:
            delivered += await self.transport.publish(
                channel, notification.event, exclude_session=notification.exclude_session,
            )
        return delivered

    def dispatch(self, mutation: Mutation) -> Optional[Notification]:
        """Schedule delivery and return immediately"""
        notification = self.plan(mutation)
        if notification is None:
            return None
        task = asyncio.get_running_loop().create_task(self.deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return notification

    def _finished(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Fan-out delivery failed: {exc}")

    async def drain(self):
        """Wait for in-flight deliveries (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def retry_advice(error: TaskFlowError) -> Optional[float]:
        """Seconds a client should wait before retrying, or None if it must not retry"""
        if isinstance(error, (ConflictingWrite, RateLimited)):
            return max(error.retry_after, 0.0)
        return None


# Global transport and coordinator
manager = ConnectionManager()
coordinator = FanOutCoordinator(manager)
