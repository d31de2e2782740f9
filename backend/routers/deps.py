# routers/deps.py — Shared request dependencies for the board routers
import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user
from database import get_db_session
from errors import NotFound
from realtime import manager
from scopes import UserView, load_actor
from workflow import TaskStateMachine

logger = logging.getLogger("taskflow.deps")


async def get_actor(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserView:
    """Fresh actor view including team leadership and org admin grants"""
    actor = await load_actor(db, user.id)
    if actor is None:
        raise NotFound("User", user.id)
    return actor


def get_state_machine(db: AsyncSession = Depends(get_db_session)) -> TaskStateMachine:
    return TaskStateMachine(db)


def session_id_header(
    x_session_id: Optional[str] = Header(default=None),
    actor: UserView = Depends(get_actor),
) -> Optional[str]:
    """WebSocket session that originated the request, if it belongs to the caller"""
    if not x_session_id:
        return None
    if not manager.owns(x_session_id, actor.id):
        logger.warning(f"Ignoring X-Session-ID {x_session_id[:8]} not held by user {actor.id[:8]}")
        return None
    return x_session_id
