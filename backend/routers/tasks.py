# routers/tasks.py — Task CRUD, status transitions and audit history
import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import NotFound, Unauthorized
from models import Project, Task, TaskPriority, task_assignees
from permissions import resolver
from realtime import Mutation, MutationKind, coordinator
from routers.deps import get_actor, get_state_machine, session_id_header
from scopes import TaskView, UserView, project_view, task_view
from workflow import (
    MutationResult, TaskStateMachine, columns_for, normalize_status, serialize_history, serialize_task,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])
logger = logging.getLogger("taskflow.tasks")


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    project_id: Optional[str] = None
    status: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_users: List[str] = []
    tags: List[str] = []
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    suppress_reemit: bool = False


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[TaskPriority] = None
    assigned_users: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    suppress_reemit: bool = False


class TransitionRequest(BaseModel):
    status: str = Field(..., min_length=1)
    # Set when the caller is applying a change it received as a notification
    suppress_reemit: bool = False


class TaskEnvelope(BaseModel):
    task: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = []
    changed: bool = False
    attempts: int = 1


class PermissionSummary(BaseModel):
    task_id: str
    can_view: bool
    can_edit: bool
    can_assign: bool
    can_create: bool


# ============================================================
# HELPERS
# ============================================================

async def _columns(db: AsyncSession, project_id: Optional[str]) -> List[dict]:
    if project_id is None:
        return columns_for(None)
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    return columns_for(project)


def _envelope(result: MutationResult, columns: List[dict]) -> TaskEnvelope:
    return TaskEnvelope(
        task=serialize_task(result.task, columns) if result.task is not None else None,
        history=[serialize_history(h) for h in result.history],
        changed=result.changed,
        attempts=result.attempts,
    )


def _publish(kind: MutationKind, actor: UserView, result: MutationResult, payload: dict,
             origin: Optional[str], suppress_reemit: bool, owners: Optional[List[str]] = None):
    """Queue the real-time notification for a committed change"""
    if not result.changed:
        return
    if owners is None and result.task is not None:
        # Users just unassigned still need the event that drops the card
        owners = [result.task.created_by] + sorted(u.id for u in result.task.assignees) + result.unassigned
    coordinator.dispatch(Mutation(
        kind=kind,
        actor_id=actor.id,
        payload=payload,
        project_id=result.project_id,
        owner_ids=owners or [],
        origin_session=origin,
        suppress_reemit=suppress_reemit,
        echo_to_origin=result.echo_to_origin,
    ))


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("", response_model=List[Dict[str, Any]])
async def list_tasks(
    project_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(default=200, le=500),
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    """Tasks on a project board, or the caller's personal tasks when no project is given"""
    if project_id:
        project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
        if not project or not project.is_active:
            raise NotFound("Project", project_id)
        placeholder = TaskView(id="", created_by="", project_id=project_id)
        pview = project_view(project)
        if not resolver.can_view_task(actor, placeholder, pview):
            raise Unauthorized("view", "project", project_id)
        stmt = select(Task).where(Task.project_id == project_id, Task.is_active.is_(True))
        columns = columns_for(project)
    else:
        assigned = select(task_assignees.c.task_id).where(task_assignees.c.user_id == actor.id)
        stmt = select(Task).where(
            Task.project_id.is_(None),
            Task.is_active.is_(True),
            or_(Task.created_by == actor.id, Task.id.in_(assigned)),
        )
        columns = columns_for(None)

    if status:
        stmt = stmt.where(Task.status == normalize_status(status))
    rows = (await db.execute(stmt.order_by(Task.created_at).limit(limit))).scalars().all()
    return [serialize_task(t, columns) for t in rows]


@router.post("", response_model=TaskEnvelope, status_code=201)
async def create_task(
    body: TaskCreate,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_db_session),
    session_id: Optional[str] = Depends(session_id_header),
):
    result = await machine.create_task(actor.id, body.model_dump(exclude={"suppress_reemit"}))
    columns = await _columns(db, result.project_id)
    envelope = _envelope(result, columns)
    _publish(MutationKind.TASK_CREATED, actor, result, {"task": envelope.task},
             session_id, body.suppress_reemit)
    return envelope


@router.get("/{task_id}", response_model=Dict[str, Any])
async def get_task(
    task_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    task, project = await machine.get_task(task_id, actor.id)
    return serialize_task(task, columns_for(project))


@router.patch("/{task_id}", response_model=TaskEnvelope)
async def update_task(
    task_id: str,
    body: TaskUpdate,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_db_session),
    session_id: Optional[str] = Depends(session_id_header),
):
    """Multi-field edit; only fields present in the body are considered"""
    changes = body.model_dump(exclude_unset=True, exclude={"suppress_reemit"})
    result = await machine.update_task(task_id, actor.id, changes)
    columns = await _columns(db, result.project_id)
    envelope = _envelope(result, columns)
    _publish(MutationKind.TASK_UPDATED, actor, result, {"task": envelope.task},
             session_id, body.suppress_reemit)
    return envelope


@router.post("/{task_id}/transition", response_model=TaskEnvelope)
async def transition_task(
    task_id: str,
    body: TransitionRequest,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_db_session),
    session_id: Optional[str] = Depends(session_id_header),
):
    """Move a task to another column of its board"""
    result = await machine.transition(
        task_id, body.status, actor.id,
        suppress_reemit=body.suppress_reemit, origin_session=session_id,
    )
    columns = await _columns(db, result.project_id)
    envelope = _envelope(result, columns)
    _publish(MutationKind.TASK_UPDATED, actor, result, {"task": envelope.task},
             result.origin_session, result.suppress_reemit)
    return envelope


@router.delete("/{task_id}", response_model=TaskEnvelope)
async def delete_task(
    task_id: str,
    purge: bool = False,
    suppress_reemit: bool = False,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    db: AsyncSession = Depends(get_db_session),
    session_id: Optional[str] = Depends(session_id_header),
):
    owners = None
    if purge:
        # Purged rows cannot be read back for personal-channel routing
        task = (await db.execute(select(Task).where(Task.id == task_id))).scalar_one_or_none()
        if task is not None:
            owners = [task.created_by] + sorted(u.id for u in task.assignees)
    result = await machine.delete_task(task_id, actor.id, purge=purge)
    columns = await _columns(db, result.project_id)
    envelope = _envelope(result, columns)
    _publish(MutationKind.TASK_DELETED, actor, result, {"task_id": task_id, "purged": purge},
             session_id, suppress_reemit, owners=owners)
    return envelope


@router.get("/{task_id}/history", response_model=List[Dict[str, Any]])
async def get_history(
    task_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    """Append-only audit trail, oldest first"""
    return [serialize_history(h) for h in await machine.history(task_id, actor.id)]


@router.get("/{task_id}/permissions", response_model=PermissionSummary)
async def get_permissions(
    task_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    task, project = await machine.get_task(task_id, actor.id)
    pview = project_view(project) if project else None
    return PermissionSummary(task_id=task_id, **resolver.summary(actor, task_view(task), pview))
