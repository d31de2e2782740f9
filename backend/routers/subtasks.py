# routers/subtasks.py — Subtask checklist under a task
import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models import SubtaskStatus, TaskPriority
from realtime import Mutation, MutationKind, coordinator
from routers.deps import get_actor, get_state_machine, session_id_header
from scopes import UserView
from workflow import MutationResult, TaskStateMachine, serialize_history, serialize_subtask

router = APIRouter(prefix="/api/v1/subtasks", tags=["Subtasks"])
logger = logging.getLogger("taskflow.subtasks")


# ============================================================
# SCHEMAS
# ============================================================

class SubtaskCreate(BaseModel):
    parent_task_id: str
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: SubtaskStatus = SubtaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    tags: List[str] = []


class SubtaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[SubtaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    tags: Optional[List[str]] = None


class SubtaskOrder(BaseModel):
    new_order: int = Field(..., ge=0)


class SubtaskEnvelope(BaseModel):
    subtask: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = []
    changed: bool = False


class SubtaskStats(BaseModel):
    task_id: str
    total: int
    completed: int
    in_progress: int
    todo: int
    progress_percentage: int


# ============================================================
# HELPERS
# ============================================================

def _publish(kind: MutationKind, actor: UserView, result: MutationResult, payload: dict, origin: Optional[str]):
    if not result.changed:
        return
    parent = result.task
    coordinator.dispatch(Mutation(
        kind=kind,
        actor_id=actor.id,
        payload={"task_id": parent.id, **payload},
        project_id=result.project_id,
        owner_ids=[parent.created_by] + sorted(u.id for u in parent.assignees),
        origin_session=origin,
    ))


def _envelope(result: MutationResult) -> SubtaskEnvelope:
    return SubtaskEnvelope(
        subtask=serialize_subtask(result.subtask) if result.subtask is not None else None,
        history=[serialize_history(h) for h in result.history],
        changed=result.changed,
    )


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("/task/{task_id}", response_model=List[Dict[str, Any]])
async def list_subtasks(
    task_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    return [serialize_subtask(s) for s in await machine.list_subtasks(task_id, actor.id)]


@router.get("/task/{task_id}/stats", response_model=SubtaskStats)
async def subtask_stats(
    task_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    return SubtaskStats(**await machine.subtask_stats(task_id, actor.id))


@router.get("/{subtask_id}", response_model=Dict[str, Any])
async def get_subtask(
    subtask_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    return serialize_subtask(await machine.get_subtask(subtask_id, actor.id))


@router.post("", response_model=SubtaskEnvelope, status_code=201)
async def create_subtask(
    body: SubtaskCreate,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    session_id: Optional[str] = Depends(session_id_header),
):
    data = body.model_dump(exclude={"parent_task_id"})
    result = await machine.create_subtask(body.parent_task_id, actor.id, data)
    envelope = _envelope(result)
    _publish(MutationKind.SUBTASK_CREATED, actor, result, {"subtask": envelope.subtask}, session_id)
    return envelope


@router.patch("/{subtask_id}", response_model=SubtaskEnvelope)
async def update_subtask(
    subtask_id: str,
    body: SubtaskUpdate,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    session_id: Optional[str] = Depends(session_id_header),
):
    """Only fields present in the body are considered"""
    result = await machine.update_subtask(subtask_id, actor.id, body.model_dump(exclude_unset=True))
    envelope = _envelope(result)
    _publish(MutationKind.SUBTASK_UPDATED, actor, result, {"subtask": envelope.subtask}, session_id)
    return envelope


@router.delete("/{subtask_id}", response_model=SubtaskEnvelope)
async def delete_subtask(
    subtask_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    session_id: Optional[str] = Depends(session_id_header),
):
    result = await machine.delete_subtask(subtask_id, actor.id)
    _publish(MutationKind.SUBTASK_DELETED, actor, result, {"subtask_id": subtask_id}, session_id)
    return _envelope(result)


@router.patch("/{subtask_id}/order", response_model=List[Dict[str, Any]])
async def reorder_subtask(
    subtask_id: str,
    body: SubtaskOrder,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    """Drag-and-drop within the checklist; returns the renumbered list"""
    subtasks = await machine.reorder_subtask(subtask_id, actor.id, body.new_order)
    return [serialize_subtask(s) for s in subtasks]
