# routers/users.py — Assignable-user lookup and assignee validation
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from assignable import get_assignable_users, validate_assignees
from database import get_db_session
from errors import NotFound
from models import Project, Task
from routers.deps import get_actor
from scopes import ProjectView, TaskView, UserView, load_candidate_pool, project_view, task_view
from store import EntityStore

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class AssignableUserOut(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    organization_id: Optional[str] = None


class ValidateAssignees(BaseModel):
    user_ids: List[str]
    project_id: Optional[str] = None
    task_id: Optional[str] = None


class ValidationReport(BaseModel):
    valid: bool
    valid_users: List[AssignableUserOut]
    invalid_users: List[str]
    not_assignable: List[str]


# --- Helpers ---

def _user_out(u: UserView) -> AssignableUserOut:
    return AssignableUserOut(
        id=u.id, email=u.email, display_name=u.display_name,
        role=u.role.value, organization_id=u.organization_id,
    )


async def _scope(db: AsyncSession, project_id: Optional[str], task_id: Optional[str]):
    """Resolve the project/task pair an assignment would happen in"""
    store = EntityStore(db)
    tview: Optional[TaskView] = None
    if task_id:
        task = await store.get(Task, task_id)
        if task is None or not task.is_active:
            raise NotFound("Task", task_id)
        tview = task_view(task)
        project_id = project_id or task.project_id

    pview: Optional[ProjectView] = None
    if project_id:
        project = await store.get(Project, project_id)
        if project is None or not project.is_active:
            raise NotFound("Project", project_id)
        pview = project_view(project)
    return pview, tview


# --- Endpoints ---

@router.get("/assignable", response_model=List[AssignableUserOut])
async def list_assignable(
    project_id: Optional[str] = None,
    task_id: Optional[str] = None,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    """Users the caller may assign in the given scope; empty when the caller cannot assign"""
    pview, tview = await _scope(db, project_id, task_id)
    pool = await load_candidate_pool(db, actor, pview)
    return [_user_out(u) for u in get_assignable_users(actor, pview, pool, tview)]


@router.post("/validate-assignable", response_model=ValidationReport)
async def validate_assignable(
    body: ValidateAssignees,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    pview, tview = await _scope(db, body.project_id, body.task_id)
    pool = await load_candidate_pool(db, actor, pview)
    report = validate_assignees(actor, pview, body.user_ids, pool, tview)
    return ValidationReport(
        valid=report["valid"],
        valid_users=[_user_out(u) for u in report["valid_users"]],
        invalid_users=report["invalid_users"],
        not_assignable=report["not_assignable"],
    )
