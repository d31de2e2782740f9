# routers/projects.py — Projects, project membership and board columns
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import NotFound, Unauthorized, ValidationFailed
from models import (
    Project, ProjectMember, ProjectRole, ProjectVisibility, Task, Team, User, UserRole, utcnow,
)
from permissions import Action, resolver
from realtime import Mutation, MutationKind, coordinator
from routers.deps import get_actor, get_state_machine, session_id_header
from scopes import TaskView, UserView, project_view
from store import EntityStore
from workflow import TaskStateMachine, columns_for

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])
logger = logging.getLogger("taskflow.projects")

# MANAGE rules that may also delete; project admins and team leads may not
_DELETE_RULES = ("super_admin", "org_admin_scope", "project_creator")


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    visibility: ProjectVisibility = ProjectVisibility.PRIVATE


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    visibility: Optional[ProjectVisibility] = None


class ProjectMemberAdd(BaseModel):
    user_id: str
    role: ProjectRole = ProjectRole.MEMBER


class ProjectMemberRole(BaseModel):
    role: ProjectRole


class ProjectMemberOut(BaseModel):
    user_id: str
    role: str


class ProjectOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    visibility: str
    created_by: str
    columns: List[dict]
    members: List[ProjectMemberOut] = []
    version: int
    is_active: bool = True


class ColumnCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = None


class ColumnOrder(BaseModel):
    column_ids: List[str]


class ColumnsOut(BaseModel):
    project_id: str
    columns: List[dict]


# ============================================================
# HELPERS
# ============================================================

def _project_out(project: Project) -> ProjectOut:
    return ProjectOut(
        id=project.id, name=project.name, description=project.description,
        organization_id=project.organization_id, team_id=project.team_id,
        visibility=ProjectVisibility(project.visibility).value, created_by=project.created_by,
        columns=columns_for(project),
        members=[ProjectMemberOut(user_id=m.user_id, role=m.role.value) for m in project.members],
        version=project.version,
        is_active=bool(project.is_active),
    )


async def _get_project(project_id: str, db: AsyncSession) -> Project:
    project = (await db.execute(
        select(Project).where(Project.id == project_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not project or not project.is_active:
        raise NotFound("Project", project_id)
    return project


def _can_view(actor: UserView, project: Project) -> bool:
    placeholder = TaskView(id="", created_by="", project_id=project.id)
    return resolver.can_view_task(actor, placeholder, project_view(project))


def _require_manage(actor: UserView, project: Project) -> None:
    if not resolver.can_manage_project(actor, project_view(project)):
        raise Unauthorized("manage", "project", project.id)


def _announce_project(project: Project, actor: UserView, origin: Optional[str]):
    coordinator.dispatch(Mutation(
        kind=MutationKind.PROJECT_UPDATED,
        actor_id=actor.id,
        project_id=project.id,
        payload={"project": _project_out(project).model_dump()},
        origin_session=origin,
    ))


def _announce_columns(project_id: str, actor: UserView, columns: List[dict], origin: Optional[str]):
    coordinator.dispatch(Mutation(
        kind=MutationKind.COLUMNS_UPDATED,
        actor_id=actor.id,
        project_id=project_id,
        payload={"project_id": project_id, "columns": columns},
        origin_session=origin,
    ))


# ============================================================
# PROJECTS
# ============================================================

@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    body: ProjectCreate,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project; the creator becomes its first admin member"""
    if actor.role == UserRole.VIEWER:
        raise Unauthorized("create", "project")

    org_id = body.organization_id
    if body.team_id:
        team = (await db.execute(select(Team).where(Team.id == body.team_id))).scalar_one_or_none()
        if not team or not team.is_active:
            raise NotFound("Team", body.team_id)
        if org_id and team.organization_id != org_id:
            raise ValidationFailed("Team belongs to a different organization")
        org_id = team.organization_id
    if org_id and actor.role != UserRole.SUPER_ADMIN and actor.organization_id != org_id:
        raise Unauthorized("create", "project")
    if body.visibility == ProjectVisibility.ORGANIZATION and not org_id:
        raise ValidationFailed("Organization visibility requires an organization")
    if body.visibility == ProjectVisibility.TEAM and not body.team_id:
        raise ValidationFailed("Team visibility requires a team")

    project = Project(
        name=body.name, description=body.description, organization_id=org_id,
        team_id=body.team_id, visibility=body.visibility, created_by=actor.id,
        columns=columns_for(None), version=1,
    )
    db.add(project)
    await db.flush()
    db.add(ProjectMember(project_id=project.id, user_id=actor.id, role=ProjectRole.ADMIN, added_by=actor.id))
    await db.commit()
    logger.info(f"Project {project.id[:8]} created by {actor.id[:8]}")
    return _project_out(await _get_project(project.id, db))


@router.get("", response_model=List[ProjectOut])
async def list_projects(
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    """Projects the caller can see"""
    rows = (await db.execute(
        select(Project).where(Project.is_active.is_(True)).order_by(Project.created_at)
    )).scalars().all()
    return [_project_out(p) for p in rows if _can_view(actor, p)]


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(project_id, db)
    if not _can_view(actor, project):
        raise Unauthorized("view", "project", project_id)
    return _project_out(project)


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    body: ProjectUpdate,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    session_id: Optional[str] = Depends(session_id_header),
):
    """Rename, describe or change visibility; board columns have their own endpoints"""
    project = await _get_project(project_id, db)
    _require_manage(actor, project)

    changes = body.model_dump(exclude_unset=True)
    patch = {k: v for k, v in changes.items() if v is not None and v != getattr(project, k)}
    visibility = patch.get("visibility")
    if visibility == ProjectVisibility.ORGANIZATION and not project.organization_id:
        raise ValidationFailed("Organization visibility requires an organization")
    if visibility == ProjectVisibility.TEAM and not project.team_id:
        raise ValidationFailed("Team visibility requires a team")
    if not patch:
        return _project_out(project)

    patch["updated_at"] = utcnow()
    await EntityStore(db).conditional_update(Project, project_id, project.version, patch)
    project = await _get_project(project_id, db)
    logger.info(f"Project {project_id[:8]} updated by {actor.id[:8]}: {', '.join(sorted(changes))}")
    _announce_project(project, actor, session_id)
    return _project_out(project)


@router.delete("/{project_id}", response_model=ProjectOut)
async def delete_project(
    project_id: str,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    session_id: Optional[str] = Depends(session_id_header),
):
    """Deactivate a project and its tasks; creator, org admin or super_admin only"""
    project = await _get_project(project_id, db)
    decision = resolver.explain(actor, Action.MANAGE, project_view(project))
    if not decision.allowed or decision.rule not in _DELETE_RULES:
        raise Unauthorized("delete", "project", project_id)

    store = EntityStore(db)
    await store.conditional_update(
        Project, project_id, project.version, {"is_active": False, "updated_at": utcnow()}, commit=False,
    )
    await db.execute(
        update(Task).where(Task.project_id == project_id, Task.is_active.is_(True))
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await store.commit()
    project = (await db.execute(
        select(Project).where(Project.id == project_id).execution_options(populate_existing=True)
    )).scalar_one()
    logger.warning(f"Project {project_id[:8]} deleted by {actor.id[:8]}")
    _announce_project(project, actor, session_id)
    return _project_out(project)


@router.post("/{project_id}/members", response_model=ProjectOut, status_code=201)
async def add_project_member(
    project_id: str,
    body: ProjectMemberAdd,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(project_id, db)
    _require_manage(actor, project)

    target = (await db.execute(select(User).where(User.id == body.user_id))).scalar_one_or_none()
    if not target:
        raise NotFound("User", body.user_id)
    if project.organization_id and target.organization_id != project.organization_id \
            and actor.role != UserRole.SUPER_ADMIN:
        raise ValidationFailed("User is not a member of the project's organization")

    existing = next((m for m in project.members if m.user_id == body.user_id), None)
    if existing is not None:
        raise HTTPException(status_code=409, detail="User is already a project member")

    db.add(ProjectMember(project_id=project.id, user_id=target.id, role=body.role, added_by=actor.id))
    await db.commit()
    return _project_out(await _get_project(project_id, db))


@router.delete("/{project_id}/members/{user_id}", response_model=ProjectOut)
async def remove_project_member(
    project_id: str,
    user_id: str,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(project_id, db)
    _require_manage(actor, project)
    if user_id == project.created_by:
        raise ValidationFailed("The project creator cannot be removed")

    membership = next((m for m in project.members if m.user_id == user_id), None)
    if membership is None:
        raise NotFound("ProjectMember", user_id)
    await db.delete(membership)
    await db.commit()
    return _project_out(await _get_project(project_id, db))


@router.put("/{project_id}/members/{user_id}/role", response_model=ProjectOut)
async def set_project_member_role(
    project_id: str,
    user_id: str,
    body: ProjectMemberRole,
    actor: UserView = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(project_id, db)
    _require_manage(actor, project)
    if user_id == project.created_by:
        raise ValidationFailed("The project creator's role cannot be changed")

    membership = next((m for m in project.members if m.user_id == user_id), None)
    if membership is None:
        raise NotFound("ProjectMember", user_id)
    if membership.role != body.role:
        logger.info(f"Project {project_id[:8]}: {user_id[:8]} {membership.role.value} → {body.role.value}")
        membership.role = body.role
        await db.commit()
    return _project_out(await _get_project(project_id, db))


# ============================================================
# COLUMNS
# ============================================================

@router.get("/{project_id}/columns", response_model=ColumnsOut)
async def get_columns(
    project_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
):
    columns = await machine.get_columns(project_id, actor.id)
    return ColumnsOut(project_id=project_id, columns=columns)


@router.post("/{project_id}/columns", response_model=ColumnsOut, status_code=201)
async def add_column(
    project_id: str,
    body: ColumnCreate,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    session_id: Optional[str] = Depends(session_id_header),
):
    await machine.add_column(project_id, actor.id, body.name, body.color)
    columns = await machine.get_columns(project_id, actor.id)
    _announce_columns(project_id, actor, columns, session_id)
    return ColumnsOut(project_id=project_id, columns=columns)


@router.delete("/{project_id}/columns/{column_id}", response_model=ColumnsOut)
async def remove_column(
    project_id: str,
    column_id: str,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    session_id: Optional[str] = Depends(session_id_header),
):
    await machine.remove_column(project_id, column_id, actor.id)
    columns = await machine.get_columns(project_id, actor.id)
    _announce_columns(project_id, actor, columns, session_id)
    return ColumnsOut(project_id=project_id, columns=columns)


@router.put("/{project_id}/columns/order", response_model=ColumnsOut)
async def reorder_columns(
    project_id: str,
    body: ColumnOrder,
    actor: UserView = Depends(get_actor),
    machine: TaskStateMachine = Depends(get_state_machine),
    session_id: Optional[str] = Depends(session_id_header),
):
    await machine.reorder_columns(project_id, actor.id, body.column_ids)
    columns = await machine.get_columns(project_id, actor.id)
    _announce_columns(project_id, actor, columns, session_id)
    return ColumnsOut(project_id=project_id, columns=columns)
