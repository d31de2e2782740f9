# scopes.py — Immutable views of the organisation → team → project → task chain
"""
The permission resolver and the assignable-user filter work on these frozen
views rather than on ORM rows, so they stay pure and can be evaluated after a
session rollback has expired the underlying objects.

Assigned users arrive either as bare ids or as loaded user objects. Both are
normalized to a frozenset of ids here, at the boundary.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Organization, Project, ProjectRole, ProjectVisibility, Task, Team,
    TeamMember, TeamRole, User, UserRole, UserStatus, organization_admins,
)


@dataclass(frozen=True)
class UserRef:
    """An assignee known only by id"""
    id: str


@dataclass(frozen=True)
class UserView:
    id: str
    role: UserRole
    status: UserStatus = UserStatus.ACTIVE
    organization_id: Optional[str] = None
    display_name: str = ""
    email: str = ""
    # Teams where this user is the lead (team.lead_id or team role "lead")
    led_team_ids: FrozenSet[str] = field(default_factory=frozenset)
    team_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


Assignee = Union[UserRef, UserView, str]


@dataclass(frozen=True)
class ProjectView:
    id: str
    created_by: str
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    visibility: ProjectVisibility = ProjectVisibility.PRIVATE
    members: Dict[str, ProjectRole] = field(default_factory=dict)

    def role_of(self, user_id: str) -> Optional[ProjectRole]:
        return self.members.get(user_id)


@dataclass(frozen=True)
class TaskView:
    id: str
    created_by: str
    project_id: Optional[str] = None
    assignee_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(cls, id: str, created_by: str, project_id: Optional[str] = None,
              assignees: Iterable[Assignee] = ()) -> "TaskView":
        return cls(id=id, created_by=created_by, project_id=project_id,
                   assignee_ids=assignee_ids(assignees))


def assignee_ids(assignees: Iterable[Assignee]) -> FrozenSet[str]:
    """Collapse ids, references and resolved users into one id set"""
    ids = set()
    for a in assignees or ():
        if isinstance(a, str):
            ids.add(a)
        elif isinstance(a, (UserRef, UserView)):
            ids.add(a.id)
        else:
            raise TypeError(f"Unsupported assignee value: {type(a).__name__}")
    return frozenset(ids)


# ============================================================
# ORM → VIEW
# ============================================================

def user_view(user: User, led_team_ids: Iterable[str] = (), team_ids: Iterable[str] = (),
              admin_of: Iterable[str] = ()) -> UserView:
    """Build a view; org owners and listed org admins resolve to org_admin."""
    role = UserRole(user.role)
    if (
        user.organization_id
        and user.organization_id in set(admin_of)
        and role not in (UserRole.SUPER_ADMIN, UserRole.ORG_ADMIN)
    ):
        role = UserRole.ORG_ADMIN
    return UserView(
        id=user.id,
        role=role,
        status=UserStatus(user.status),
        organization_id=user.organization_id,
        display_name=user.display_name or "",
        email=user.email,
        led_team_ids=frozenset(led_team_ids),
        team_ids=frozenset(team_ids),
    )


def project_view(project: Project) -> ProjectView:
    return ProjectView(
        id=project.id,
        created_by=project.created_by,
        organization_id=project.organization_id,
        team_id=project.team_id,
        visibility=ProjectVisibility(project.visibility),
        members={m.user_id: ProjectRole(m.role) for m in project.members},
    )


def task_view(task: Task) -> TaskView:
    return TaskView.build(
        id=task.id,
        created_by=task.created_by,
        project_id=task.project_id,
        assignees=[UserRef(u.id) for u in task.assignees],
    )


# ============================================================
# LOADERS
# ============================================================

async def load_actor(db: AsyncSession, user_id: str) -> Optional[UserView]:
    """Fresh read of a user plus team leadership and org admin grants"""
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        return None

    memberships = (await db.execute(
        select(TeamMember.team_id, TeamMember.role).where(TeamMember.user_id == user_id)
    )).all()
    led = {team_id for team_id, role in memberships if role == TeamRole.LEAD}
    team_ids = {team_id for team_id, _ in memberships}

    led_rows = (await db.execute(
        select(Team.id).where(Team.lead_id == user_id, Team.is_active.is_(True))
    )).scalars().all()
    led.update(led_rows)
    team_ids.update(led_rows)

    admin_of = set((await db.execute(
        select(organization_admins.c.organization_id).where(organization_admins.c.user_id == user_id)
    )).scalars().all())
    admin_of.update((await db.execute(
        select(Organization.id).where(Organization.owner_id == user_id)
    )).scalars().all())

    return user_view(user, led_team_ids=led, team_ids=team_ids, admin_of=admin_of)


async def load_users(db: AsyncSession, organization_id: Optional[str] = None) -> list:
    """Candidate pool for assignment; restricted to one organisation when given"""
    stmt = select(User)
    if organization_id is not None:
        stmt = stmt.where(User.organization_id == organization_id)
    rows = (await db.execute(stmt.order_by(User.display_name))).scalars().all()
    return [user_view(u) for u in rows]


async def load_candidate_pool(db: AsyncSession, actor: UserView,
                              project: Optional[ProjectView] = None) -> list:
    """Every user who could possibly be assignable for this actor/scope"""
    if actor.role == UserRole.SUPER_ADMIN:
        return await load_users(db)
    pool = {}
    org_ids = {actor.organization_id, project.organization_id if project else None} - {None}
    for org_id in org_ids:
        for u in await load_users(db, org_id):
            pool[u.id] = u
    if project is not None:
        extra_ids = (set(project.members) | {project.created_by}) - set(pool)
        if extra_ids:
            rows = (await db.execute(select(User).where(User.id.in_(extra_ids)))).scalars().all()
            for u in rows:
                pool[u.id] = user_view(u)
    if actor.id not in pool:
        pool[actor.id] = actor
    return list(pool.values())
