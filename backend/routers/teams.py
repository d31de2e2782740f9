# routers/teams.py — Teams within an organisation
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user
from database import get_db_session
from errors import NotFound, Unauthorized, ValidationFailed
from models import Team, TeamMember, TeamRole, User, UserRole
from scopes import UserView, load_actor

router = APIRouter(prefix="/api/v1/teams", tags=["Teams"])


class TeamCreate(BaseModel):
    organization_id: str
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    lead_id: Optional[str] = None


class MemberAdd(BaseModel):
    user_id: str
    role: TeamRole = TeamRole.MEMBER


class RoleUpdate(BaseModel):
    role: TeamRole


class TeamMemberOut(BaseModel):
    user_id: str
    role: str


class TeamOut(BaseModel):
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    lead_id: Optional[str] = None
    members: List[TeamMemberOut] = []


def _team_out(team: Team) -> TeamOut:
    return TeamOut(
        id=team.id, organization_id=team.organization_id, name=team.name,
        description=team.description, lead_id=team.lead_id,
        members=[TeamMemberOut(user_id=m.user_id, role=m.role.value) for m in team.members],
    )


async def _get_team(team_id: str, db: AsyncSession) -> Team:
    team = (await db.execute(
        select(Team).where(Team.id == team_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not team or not team.is_active:
        raise NotFound("Team", team_id)
    return team


async def _actor(user: CurrentUser, db: AsyncSession) -> UserView:
    actor = await load_actor(db, user.id)
    if actor is None:
        raise NotFound("User", user.id)
    return actor


def _is_org_admin(actor: UserView, organization_id: str) -> bool:
    if actor.role == UserRole.SUPER_ADMIN:
        return True
    return actor.role == UserRole.ORG_ADMIN and actor.organization_id == organization_id


async def _org_user(db: AsyncSession, user_id: str, organization_id: str) -> User:
    target = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not target or target.organization_id != organization_id:
        raise ValidationFailed("User is not a member of this organization")
    return target


@router.post("", response_model=TeamOut, status_code=201)
async def create_team(
    body: TeamCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    actor = await _actor(user, db)
    if not _is_org_admin(actor, body.organization_id):
        raise Unauthorized("create", "team")

    existing = (await db.execute(
        select(Team).where(Team.organization_id == body.organization_id, Team.name == body.name)
    )).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=409, detail="A team with this name already exists")

    if body.lead_id:
        await _org_user(db, body.lead_id, body.organization_id)

    team = Team(
        organization_id=body.organization_id, name=body.name, description=body.description,
        lead_id=body.lead_id, created_by=actor.id,
    )
    db.add(team)
    await db.flush()
    if body.lead_id:
        db.add(TeamMember(team_id=team.id, user_id=body.lead_id, role=TeamRole.LEAD))
    await db.commit()
    return _team_out(await _get_team(team.id, db))


@router.get("/{team_id}", response_model=TeamOut)
async def get_team(
    team_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    team = await _get_team(team_id, db)
    if user.role != UserRole.SUPER_ADMIN.value and user.organization_id != team.organization_id:
        raise Unauthorized("view", "team", team_id)
    return _team_out(team)


@router.post("/{team_id}/members", response_model=TeamOut, status_code=201)
async def add_member(
    team_id: str,
    body: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Org admins and the team's lead may add members"""
    team = await _get_team(team_id, db)
    actor = await _actor(user, db)
    if not (_is_org_admin(actor, team.organization_id) or team.id in actor.led_team_ids):
        raise Unauthorized("manage", "team", team_id)

    await _org_user(db, body.user_id, team.organization_id)
    if any(m.user_id == body.user_id for m in team.members):
        raise HTTPException(status_code=409, detail="User is already a member of this team")

    db.add(TeamMember(team_id=team.id, user_id=body.user_id, role=body.role))
    if body.role == TeamRole.LEAD and not team.lead_id:
        team.lead_id = body.user_id
    await db.commit()
    return _team_out(await _get_team(team_id, db))


@router.put("/{team_id}/members/{user_id}", response_model=TeamOut)
async def set_member_role(
    team_id: str,
    user_id: str,
    body: RoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    team = await _get_team(team_id, db)
    actor = await _actor(user, db)
    if not _is_org_admin(actor, team.organization_id):
        raise Unauthorized("manage", "team", team_id)

    membership = next((m for m in team.members if m.user_id == user_id), None)
    if membership is None:
        raise NotFound("TeamMember", user_id)
    membership.role = body.role
    if body.role == TeamRole.LEAD:
        team.lead_id = user_id
    elif team.lead_id == user_id:
        team.lead_id = None
    await db.commit()
    return _team_out(await _get_team(team_id, db))
