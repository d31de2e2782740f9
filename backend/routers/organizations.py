# routers/organizations.py — Organisation management
import re
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, CurrentUser, get_current_user
from database import get_db_session
from errors import NotFound, Unauthorized, ValidationFailed
from models import Organization, User, UserRole, UserStatus, organization_admins
from scopes import UserView, load_actor

router = APIRouter(prefix="/api/v1/organizations", tags=["Organizations"])


# --- Schemas ---

class OrgCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    slug: Optional[str] = None
    settings: dict = Field(default_factory=dict)


class OrgOut(BaseModel):
    id: str
    name: str
    slug: str
    owner_id: str
    admin_ids: List[str] = []
    settings: dict
    is_active: bool


class AdminAdd(BaseModel):
    user_id: str


class InviteCreate(BaseModel):
    email: EmailStr
    display_name: str = ""
    role: UserRole = UserRole.MEMBER


class InviteOut(BaseModel):
    user_id: str
    email: str
    status: str
    invitation_token: str


class MemberOut(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    status: str


# --- Helpers ---

def _slugify(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug[:50]


def _org_out(org: Organization) -> OrgOut:
    admin_ids = {u.id for u in org.admins} | {org.owner_id}
    return OrgOut(
        id=org.id, name=org.name, slug=org.slug, owner_id=org.owner_id,
        admin_ids=sorted(admin_ids), settings=org.settings or {}, is_active=org.is_active,
    )


async def _get_org(org_id: str, db: AsyncSession) -> Organization:
    org = (await db.execute(select(Organization).where(Organization.id == org_id))).scalar_one_or_none()
    if not org or not org.is_active:
        raise NotFound("Organization", org_id)
    return org


async def _actor(user: CurrentUser, db: AsyncSession) -> UserView:
    actor = await load_actor(db, user.id)
    if actor is None:
        raise NotFound("User", user.id)
    return actor


def _require_admin(actor: UserView, org: Organization) -> None:
    if actor.role == UserRole.SUPER_ADMIN:
        return
    if actor.role == UserRole.ORG_ADMIN and actor.organization_id == org.id:
        return
    raise Unauthorized("administer", "organization", org.id)


# --- Endpoints ---

@router.post("", response_model=OrgOut, status_code=201)
async def create_organization(
    body: OrgCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an organisation owned by the caller"""
    if user.organization_id and user.role != UserRole.SUPER_ADMIN.value:
        raise ValidationFailed("You already belong to an organization")

    slug = body.slug or _slugify(body.name)
    existing = (await db.execute(select(Organization).where(Organization.slug == slug))).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=409, detail="Organization slug already in use")

    owner = (await db.execute(select(User).where(User.id == user.id))).scalar_one()
    org = Organization(name=body.name, slug=slug, owner_id=owner.id, settings=body.settings)
    org.admins.append(owner)
    db.add(org)
    await db.flush()
    if not owner.organization_id:
        owner.organization_id = org.id
    await db.commit()
    await db.refresh(org)
    return _org_out(org)


@router.get("/{org_id}", response_model=OrgOut)
async def get_organization(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await _get_org(org_id, db)
    if user.role != UserRole.SUPER_ADMIN.value and user.organization_id != org.id:
        raise Unauthorized("view", "organization", org_id)
    return _org_out(org)


@router.post("/{org_id}/admins", response_model=OrgOut)
async def add_admin(
    org_id: str,
    body: AdminAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await _get_org(org_id, db)
    _require_admin(await _actor(user, db), org)

    target = (await db.execute(select(User).where(User.id == body.user_id))).scalar_one_or_none()
    if not target or target.organization_id != org.id:
        raise ValidationFailed("User is not a member of this organization")
    if target.id not in {u.id for u in org.admins}:
        org.admins.append(target)
        await db.commit()
        await db.refresh(org)
    return _org_out(org)


@router.delete("/{org_id}/admins/{user_id}", response_model=OrgOut)
async def remove_admin(
    org_id: str,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await _get_org(org_id, db)
    _require_admin(await _actor(user, db), org)
    if user_id == org.owner_id:
        raise ValidationFailed("The owner is always an admin")

    await db.execute(
        organization_admins.delete().where(
            organization_admins.c.organization_id == org.id,
            organization_admins.c.user_id == user_id,
        )
    )
    await db.commit()
    org = await _get_org(org_id, db)
    await db.refresh(org, ["admins"])
    return _org_out(org)


@router.post("/{org_id}/invitations", response_model=InviteOut, status_code=201)
async def invite_member(
    org_id: str,
    body: InviteCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a pending user; the token is handed to them out of band"""
    org = await _get_org(org_id, db)
    actor = await _actor(user, db)
    _require_admin(actor, org)
    if body.role == UserRole.SUPER_ADMIN:
        raise ValidationFailed("Cannot invite a super_admin")

    existing = (await db.execute(select(User).where(User.email == body.email))).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=409, detail="User already exists")

    invited = User(
        email=body.email,
        display_name=body.display_name or body.email.split("@")[0],
        password_hash=None,
        role=body.role,
        status=UserStatus.PENDING,
        organization_id=org.id,
        invitation_token=AuthService.new_invitation_token(),
        invited_by=actor.id,
    )
    db.add(invited)
    await db.commit()
    await db.refresh(invited)
    return InviteOut(
        user_id=invited.id, email=invited.email,
        status=invited.status.value, invitation_token=invited.invitation_token,
    )


@router.get("/{org_id}/members", response_model=List[MemberOut])
async def list_members(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await _get_org(org_id, db)
    if user.role != UserRole.SUPER_ADMIN.value and user.organization_id != org.id:
        raise Unauthorized("view", "organization", org_id)
    rows = (await db.execute(
        select(User).where(User.organization_id == org.id).order_by(User.display_name)
    )).scalars().all()
    return [
        MemberOut(id=u.id, email=u.email, display_name=u.display_name or "",
                  role=u.role.value, status=u.status.value)
        for u in rows
    ]
