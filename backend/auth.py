# auth.py — Authentication & identity for TaskFlow
# Features:
# - JWT access tokens with JTI
# - 5-tier role hierarchy (super_admin, org_admin, team_lead, member, viewer)
# - Password policy enforcement (min 12 chars)
# - Brute force protection
# - Invitation flow: pending users have no credential until they accept

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, UserRole, UserStatus, utcnow

logger = logging.getLogger("taskflow.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning("JWT_SECRET_KEY not set. Generated ephemeral key. Set JWT_SECRET_KEY in production!")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
MIN_PASSWORD_LENGTH = 12
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()

# In-memory brute force tracker (use Redis in production)
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    UserRole.SUPER_ADMIN: 5,
    UserRole.ORG_ADMIN: 4,
    UserRole.TEAM_LEAD: 3,
    UserRole.MEMBER: 2,
    UserRole.VIEWER: 1,
}


def has_higher_or_equal_role(role: str, required: UserRole) -> bool:
    try:
        level = ROLE_HIERARCHY.get(UserRole(role), 0)
    except ValueError:
        level = 0
    return level >= ROLE_HIERARCHY.get(required, 0)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

def _check_password(v: str) -> str:
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


class UserRegister(BaseModel):
    email: EmailStr
    password: str
    display_name: str = ""

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class AcceptInvitation(BaseModel):
    token: str
    password: str
    display_name: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password(v)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    organization_id: Optional[str] = None
    role: str
    status: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password hashing, tokens, registration and invitations"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def token_for(user: User) -> str:
        return AuthService.create_access_token({
            "sub": user.id,
            "email": user.email,
            "organization_id": user.organization_id,
            "role": user.role.value if isinstance(user.role, UserRole) else user.role,
        })

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        """Self-registration creates an individual (organisation-less) member"""
        result = await db.execute(select(User).where(User.email == user_data.email))
        if result.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="User already exists")

        new_user = User(
            email=user_data.email,
            display_name=user_data.display_name or user_data.email.split("@")[0],
            password_hash=AuthService.hash_password(user_data.password),
            role=UserRole.MEMBER,
            status=UserStatus.ACTIVE,
        )
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
        logger.info(f"User registered: {new_user.id[:8]}")
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        AuthService._check_brute_force(email)

        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if user.status != UserStatus.ACTIVE:
            return None

        AuthService._clear_attempts(email)
        user.last_login_at = utcnow()
        await db.commit()
        return user

    @staticmethod
    def new_invitation_token() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    async def accept_invitation(data: AcceptInvitation, db: AsyncSession) -> User:
        result = await db.execute(select(User).where(User.invitation_token == data.token))
        user = result.scalar_one_or_none()
        if not user or user.status != UserStatus.PENDING:
            raise HTTPException(status_code=404, detail="Invitation not found or already used")

        user.password_hash = AuthService.hash_password(data.password)
        user.status = UserStatus.ACTIVE
        user.invitation_token = None
        if data.display_name:
            user.display_name = data.display_name
        await db.commit()
        await db.refresh(user)
        logger.info(f"Invitation accepted: {user.id[:8]}")
        return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def user_from_token(token: str, db: AsyncSession) -> User:
    payload = AuthService.verify_token(token)
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or user.status != UserStatus.ACTIVE:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    user = await user_from_token(credentials.credentials, db)
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        organization_id=user.organization_id,
        role=user.role.value if isinstance(user.role, UserRole) else user.role,
        status=user.status.value if isinstance(user.status, UserStatus) else user.status,
    )


def require_min_role(min_role: UserRole):
    """Dependency factory: require user role level >= min_role"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_higher_or_equal_role(user.role, min_role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role level")
        return user
    return _check
