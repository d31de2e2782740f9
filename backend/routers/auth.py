# routers/auth.py — Authentication endpoints
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES, AcceptInvitation, AuthService, CurrentUser,
    TokenResponse, UserLogin, UserRegister, get_current_user,
)
from database import get_db_session
from models import UserRole

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _build_token_response(user_obj) -> TokenResponse:
    """Build token response from a user ORM instance"""
    return TokenResponse(
        access_token=AuthService.token_for(user_obj),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "display_name": user_obj.display_name or "",
            "organization_id": user_obj.organization_id,
            "role": user_obj.role.value if isinstance(user_obj.role, UserRole) else user_obj.role,
        },
    )


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register an individual user account"""
    user = await AuthService.register_user(user_data, db)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive an access token"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(user)


@router.post("/accept-invitation", response_model=TokenResponse)
async def accept_invitation(
    data: AcceptInvitation,
    db: AsyncSession = Depends(get_db_session),
):
    """Set a password for an invited (pending) user and activate the account"""
    user = await AuthService.accept_invitation(data, db)
    return _build_token_response(user)


@router.get("/me", response_model=CurrentUser)
async def me(user: CurrentUser = Depends(get_current_user)):
    return user
