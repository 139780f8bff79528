"""
Auth API - registration, login and token management.

Tokens are stateless JWTs; logout is only recorded in the audit log and the
client drops its tokens.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional
import logging

from app.api.auth import get_current_user
from app.api.users import (
    UserResponse, UpdateProfileRequest, ChangePasswordRequest, user_to_response, EMAIL_PATTERN,
)
from app.db.connection import get_db_session
from app.db.models import User
from app.services.audit_service import AuditService
from app.services.auth_service import AuthService, build_token_response, create_access_token
from app.services.email_service import get_email_service
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Pydantic Models
# ============================================

class RegisterRequest(BaseModel):
    """New member registration"""
    firstname: str = Field(..., min_length=2, max_length=100)
    lastname: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    phone: Optional[str] = Field(None, max_length=30)
    compte_bancaire: Optional[str] = Field(None, min_length=10, max_length=34)


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class AuthResponse(BaseModel):
    """Tokens plus the user they belong to"""
    message: str
    token: str
    refresh_token: str
    expires_in: int  # seconds
    token_type: str
    user: UserResponse


class AccessTokenResponse(BaseModel):
    token: str
    expires_in: int
    token_type: str = "bearer"


# ============================================
# Endpoints
# ============================================

@router.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db_session)
):
    """Create a member account and log it in."""
    user = await UserService.create_user(
        db,
        firstname=request.firstname,
        lastname=request.lastname,
        email=request.email,
        password=request.password,
        phone=request.phone,
        bank_account=request.compte_bancaire,
    )
    await AuditService.log(db, "user_registered", user.id, {"email": user.email})
    logger.info(f"✅ New member registered: {user.id}")

    await get_email_service().send_welcome_email(user)

    return AuthResponse(
        message="User registered successfully",
        user=user_to_response(user),
        **build_token_response(user),
    )


@router.post("/auth/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db_session)
):
    user = await AuthService.login(db, request.email, request.password)
    return AuthResponse(
        message="Login successful",
        user=user_to_response(user),
        **build_token_response(user),
    )


@router.post("/auth/refresh-token", response_model=AccessTokenResponse)
async def refresh_token(
    request: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db_session)
):
    """Exchange a refresh token for a new access token."""
    user = await AuthService.refresh(db, request.refresh_token)
    token, expires_in = create_access_token(user)
    return AccessTokenResponse(token=token, expires_in=expires_in)


@router.get("/auth/verify")
async def verify(current_user: User = Depends(get_current_user)):
    return {"valid": True, "user": user_to_response(current_user)}


@router.post("/auth/logout")
async def logout(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    await AuditService.log(db, "user_logout", current_user.id)
    return {"message": "Logged out successfully"}


@router.get("/auth/profile", response_model=UserResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    return user_to_response(current_user)


@router.put("/auth/profile", response_model=UserResponse)
async def update_profile(
    request: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    user = await UserService.update_profile(db, current_user, request.model_dump(exclude_none=True))
    return user_to_response(user)


@router.put("/auth/change-password")
async def change_password(
    request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    await UserService.change_password(db, current_user, request.current_password, request.new_password)
    return {"message": "Password changed successfully"}
