"""
Users API - the authenticated member's own account.

UserResponse is shared by the auth and admin routers; it only ever exposes the
masked bank account.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
import logging

from app.api.auth import get_current_user
from app.db.connection import get_db_session
from app.db.models import User
from app.services.encryption_service import masked_bank_account
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter()

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ============================================
# Pydantic Models
# ============================================

class UserResponse(BaseModel):
    """Public user representation"""
    id: int
    firstname: str
    lastname: str
    email: str
    phone: Optional[str] = None
    role: str
    is_active: bool
    is_verified: bool
    compte_bancaire: Optional[str] = None  # masked, e.g. ****1234
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UpdateProfileRequest(BaseModel):
    firstname: Optional[str] = Field(None, min_length=2, max_length=100)
    lastname: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)
    compte_bancaire: Optional[str] = Field(None, min_length=10, max_length=34)


class BankAccountRequest(BaseModel):
    compte_bancaire: str = Field(..., min_length=10, max_length=40)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=128)


class UserStatsResponse(BaseModel):
    total_sols: int
    active_sols: int
    total_paid: float
    total_received: float
    pending_payments: int


def user_to_response(user: User) -> UserResponse:
    """Build the response with the bank account decrypted then masked."""
    return UserResponse(
        id=user.id,
        firstname=user.firstname,
        lastname=user.lastname,
        email=user.email,
        phone=user.phone,
        role=user.role.value if hasattr(user.role, "value") else user.role,
        is_active=user.is_active,
        is_verified=user.is_verified,
        compte_bancaire=masked_bank_account(user.bank_account_encrypted),
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


# ============================================
# Endpoints
# ============================================

@router.get("/users/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return user_to_response(current_user)


@router.put("/users/me", response_model=UserResponse)
async def update_me(
    request: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    user = await UserService.update_profile(db, current_user, request.model_dump(exclude_none=True))
    return user_to_response(user)


@router.put("/users/me/bank", response_model=UserResponse)
async def update_my_bank_account(
    request: BankAccountRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """Store the payout account (encrypted at rest)."""
    user = await UserService.set_bank_account(db, current_user, request.compte_bancaire)
    return user_to_response(user)


@router.put("/users/me/password")
async def update_my_password(
    request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    await UserService.change_password(db, current_user, request.current_password, request.new_password)
    return {"message": "Password updated successfully"}


@router.get("/users/me/stats", response_model=UserStatsResponse)
async def get_my_stats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await UserService.get_user_stats(db, current_user.id)
