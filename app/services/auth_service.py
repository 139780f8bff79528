"""
Auth Service - JWT issuing/decoding plus register/login flows.

Access tokens carry userId, email and role so that most requests don't need
an extra lookup to know who is calling. Refresh tokens only carry userId.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import jwt
import logging

from app.config import settings
from app.core.exceptions import AuthenticationError
from app.db.models import User
from app.services.audit_service import AuditService
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def create_access_token(user: User) -> tuple[str, int]:
    """
    Create a signed access token for a user.

    Returns:
        Tuple of (token, expires_in_seconds)
    """
    expires_in = settings.jwt_expiration_hours * 3600
    payload = {
        "userId": user.id,
        "email": user.email,
        "role": user.role.value if hasattr(user.role, "value") else user.role,
        "type": ACCESS_TOKEN_TYPE,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    token = jwt.encode(payload, settings.session_secret, algorithm=settings.jwt_algorithm)
    return token, expires_in


def create_refresh_token(user: User) -> str:
    """Create a long-lived refresh token (only usable on /refresh-token)."""
    payload = {
        "userId": user.id,
        "type": REFRESH_TOKEN_TYPE,
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_expiration_days),
    }
    return jwt.encode(payload, settings.session_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> dict:
    """
    Decode and validate a JWT.

    Raises:
        jwt.ExpiredSignatureError: token expired
        jwt.InvalidTokenError: bad signature, malformed, or wrong type
    """
    payload = jwt.decode(token, settings.session_secret, algorithms=[settings.jwt_algorithm])
    if payload.get("type") != expected_type:
        raise jwt.InvalidTokenError(f"Invalid token type '{payload.get('type')}'")
    if not payload.get("userId"):
        raise jwt.InvalidTokenError("Missing userId in token")
    return payload


def build_token_response(user: User) -> dict:
    access_token, expires_in = create_access_token(user)
    return {
        "token": access_token,
        "refresh_token": create_refresh_token(user),
        "expires_in": expires_in,
        "token_type": "bearer",
    }


class AuthService:
    """Login / refresh flows on top of UserService"""

    @staticmethod
    async def login(db: AsyncSession, email: str, password: str) -> User:
        """
        Validate credentials and stamp last_login_at.

        Raises:
            AuthenticationError: wrong email/password or inactive account
        """
        user = await UserService.validate_credentials(db, email, password)
        if not user:
            logger.warning(f"🔒 Failed login attempt for {email.lower()}")
            raise AuthenticationError("Invalid credentials")

        user.last_login_at = datetime.now(timezone.utc).replace(tzinfo=None)
        await db.flush()

        await AuditService.log(db, "user_login", user.id, {"email": user.email})
        return user

    @staticmethod
    async def refresh(db: AsyncSession, refresh_token: str) -> User:
        """
        Resolve the user behind a refresh token.

        Raises:
            AuthenticationError: token invalid/expired or user gone
        """
        try:
            payload = decode_token(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Refresh token expired. Please login again.")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Refresh rejected: {e}")
            raise AuthenticationError("Invalid refresh token")

        user: Optional[User] = await UserService.get_active_user(db, payload["userId"])
        if not user:
            raise AuthenticationError("User not found or inactive")
        return user
