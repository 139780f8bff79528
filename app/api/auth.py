"""
Authentication dependencies.

get_current_user validates the bearer JWT and loads the (active) user;
require_admin layers a role check on top of it.
"""
from fastapi import Header, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging
import jwt

from app.db.connection import get_db_session
from app.db.models import User
from app.services.auth_service import decode_token, ACCESS_TOKEN_TYPE
from app.services.user_service import UserService

logger = logging.getLogger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db_session)
) -> User:
    """
    Verify the access token from the Authorization header.

    Args:
        authorization: Authorization header value (e.g., "Bearer <jwt_token>")
        db: Database session (injected)

    Returns:
        User: The authenticated, active user

    Raises:
        HTTPException: 401 if token is missing, invalid, expired, or the user is inactive
    """
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning("Request rejected: Missing or invalid Authorization header")
        raise _unauthorized("Access token required")

    token = authorization[7:].strip()  # Remove "Bearer " prefix
    if not token:
        logger.warning("Request rejected: Empty token")
        raise _unauthorized("Access token required")

    try:
        payload = decode_token(token, expected_type=ACCESS_TOKEN_TYPE)
    except jwt.ExpiredSignatureError:
        logger.warning("Request rejected: Token expired")
        raise _unauthorized("Token expired. Please login again.")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Request rejected: Invalid token - {str(e)}")
        raise _unauthorized("Invalid token")

    user = await UserService.get_active_user(db, payload["userId"])
    if not user:
        logger.warning(f"Request rejected: User {payload['userId']} not found or inactive")
        raise _unauthorized("User not found or inactive")

    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Raises 403 for authenticated non-admins."""
    if not current_user.is_admin:
        logger.warning(f"🔒 Security: non-admin user {current_user.id} attempted to access an admin route")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
