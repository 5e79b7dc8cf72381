"""
Authentication dependencies for FastAPI.

Turns the bearer token issued by the identity provider into an explicit
Identity that handlers pass down to the domain services.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.jwt import decode_access_token
from billing_backend.app.db.session import get_db
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.user import User

# HTTP Bearer security scheme
security = HTTPBearer()


class Identity(BaseModel):
    """Verified caller identity."""
    user_id: int
    role: UserRole


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> Identity:
    """
    FastAPI dependency resolving the caller identity.

    1. Validates JWT token signature and expiry
    2. Verifies the user still exists and is active

    Raises:
        HTTPException: 401 if the token is invalid, 403 if the user is inactive
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or not role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    try:
        return Identity(user_id=user.id, role=UserRole(role))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid role in token"
        )
