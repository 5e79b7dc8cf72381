"""
Security guards for role-based access control.
"""

from typing import List
from fastapi import Depends, HTTPException, status

from billing_backend.app.models.enums import UserRole
from billing_backend.app.core.dependencies import Identity, get_current_user


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/calls")
        async def create_call(identity: Identity = Depends(require_role([UserRole.VIEWER]))):
            ...

    Raises:
        HTTPException 403 if the caller role is not in allowed_roles
    """
    async def role_checker(identity: Identity = Depends(get_current_user)) -> Identity:
        if identity.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )
        return identity

    return role_checker

