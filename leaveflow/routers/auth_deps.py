"""
Authentication seam.
Tokens are issued by the identity provider; we only verify them and turn
the claims into an Actor (staff id + role) for the workflow.
"""
import logging
from typing import Callable, List

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import ValidationError

from leaveflow.core.exceptions import AccessDeniedError
from leaveflow.core.security import decode_access_token
from leaveflow.schemas.auth import Actor, Role, TokenData

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """
    Extracts and validates the current actor from the JWT token.
    """
    payload = decode_access_token(token)

    if payload is None:
        logger.warning("Authentication failed: Invalid token")
        raise _unauthorized("Could not validate credentials")

    if payload.get("error") == "TOKEN_EXPIRED":
        logger.info("Authentication failed: Token expired")
        raise _unauthorized("TOKEN_EXPIRED")

    if payload.get("type") != "access":
        logger.warning("Authentication failed: Invalid token type")
        raise _unauthorized("Invalid token type")

    token_data = TokenData(staff_id=payload.get("sub"), role=payload.get("role"), name=payload.get("name"))
    if token_data.staff_id is None:
        logger.warning("Authentication failed: Missing subject (staff id) in token")
        raise _unauthorized("Missing subject in token")

    try:
        return Actor(staff_id=token_data.staff_id, role=token_data.role, name=token_data.name)
    except ValidationError:
        logger.warning(f"Authentication failed: Unknown role {token_data.role!r} for {token_data.staff_id}")
        raise _unauthorized("Unknown role in token")


def require_role(allowed_roles: List[Role]) -> Callable:
    """
    Dependency factory that checks if the actor has one of the allowed roles.

    Usage:
        @router.post("/leave-policies")
        def create_policy(actor: Actor = Depends(require_role([Role.HR, Role.ADMIN]))):
            ...
    """
    def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {[r.value for r in allowed_roles]}"
            )
        return actor
    return role_checker


def require_hr():
    """Shorthand for HR administration endpoints."""
    return require_role([Role.HR, Role.ADMIN])


def require_approver():
    """Shorthand for anyone who may sit on an approval level."""
    return require_role([Role.MANAGER, Role.HR, Role.ADMIN])


def ensure_can_view(actor: Actor, staff_id: str):
    """Employees only see their own leave data; approvers and HR see everyone's."""
    if actor.role == Role.EMPLOYEE and actor.staff_id != staff_id:
        raise AccessDeniedError("You can only access your own leave records")
