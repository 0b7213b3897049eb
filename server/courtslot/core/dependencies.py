"""FastAPI dependencies for authentication and database sessions."""

from typing import Optional
from uuid import UUID

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError

from ..schemas.auth import Principal, UserRole
from .config import settings
from .database import get_db
from .exceptions import AuthenticationError, AuthorizationError, ValidationError


def _role_from_claims(payload: dict) -> UserRole:
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    role = payload.get("role")
    if role:
        roles = [*roles, role]
    if any(str(r).lower() in ("staff", "admin") for r in roles):
        return UserRole.STAFF
    return UserRole.REGULAR


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Principal:
    """
    Authentication dependency that validates Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        Principal: The caller's user id and role

    Raises:
        AuthenticationError: If token is invalid or missing
    """
    if not authorization:
        raise AuthenticationError(detail="Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError as e:
        raise AuthenticationError(detail="Invalid authorization header format") from e

    if scheme.lower() != "bearer":
        raise AuthenticationError(detail="Invalid authentication scheme")

    try:
        # PyJWT verifies "exp" when present
        payload = jwt.decode(
            token,
            settings.bearer_token_secret,
            algorithms=["HS256"]
        )
    except PyJWTError as e:
        raise AuthenticationError(detail=f"Token validation failed: {e!s}") from e

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError(detail="Invalid token payload")

    return Principal(user_id=str(user_id), role=_role_from_claims(payload))


async def require_staff(user: Principal = Depends(get_current_user)) -> Principal:
    """Reject callers that are not facility staff."""
    if not user.is_staff:
        raise AuthorizationError(required_permissions=["staff"])
    return user


RequiredAuth = Depends(get_current_user)
StaffAuth = Depends(require_staff)
DatabaseSession = Depends(get_db)


def parse_uuid(value: str, field: str = "id") -> UUID:
    """Parse an identifier from a request body, reporting bad values as a 400."""
    try:
        return UUID(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            detail=f"'{value}' is not a valid identifier",
            errors={field: "must be a UUID"},
        ) from e
