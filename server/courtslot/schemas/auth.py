"""Caller identity supplied by the auth provider."""

from enum import Enum

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Role of the calling user."""
    REGULAR = "REGULAR"
    STAFF = "STAFF"


class Principal(BaseModel):
    """Authenticated caller."""

    user_id: str = Field(..., min_length=1, max_length=128)
    role: UserRole = UserRole.REGULAR

    @property
    def is_staff(self) -> bool:
        return self.role == UserRole.STAFF
