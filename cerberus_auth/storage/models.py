from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator


class Role(str, Enum):
    """Console roles, lowest privilege first."""

    ANALYST = "analyst"
    SENIOR_ANALYST = "senior_analyst"
    MANAGER = "manager"
    ADMIN = "admin"

    @property
    def level(self) -> int:
        return ROLE_LEVELS[self]


ROLE_LEVELS: dict[Role, int] = {
    Role.ANALYST: 1,
    Role.SENIOR_ANALYST: 2,
    Role.MANAGER: 3,
    Role.ADMIN: 4,
}


def role_level(role: Union[Role, str, None]) -> int:
    """Rank a role; unknown roles rank as the lowest level."""
    try:
        return Role(role).level
    except ValueError:
        return 1


class UserProfile(BaseModel):
    """Identity of the signed-in user as reported by the identity service.

    Unrecognized fields sent by the server are kept so the cached copy in
    ``user_data`` round-trips unchanged.
    """

    id: str
    username: str
    email: Optional[str] = None
    role: Union[Role, str] = Role.ANALYST
    department: Optional[str] = None
    full_name: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value):
        if value is None:
            return Role.ANALYST
        try:
            return Role(value)
        except ValueError:
            return value

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    def has_role(self, required: Union[Role, str]) -> bool:
        """True when this user's role is at least ``required`` in the hierarchy."""
        return role_level(self.role) >= role_level(required)


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "CredentialPair(access_token=***, refresh_token=***)"


@dataclass(frozen=True)
class StoredSession:
    credentials: CredentialPair
    user: UserProfile
