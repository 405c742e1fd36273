from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from cerberus_auth.storage.models import CredentialPair, UserProfile


class LoginRequest(BaseModel):
    username: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class TokenGrant(BaseModel):
    """Token pair and profile returned by login and refresh."""

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    user_info: UserProfile
    token_type: Optional[str] = "bearer"
    expires_in: Optional[int] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def credentials(self) -> CredentialPair:
        return CredentialPair(access_token=self.access_token, refresh_token=self.refresh_token)
