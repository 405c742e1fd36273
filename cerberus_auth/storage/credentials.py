from __future__ import annotations

import json
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from cerberus_auth.config import CredentialStoreKind, Settings
from cerberus_auth.logging import get_logger
from cerberus_auth.storage.base import CredentialStore
from cerberus_auth.storage.errors import CredentialStoreUnavailable
from cerberus_auth.storage.models import CredentialPair, StoredSession, UserProfile

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_DATA_KEY = "user_data"


class SessionVault:
    """Reads and writes the three session slots as one unit.

    Writes put the refresh token and profile down before the access token and
    clears remove the access token first, so a reader that finds an access
    token always finds its matching refresh token and profile. A missing
    access token is therefore always a safe "not logged in" signal.
    """

    def __init__(self, store: CredentialStore, *, key_prefix: str = "") -> None:
        self.store = store
        self.access_key = f"{key_prefix}{ACCESS_TOKEN_KEY}"
        self.refresh_key = f"{key_prefix}{REFRESH_TOKEN_KEY}"
        self.user_key = f"{key_prefix}{USER_DATA_KEY}"

    def save(self, credentials: CredentialPair, user: UserProfile) -> None:
        self.store.set(self.refresh_key, credentials.refresh_token)
        self.store.set(self.user_key, user.model_dump_json())
        self.store.set(self.access_key, credentials.access_token)

    def access_token(self) -> Optional[str]:
        return self.store.get(self.access_key)

    def refresh_token(self) -> Optional[str]:
        return self.store.get(self.refresh_key)

    def user(self) -> Optional[UserProfile]:
        raw = self.store.get(self.user_key)
        if not raw:
            return None
        try:
            return UserProfile.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError) as exc:
            logger.warning("stored_user_data_invalid", error=str(exc))
            return None

    def load(self) -> Optional[StoredSession]:
        """The stored session, or None unless every slot is present and valid."""
        access_token = self.access_token()
        if not access_token:
            return None
        refresh_token = self.refresh_token()
        user = self.user()
        if not refresh_token or user is None:
            logger.warning(
                "stored_session_incomplete",
                has_refresh_token=bool(refresh_token),
                has_user=user is not None,
            )
            return None
        return StoredSession(
            credentials=CredentialPair(access_token=access_token, refresh_token=refresh_token),
            user=user,
        )

    def update_user(self, user: UserProfile) -> bool:
        """Rewrite the cached profile of the live session; False if there is none."""
        if not self.access_token():
            return False
        self.store.set(self.user_key, user.model_dump_json())
        return True

    def clear(self) -> None:
        self.store.delete(self.access_key)
        self.store.delete(self.refresh_key)
        self.store.delete(self.user_key)


def create_credential_store(settings: Settings) -> CredentialStore:
    """Build the credential store backend selected by ``settings.credential_store``."""
    kind = settings.credential_store
    if kind == CredentialStoreKind.FILE:
        from cerberus_auth.storage.file_store import FileCredentialStore

        return FileCredentialStore(settings.credential_store_path)
    if kind == CredentialStoreKind.REDIS:
        from cerberus_auth.storage.redis_store import RedisCredentialStore

        store = RedisCredentialStore(settings.redis_url)
        try:
            store.verify_connection()
        except CredentialStoreUnavailable as exc:
            # Manager treats an unavailable store as "no stored session"
            logger.warning("credential_store_unverified", backend=kind.value, error=exc.message)
        return store
    from cerberus_auth.storage.memory import MemoryCredentialStore

    return MemoryCredentialStore()


__all__ = [
    "ACCESS_TOKEN_KEY",
    "REFRESH_TOKEN_KEY",
    "USER_DATA_KEY",
    "SessionVault",
    "create_credential_store",
]
