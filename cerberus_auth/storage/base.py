from __future__ import annotations

from typing import Optional, Protocol


class CredentialStore(Protocol):
    """Persistent key-value slots for tokens and the cached profile.

    Operations are synchronous and idempotent. Backends raise
    ``CredentialStoreUnavailable`` when the underlying storage fails.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...
