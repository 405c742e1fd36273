from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from cerberus_auth.config import CredentialStoreKind, get_settings, reset_settings_cache
from cerberus_auth.logging import get_logger
from cerberus_auth.service.identity import IdentityClient
from cerberus_auth.service.session import SessionManager
from cerberus_auth.storage.credentials import create_credential_store

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide credential store, identity client and session."""

    def __init__(self):
        self.settings = get_settings()
        self.store = create_credential_store(self.settings)
        self.identity = IdentityClient(self.settings)
        self.session = SessionManager(self.store, self.identity, self.settings)
        logger.info(
            "runtime_initialized",
            api_base_url=self.settings.api_base_url,
            credential_store=self.settings.credential_store.value,
            redis_url=_mask_url_password(self.settings.redis_url)
            if self.settings.credential_store == CredentialStoreKind.REDIS
            else None,
            refresh_interval_seconds=self.settings.effective_refresh_interval,
        )

    async def aclose(self) -> None:
        """Tear down the session and release the HTTP client."""
        await self.session.teardown()
        await self.identity.aclose()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def get_session_manager() -> SessionManager:
    return get_runtime().session


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton so the next call re-reads the environment.

    The previous runtime is not torn down here since that needs an event
    loop; tests that start sessions call ``Runtime.aclose`` themselves.
    """
    global runtime
    with _runtime_lock:
        runtime = None
    reset_settings_cache()
