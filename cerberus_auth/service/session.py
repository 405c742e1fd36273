"""Session state machine for the console's signed-in user.

A ``SessionManager`` owns the stored token pair and cached profile, the
current ``SessionState``, and the refresh scheduler. Views read its signals
(``is_authenticated``, ``is_loading``, ``user``) and call its operations; they
never touch the credential store or the identity client directly.

States::

    UNAUTHENTICATED --login ok--> AUTHENTICATED --refresh ok--> AUTHENTICATED
    AUTHENTICATED --refresh failed / logout / teardown--> UNAUTHENTICATED

``AUTHENTICATING`` and ``REFRESHING`` last for the duration of the network
call. At most one refresh is in flight; concurrent callers join it and share
its result.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from cerberus_auth.config import Settings, get_settings
from cerberus_auth.logging import get_logger, set_correlation_id
from cerberus_auth.service.errors import (
    AuthError,
    AuthResult,
    NotAuthenticatedError,
    SessionStorageError,
    UnauthorizedError,
    ValidationError,
)
from cerberus_auth.service.identity import IdentityClient
from cerberus_auth.service.scheduler import RefreshScheduler
from cerberus_auth.storage.base import CredentialStore
from cerberus_auth.storage.credentials import SessionVault
from cerberus_auth.storage.errors import CredentialStoreUnavailable
from cerberus_auth.storage.models import CredentialPair, Role, StoredSession, UserProfile

logger = get_logger(__name__)

StateListener = Callable[["SessionState", Optional[UserProfile]], None]
SchedulerFactory = Callable[..., RefreshScheduler]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class SessionManager:
    """Single process-wide authenticated session."""

    def __init__(
        self,
        store: CredentialStore,
        identity: IdentityClient,
        settings: Optional[Settings] = None,
        *,
        scheduler_factory: Optional[SchedulerFactory] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.vault = SessionVault(store, key_prefix=self.settings.storage_key_prefix)
        self.identity = identity
        self._scheduler_factory = scheduler_factory or RefreshScheduler
        self._scheduler: Optional[RefreshScheduler] = None
        self._state = SessionState.UNAUTHENTICATED
        self._user: Optional[UserProfile] = None
        self._is_loading = True
        self._initialized = False
        self._refresh_future: Optional[asyncio.Future] = None
        # Bumped whenever a session ends or is superseded; results of network
        # calls started under an older generation are discarded.
        self._generation = 0
        self._listeners: List[StateListener] = []

    # -- read-only signals -------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> Optional[UserProfile]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._state in (SessionState.AUTHENTICATED, SessionState.REFRESHING)

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def scheduler(self) -> Optional[RefreshScheduler]:
        return self._scheduler

    def has_role(self, required: Union[Role, str]) -> bool:
        return self._user is not None and self._user.has_role(required)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- lifecycle ---------------------------------------------------------

    async def init(self) -> Optional[UserProfile]:
        """Restore a stored session at startup. Never raises."""
        if self._initialized:
            return self._user
        self._initialized = True
        set_correlation_id()
        self._set_loading(True)
        try:
            if self._stored_session() is None:
                logger.info("session_init_no_stored_session")
                await self._end_session("no_stored_session")
                return None
            user = await self.current_user()
            logger.info("session_init_complete", authenticated=user is not None)
            return user
        except Exception as exc:
            logger.error("session_init_failed", error=str(exc), error_type=type(exc).__name__)
            await self._end_session("init_failed")
            return None
        finally:
            self._set_loading(False)

    async def teardown(self) -> None:
        """Drop in-memory session state without network calls or storage changes."""
        self._generation += 1
        self._initialized = False
        self._user = None
        self._set_state(SessionState.UNAUTHENTICATED)
        await self._stop_scheduler()
        logger.info("session_teardown")

    # -- operations --------------------------------------------------------

    async def login(self, username: str, password: str) -> AuthResult[UserProfile]:
        set_correlation_id()
        if not username or not username.strip() or not password:
            return AuthResult.failure(ValidationError("Username and password are required"))
        if self._state == SessionState.AUTHENTICATING:
            return AuthResult.failure(ValidationError("Login already in progress"))
        if self._state == SessionState.REFRESHING or self._refresh_future is not None:
            return AuthResult.failure(ValidationError("Token refresh in progress"))

        generation = self._generation
        previous_state = self._state
        self._set_state(SessionState.AUTHENTICATING)
        self._set_loading(True)
        try:
            grant = await self.identity.login(username, password)
        except AuthError as exc:
            logger.warning("session_login_failed", error_code=exc.error_code, message=exc.message)
            if generation == self._generation:
                self._restore_state(previous_state)
            return AuthResult.failure(exc)
        except BaseException:
            if generation == self._generation:
                self._restore_state(previous_state)
            raise
        finally:
            self._set_loading(False)

        if generation != self._generation:
            logger.info("session_login_discarded", reason="session_ended_during_login")
            return AuthResult.failure(NotAuthenticatedError("Session ended during login"))

        try:
            self.vault.save(grant.credentials, grant.user_info)
        except CredentialStoreUnavailable as exc:
            logger.error("session_login_store_failed", error=exc.message)
            await self._end_session("storage_unavailable")
            return AuthResult.failure(SessionStorageError("Unable to store credentials"))

        # A new pair supersedes whatever session came before it
        self._generation += 1
        await self._stop_scheduler()
        self._enter_authenticated(grant.user_info)
        logger.info("session_login_succeeded", user_id=grant.user_info.id)
        return AuthResult.success(grant.user_info)

    async def logout(self, all_devices: bool = False) -> None:
        """End the session locally, then ask the server to revoke it. Never raises."""
        set_correlation_id()
        access_token = self._stored_access_token()
        await self._end_session("logout")
        if not access_token:
            return
        try:
            await self.identity.logout(access_token, all_devices=all_devices)
        except Exception as exc:
            logger.error(
                "session_logout_revoke_error",
                all_devices=all_devices,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def refresh(self) -> AuthResult[CredentialPair]:
        """Exchange the stored refresh token for a new pair.

        Joins an in-flight refresh instead of starting another one. Any
        failure from the identity service ends the session locally.
        """
        if self._refresh_future is not None:
            logger.debug("session_refresh_coalesced")
            return await asyncio.shield(self._refresh_future)
        if self._state == SessionState.AUTHENTICATING:
            return AuthResult.failure(NotAuthenticatedError("Login in progress"))

        refresh_token = self._stored_refresh_token()
        if not refresh_token:
            logger.info("session_refresh_skipped", reason="no_refresh_token")
            return AuthResult.failure(NotAuthenticatedError("No refresh token available"))

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._refresh_future = future
        try:
            result = await self._refresh_with(refresh_token)
        except BaseException:
            if self._state == SessionState.REFRESHING:
                self._set_state(SessionState.AUTHENTICATED)
            if not future.done():
                future.set_result(
                    AuthResult.failure(NotAuthenticatedError("Token refresh interrupted"))
                )
            raise
        finally:
            if self._refresh_future is future:
                self._refresh_future = None
        future.set_result(result)
        return result

    async def _refresh_with(self, refresh_token: str) -> AuthResult[CredentialPair]:
        generation = self._generation
        if self._state == SessionState.AUTHENTICATED:
            self._set_state(SessionState.REFRESHING)
        try:
            grant = await self.identity.refresh(refresh_token)
        except AuthError as exc:
            if generation != self._generation:
                return AuthResult.failure(NotAuthenticatedError("Session ended during refresh"))
            logger.warning(
                "session_refresh_failed", error_code=exc.error_code, message=exc.message
            )
            await self._end_session("refresh_failed")
            return AuthResult.failure(exc)

        if generation != self._generation:
            logger.info("session_refresh_discarded", reason="session_ended_during_refresh")
            return AuthResult.failure(NotAuthenticatedError("Session ended during refresh"))

        try:
            self.vault.save(grant.credentials, grant.user_info)
        except CredentialStoreUnavailable as exc:
            logger.error("session_refresh_store_failed", error=exc.message)
            await self._end_session("storage_unavailable")
            return AuthResult.failure(SessionStorageError("Unable to store credentials"))

        self._enter_authenticated(grant.user_info)
        logger.info("session_refresh_succeeded", user_id=grant.user_info.id)
        return AuthResult.success(grant.credentials)

    async def current_user(self) -> Optional[UserProfile]:
        """Validate the stored access token and return the signed-in user.

        On any validation failure one refresh is attempted; if that also
        fails the session is ended and None is returned.
        """
        access_token = self._stored_access_token()
        if not access_token:
            if self._state != SessionState.UNAUTHENTICATED or self._user is not None:
                await self._end_session("no_stored_session")
            return None

        generation = self._generation
        try:
            user = await self.identity.who_am_i(access_token)
        except AuthError as exc:
            if generation != self._generation:
                return self._user
            logger.warning(
                "session_validation_failed", error_code=exc.error_code, message=exc.message
            )
            result = await self.refresh()
            if result.ok:
                return self._user
            await self._end_session("validation_failed")
            return None

        if generation != self._generation:
            return self._user
        try:
            stored = self.vault.update_user(user)
        except CredentialStoreUnavailable as exc:
            logger.warning("session_profile_store_failed", error=exc.message)
            stored = True
        if not stored:
            await self._end_session("no_stored_session")
            return None
        if self._refresh_future is not None:
            # The in-flight refresh owns the state transition
            self._user = user
            self._notify()
        else:
            self._enter_authenticated(user)
        return user

    get_current_user = current_user

    async def change_password(
        self, current_password: str, new_password: str
    ) -> AuthResult[None]:
        set_correlation_id()
        if not current_password or not new_password:
            return AuthResult.failure(
                ValidationError("Current and new password are required")
            )
        if len(new_password) < self.settings.min_password_length:
            return AuthResult.failure(
                ValidationError(
                    f"New password must be at least {self.settings.min_password_length} characters"
                )
            )
        if new_password == current_password:
            return AuthResult.failure(
                ValidationError("New password must differ from the current password")
            )
        access_token = self._stored_access_token()
        if not access_token:
            return AuthResult.failure(NotAuthenticatedError("Not authenticated"))
        try:
            await self.identity.change_password(access_token, current_password, new_password)
        except AuthError as exc:
            logger.warning(
                "session_change_password_failed", error_code=exc.error_code, message=exc.message
            )
            return AuthResult.failure(exc)
        logger.info("session_password_changed", user_id=self._user.id if self._user else None)
        return AuthResult.success()

    async def request(self, method: str, path: str, *, json: Any = None) -> Any:
        """Authenticated API call for consumers.

        An expired access token is refreshed once and the call retried.
        Raises ``AuthError`` subclasses on failure.
        """
        access_token = self._stored_access_token()
        if not access_token:
            raise NotAuthenticatedError("Not authenticated")
        try:
            return await self.identity.request(method, path, access_token=access_token, json=json)
        except UnauthorizedError:
            result = await self.refresh()
            if not result.ok or result.value is None:
                raise NotAuthenticatedError("Session expired")
            return await self.identity.request(
                method, path, access_token=result.value.access_token, json=json
            )

    # -- internals ---------------------------------------------------------

    def _stored_access_token(self) -> Optional[str]:
        try:
            return self.vault.access_token()
        except CredentialStoreUnavailable as exc:
            logger.warning("credential_store_unavailable", slot="access_token", error=exc.message)
            return None

    def _stored_session(self) -> Optional[StoredSession]:
        """The stored session, or None unless all three slots are present."""
        try:
            return self.vault.load()
        except CredentialStoreUnavailable as exc:
            logger.warning("credential_store_unavailable", slot="session", error=exc.message)
            return None

    def _stored_refresh_token(self) -> Optional[str]:
        stored = self._stored_session()
        return stored.credentials.refresh_token if stored else None

    def _restore_state(self, previous_state: SessionState) -> None:
        self._set_state(previous_state)
        if previous_state == SessionState.AUTHENTICATED:
            # A tick that fired during the login found it in progress and ended
            self._start_scheduler()

    def _enter_authenticated(self, user: UserProfile) -> None:
        self._user = user
        if self._state == SessionState.AUTHENTICATED:
            self._notify()
        else:
            self._set_state(SessionState.AUTHENTICATED)
        self._start_scheduler()

    async def _end_session(self, reason: str) -> None:
        """Local-only logout: clear storage, stop the timer, settle unauthenticated."""
        self._generation += 1
        try:
            self.vault.clear()
        except CredentialStoreUnavailable as exc:
            logger.error("session_clear_failed", reason=reason, error=exc.message)
        was_authenticated = self.is_authenticated
        self._user = None
        self._set_state(SessionState.UNAUTHENTICATED)
        await self._stop_scheduler()
        if was_authenticated:
            logger.info("session_ended", reason=reason)

    def _start_scheduler(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            return
        self._scheduler = self._scheduler_factory(
            self.refresh, self.settings.effective_refresh_interval
        )
        self._scheduler.start()

    async def _stop_scheduler(self) -> None:
        scheduler = self._scheduler
        self._scheduler = None
        if scheduler is not None:
            await scheduler.stop()

    def _set_loading(self, value: bool) -> None:
        if self._is_loading != value:
            self._is_loading = value
            self._notify()

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug("session_state_changed", previous=self._state.value, current=state.value)
        self._state = state
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state, self._user)
            except Exception as exc:
                logger.error(
                    "session_listener_error", error=str(exc), error_type=type(exc).__name__
                )
