from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from cerberus_auth.config import Settings
from cerberus_auth.logging import get_logger
from cerberus_auth.service.errors import (
    AuthError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NetworkError,
    ServerError,
    UnauthorizedError,
    ValidationError,
)
from cerberus_auth.service.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    TokenGrant,
)
from cerberus_auth.storage.models import UserProfile

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

GENERIC_ERROR_MESSAGE = "Request failed"
UNREADABLE_ERROR_MESSAGE = "Network error"


def extract_error_message(body: Any) -> Optional[str]:
    """Pull a human-readable message out of an error response body.

    Understands ``{"detail": "..."}``, FastAPI's list-shaped validation
    ``detail``, ``{"error": "..."}`` and ``{"error": {"message": "..."}}``.
    """
    if not isinstance(body, dict):
        return None
    detail = body.get("detail")
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(detail, list):
        messages = [
            str(item.get("msg")) for item in detail if isinstance(item, dict) and item.get("msg")
        ]
        if messages:
            return "; ".join(messages)
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    error = body.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return None


class IdentityClient:
    """HTTP client for the identity service's login/refresh/me/logout endpoints.

    Every failure is translated into an ``AuthError`` subclass. Nothing is
    retried here; recovery belongs to the session manager.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                timeout=httpx.Timeout(self.settings.request_timeout_seconds),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        access_token: Optional[str] = None,
        json: Any = None,
    ) -> httpx.Response:
        headers = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        client = await self._get_client()
        try:
            return await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("identity_request_timeout", operation=operation, path=path)
            raise NetworkError("Identity service timed out") from exc
        except httpx.TransportError as exc:
            logger.error(
                "identity_request_transport_error",
                operation=operation,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkError("Unable to reach identity service") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "identity_request_failed_unexpectedly",
                operation=operation,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkError("Network error") from exc

    def _error_for(
        self,
        response: httpx.Response,
        *,
        operation: str,
        auth_error: Type[AuthError],
        validation_error: Type[AuthError] = ValidationError,
    ) -> AuthError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            logger.warning(
                "identity_error_body_unreadable", operation=operation, status_code=status
            )
            return NetworkError(UNREADABLE_ERROR_MESSAGE, status_code=status)

        message = extract_error_message(body) or GENERIC_ERROR_MESSAGE
        if status in (401, 403):
            error_cls: Type[AuthError] = auth_error
        elif status in (400, 422):
            error_cls = validation_error
        else:
            error_cls = ServerError
        detail = body if isinstance(body, dict) else {}
        error = error_cls(message, status_code=status, detail=detail)
        log_fn = logger.error if status >= 500 else logger.warning
        log_fn(
            "identity_request_failed",
            operation=operation,
            status_code=status,
            error_code=error.error_code,
            message=message,
        )
        return error

    def _parse(self, response: httpx.Response, model: Type[ModelT], *, operation: str) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            logger.error(
                "identity_response_malformed",
                operation=operation,
                status_code=response.status_code,
                error=str(exc),
            )
            raise ServerError(
                "Malformed response from identity service", status_code=response.status_code
            ) from exc

    async def login(self, username: str, password: str) -> TokenGrant:
        body = LoginRequest(username=username, password=password).model_dump()
        response = await self._send(
            "POST", self.settings.api_url(self.settings.login_path), operation="login", json=body
        )
        if response.is_error:
            raise self._error_for(
                response,
                operation="login",
                auth_error=InvalidCredentialsError,
                validation_error=InvalidCredentialsError,
            )
        return self._parse(response, TokenGrant, operation="login")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        body = RefreshRequest(refresh_token=refresh_token).model_dump()
        response = await self._send(
            "POST",
            self.settings.api_url(self.settings.refresh_path),
            operation="refresh",
            json=body,
        )
        if response.is_error:
            raise self._error_for(
                response,
                operation="refresh",
                auth_error=InvalidRefreshTokenError,
                validation_error=InvalidRefreshTokenError,
            )
        return self._parse(response, TokenGrant, operation="refresh")

    async def who_am_i(self, access_token: str) -> UserProfile:
        response = await self._send(
            "GET",
            self.settings.api_url(self.settings.me_path),
            operation="who_am_i",
            access_token=access_token,
        )
        if response.is_error:
            raise self._error_for(response, operation="who_am_i", auth_error=UnauthorizedError)
        return self._parse(response, UserProfile, operation="who_am_i")

    async def logout(self, access_token: Optional[str], all_devices: bool = False) -> bool:
        """Revoke the session server-side. Best-effort: failures are logged, never raised."""
        path = self.settings.logout_all_path if all_devices else self.settings.logout_path
        try:
            response = await self._send(
                "POST",
                self.settings.api_url(path),
                operation="logout",
                access_token=access_token,
            )
            if response.is_error:
                raise self._error_for(response, operation="logout", auth_error=UnauthorizedError)
        except AuthError as exc:
            logger.warning(
                "identity_logout_failed",
                all_devices=all_devices,
                error_code=exc.error_code,
                message=exc.message,
            )
            return False
        logger.info("identity_logout_acknowledged", all_devices=all_devices)
        return True

    async def change_password(
        self, access_token: str, current_password: str, new_password: str
    ) -> None:
        body = ChangePasswordRequest(
            current_password=current_password, new_password=new_password
        ).model_dump()
        response = await self._send(
            "PUT",
            self.settings.api_url(self.settings.change_password_path),
            operation="change_password",
            access_token=access_token,
            json=body,
        )
        if response.is_error:
            raise self._error_for(
                response, operation="change_password", auth_error=InvalidCredentialsError
            )

    async def request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        json: Any = None,
    ) -> Any:
        """Authenticated JSON call against any API path; returns the decoded body."""
        response = await self._send(
            method.upper(),
            self.settings.api_url(path),
            operation="request",
            access_token=access_token,
            json=json,
        )
        if response.is_error:
            raise self._error_for(response, operation="request", auth_error=UnauthorizedError)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ServerError(
                "Malformed response from identity service", status_code=response.status_code
            ) from exc

    async def health(self) -> bool:
        try:
            response = await self._send("GET", self.settings.health_path, operation="health")
        except NetworkError:
            return False
        return response.is_success
