from __future__ import annotations

from typing import Optional

from redis import Redis, RedisError

from cerberus_auth.storage.errors import CredentialStoreUnavailable


class RedisCredentialStore:
    """Credential slots kept in Redis under a ``cerberus:credentials:`` namespace."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "cerberus:credentials",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise CredentialStoreUnavailable("redis unreachable", {"error": str(exc)}) from exc

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(self._key(key))
        except RedisError as exc:
            raise CredentialStoreUnavailable("redis read failed", {"key": key}) from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(self._key(key), value)
        except RedisError as exc:
            raise CredentialStoreUnavailable("redis write failed", {"key": key}) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except RedisError as exc:
            raise CredentialStoreUnavailable("redis delete failed", {"key": key}) from exc

    def close(self) -> None:
        self.client.close()
