from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from cerberus_auth.logging import get_logger
from cerberus_auth.storage.errors import CredentialStoreUnavailable

logger = get_logger(__name__)


class FileCredentialStore:
    """Credential slots kept in a single JSON document on disk.

    Every write rewrites the whole document through a temp file and rename,
    so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialStoreUnavailable(
                "credential file unreadable", {"path": str(self.path), "error": str(exc)}
            ) from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CredentialStoreUnavailable(
                "credential file corrupt", {"path": str(self.path)}
            ) from exc
        if not isinstance(data, dict):
            raise CredentialStoreUnavailable(
                "credential file corrupt", {"path": str(self.path)}
            )
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        tmp_path: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".credentials_", suffix=".tmp"
            )
            try:
                os.write(fd, json.dumps(data, sort_keys=True).encode("utf-8"))
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.warning("credential_tmp_cleanup_failed", path=tmp_path)
            raise CredentialStoreUnavailable(
                "credential file not writable", {"path": str(self.path), "error": str(exc)}
            ) from exc

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key not in data:
                return
            del data[key]
            self._write(data)
