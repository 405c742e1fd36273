"""Tests for credential store backends and the session vault."""

import json
import os

import pytest
from redis import RedisError

from cerberus_auth.config import CredentialStoreKind, Settings
from cerberus_auth.storage.credentials import SessionVault, create_credential_store
from cerberus_auth.storage.errors import CredentialStoreUnavailable
from cerberus_auth.storage.file_store import FileCredentialStore
from cerberus_auth.storage.memory import MemoryCredentialStore
from cerberus_auth.storage.models import CredentialPair, UserProfile
from cerberus_auth.storage.redis_store import RedisCredentialStore

from conftest import ANALYST


class RecordingStore(MemoryCredentialStore):
    """Memory store that records the order of mutations."""

    def __init__(self):
        super().__init__()
        self.ops = []

    def set(self, key, value):
        self.ops.append(("set", key))
        super().set(key, value)

    def delete(self, key):
        self.ops.append(("delete", key))
        super().delete(key)


class FakeRedis:
    def __init__(self, fail=False):
        self.data = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise RedisError("connection refused")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value):
        self._check()
        self.data[key] = value

    def delete(self, key):
        self._check()
        self.data.pop(key, None)

    def close(self):
        pass


@pytest.fixture
def pair():
    return CredentialPair(access_token="access-1", refresh_token="refresh-1")


@pytest.fixture
def user():
    return UserProfile.model_validate(ANALYST)


class TestMemoryStore:
    def test_get_set_delete(self):
        store = MemoryCredentialStore()
        assert store.get("k") is None
        store.set("k", "v")
        assert store.get("k") == "v"
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None


class TestFileStore:
    def test_values_persist_across_instances(self, tmp_path):
        path = tmp_path / "creds.json"
        FileCredentialStore(path).set("access_token", "abc")

        assert FileCredentialStore(path).get("access_token") == "abc"
        assert json.loads(path.read_text()) == {"access_token": "abc"}

    def test_file_is_private(self, tmp_path):
        path = tmp_path / "creds.json"
        FileCredentialStore(path).set("k", "v")

        assert (os.stat(path).st_mode & 0o777) == 0o600

    def test_missing_file_reads_empty(self, tmp_path):
        store = FileCredentialStore(tmp_path / "nested" / "creds.json")
        assert store.get("k") is None
        store.delete("k")

    def test_corrupt_file_is_unavailable(self, tmp_path):
        path = tmp_path / "creds.json"
        path.write_text("{not json")

        with pytest.raises(CredentialStoreUnavailable):
            FileCredentialStore(path).get("k")


class TestRedisStore:
    def test_keys_are_namespaced(self):
        client = FakeRedis()
        store = RedisCredentialStore("redis://unused", client=client)

        store.set("access_token", "abc")

        assert client.data == {"cerberus:credentials:access_token": "abc"}
        assert store.get("access_token") == "abc"
        store.delete("access_token")
        assert store.get("access_token") is None

    def test_redis_errors_become_unavailable(self):
        store = RedisCredentialStore("redis://unused", client=FakeRedis(fail=True))

        with pytest.raises(CredentialStoreUnavailable):
            store.get("access_token")
        with pytest.raises(CredentialStoreUnavailable):
            store.verify_connection()


class TestSessionVault:
    def test_save_writes_access_token_last(self, pair, user):
        store = RecordingStore()
        SessionVault(store).save(pair, user)

        assert store.ops == [
            ("set", "refresh_token"),
            ("set", "user_data"),
            ("set", "access_token"),
        ]

    def test_clear_removes_access_token_first(self, pair, user):
        store = RecordingStore()
        vault = SessionVault(store)
        vault.save(pair, user)
        store.ops.clear()

        vault.clear()

        assert store.ops[0] == ("delete", "access_token")
        assert store.snapshot() == {}

    def test_load_round_trips_profile(self, pair, user):
        vault = SessionVault(MemoryCredentialStore())
        vault.save(pair, user)

        stored = vault.load()

        assert stored.credentials == pair
        assert stored.user == user
        assert stored.user.model_extra["is_active"] is True

    def test_load_requires_every_slot(self, pair, user):
        store = MemoryCredentialStore()
        vault = SessionVault(store)
        vault.save(pair, user)
        store.delete("refresh_token")

        assert vault.load() is None

    def test_invalid_user_data_is_ignored(self, pair):
        store = MemoryCredentialStore(
            {"access_token": "a", "refresh_token": "r", "user_data": "{broken"}
        )

        assert SessionVault(store).load() is None

    def test_key_prefix(self, pair, user):
        store = MemoryCredentialStore()
        SessionVault(store, key_prefix="cerberus_").save(pair, user)

        assert set(store.snapshot()) == {
            "cerberus_access_token",
            "cerberus_refresh_token",
            "cerberus_user_data",
        }

    def test_update_user_needs_live_session(self, user):
        vault = SessionVault(MemoryCredentialStore())
        assert vault.update_user(user) is False


class TestFactory:
    def test_memory_default(self):
        store = create_credential_store(Settings(credential_store=CredentialStoreKind.MEMORY))
        assert isinstance(store, MemoryCredentialStore)

    def test_file_backend(self, tmp_path):
        settings = Settings(credential_store="file", credential_store_path=str(tmp_path / "c.json"))
        store = create_credential_store(settings)
        assert isinstance(store, FileCredentialStore)
        assert store.path == tmp_path / "c.json"
