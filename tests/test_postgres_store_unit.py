import json
from datetime import datetime, timezone
from pathlib import Path

import psycopg
import pytest
from psycopg import errors

from apigate.logging import get_logger
from apigate.service.auth_manager import storage_guard
from apigate.service.errors import StorageUnavailableError
from apigate.storage.errors import ConstraintViolation, TransientStorageError
from apigate.storage.models import APIKeyRecord, AppPassword, BlacklistEntry
from apigate.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        result = self.pool.results.pop(0) if self.pool.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def connection(self):
        return FakeConnection(self)


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.retry_backoff = 0
    store.logger = get_logger("test")
    return store


def test_row_mappers_decode_json_columns():
    user = PostgresStore._user_from_row(
        {"id": 3, "username": "alice", "email": "a@example.com", "roles": '["editor"]', "meta": '{"a": 1}'}
    )
    assert user.roles == ["editor"]
    assert user.meta == {"a": 1}

    key = PostgresStore._api_key_from_row(
        {"api_key": "k", "user_id": "3", "name": "ci", "scopes": '["read"]', "is_revoked": 0}
    )
    assert key.user_id == 3
    assert key.scopes == ["read"]
    assert key.rate_limit == 1000
    assert key.is_revoked is False


def test_unstubbed_access_is_detected(tmp_path):
    store = _store(tmp_path, DummyPool())
    with pytest.raises(AssertionError):
        store.get_user(1)


def test_get_user_maps_row(tmp_path):
    pool = FakePool(FakeCursor([{"id": 1, "username": "alice", "email": "a@example.com", "roles": ["subscriber"]}]))
    user = _store(tmp_path, pool).get_user(1)
    assert user.username == "alice"
    assert pool.statements[0] == ("SELECT * FROM app_user WHERE id = %s", (1,))


def test_create_user_serializes_roles(tmp_path):
    pool = FakePool(FakeCursor([{"id": 7, "username": "bob", "email": "b@example.com", "roles": ["editor"]}]))
    user = _store(tmp_path, pool).create_user("bob", "b@example.com", roles=["editor"])
    assert user.id == 7
    _, params = pool.statements[0]
    assert json.loads(params[3]) == ["editor"]


def test_unique_violation_maps_to_constraint(tmp_path):
    pool = FakePool(errors.UniqueViolation("duplicate"))
    with pytest.raises(ConstraintViolation):
        _store(tmp_path, pool).create_user("bob", "b@example.com")


def test_transient_error_retried_once(tmp_path):
    row = {"api_key": "k", "user_id": 1, "name": "ci"}
    pool = FakePool(psycopg.OperationalError("connection reset"), FakeCursor([row]))
    record = _store(tmp_path, pool).get_api_key("k")
    assert record.name == "ci"
    assert len(pool.statements) == 2


def test_second_transient_error_raises(tmp_path):
    pool = FakePool(psycopg.OperationalError("down"), psycopg.OperationalError("still down"))
    with pytest.raises(TransientStorageError) as excinfo:
        _store(tmp_path, pool).get_blacklist_entry("t")
    assert excinfo.value.operation == "get_blacklist_entry"


def test_revoke_reports_rowcount(tmp_path):
    pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
    store = _store(tmp_path, pool)
    assert store.revoke_api_key("k") is True
    assert store.revoke_api_key("missing") is False


def test_policy_round_trips_through_json(tmp_path):
    policy = {"rate_limits": {"editor": {"limit": 5, "window": 60}}}
    pool = FakePool(FakeCursor(), FakeCursor([{"policy": json.dumps(policy)}]))
    store = _store(tmp_path, pool)
    store.save_permissions_policy(policy)
    assert json.loads(pool.statements[0][1][1]) == policy
    assert store.get_permissions_policy() == policy


def test_delete_expired_tokens_uses_cutoff(tmp_path):
    pool = FakePool(FakeCursor(rowcount=4))
    cutoff = datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert _store(tmp_path, pool).delete_expired_tokens(cutoff) == 4
    assert pool.statements[0][1] == (cutoff,)


_WHEN = datetime(2030, 1, 1, tzinfo=timezone.utc)

_STORE_CALLS = [
    ("create_user", lambda s: s.create_user("bob", "b@example.com")),
    ("list_users", lambda s: s.list_users()),
    ("update_user_roles", lambda s: s.update_user_roles(1, ["editor"])),
    ("save_password", lambda s: s.save_password(1, "hash", "argon2")),
    ("add_app_password", lambda s: s.add_app_password(AppPassword(uuid="u", user_id=1, name="phone", password_hash="h"))),
    ("touch_app_password", lambda s: s.touch_app_password("u", used_at=_WHEN)),
    ("delete_app_password", lambda s: s.delete_app_password(1, "u")),
    ("delete_app_passwords", lambda s: s.delete_app_passwords(1)),
    ("list_user_tokens", lambda s: s.list_user_tokens(1)),
    ("delete_user_tokens", lambda s: s.delete_user_tokens(1)),
    ("delete_expired_tokens", lambda s: s.delete_expired_tokens(_WHEN)),
    ("add_blacklist_entry", lambda s: s.add_blacklist_entry(BlacklistEntry("t", _WHEN, _WHEN))),
    ("delete_blacklist_entry", lambda s: s.delete_blacklist_entry("t")),
    ("prune_blacklist", lambda s: s.prune_blacklist(_WHEN)),
    ("create_api_key", lambda s: s.create_api_key(APIKeyRecord(api_key="k", user_id=1, name="ci"))),
    ("list_api_keys", lambda s: s.list_api_keys(1)),
    ("touch_api_key", lambda s: s.touch_api_key("k", used_at=_WHEN)),
    ("revoke_api_key", lambda s: s.revoke_api_key("k")),
    ("revoke_user_api_keys", lambda s: s.revoke_user_api_keys(1)),
    ("get_permissions_policy", lambda s: s.get_permissions_policy()),
    ("save_permissions_policy", lambda s: s.save_permissions_policy({})),
    ("delete_permissions_policy", lambda s: s.delete_permissions_policy()),
]


@pytest.mark.parametrize("operation,call", _STORE_CALLS, ids=[name for name, _ in _STORE_CALLS])
def test_every_operation_surfaces_transient_error(tmp_path, operation, call):
    pool = FakePool(psycopg.OperationalError("down"), psycopg.OperationalError("still down"))
    with pytest.raises(TransientStorageError) as excinfo:
        call(_store(tmp_path, pool))
    assert excinfo.value.operation == operation
    assert len(pool.statements) == 2


@pytest.mark.parametrize("operation,call", _STORE_CALLS, ids=[name for name, _ in _STORE_CALLS])
def test_every_operation_recovers_after_one_transient_error(tmp_path, operation, call):
    row = {
        "id": 1,
        "username": "bob",
        "email": "b@example.com",
        "roles": ["subscriber"],
        "user_id": 1,
        "token_id": "t",
        "token_type": "access",
        "expires_at": _WHEN,
        "api_key": "k",
        "name": "ci",
        "policy": {},
    }
    pool = FakePool(psycopg.OperationalError("connection reset"), FakeCursor([row], rowcount=1))
    call(_store(tmp_path, pool))
    assert len(pool.statements) == 2


def test_guarded_listing_becomes_unavailable(tmp_path):
    pool = FakePool(psycopg.OperationalError("down"), psycopg.OperationalError("still down"))
    store = _store(tmp_path, pool)
    with pytest.raises(StorageUnavailableError):
        with storage_guard("logout"):
            store.list_user_tokens(1)


def test_foreign_key_violation_is_not_retried(tmp_path):
    pool = FakePool(errors.ForeignKeyViolation("no user"))
    with pytest.raises(ConstraintViolation):
        _store(tmp_path, pool).save_password(1, "hash", "argon2")
    assert len(pool.statements) == 1


def test_blacklist_insert_reports_winner(tmp_path):
    pool = FakePool(FakeCursor([{"token_id": "t"}]), FakeCursor())
    store = _store(tmp_path, pool)
    entry = BlacklistEntry("t", _WHEN, _WHEN)
    assert store.add_blacklist_entry(entry) is True
    assert store.add_blacklist_entry(entry) is False
    sql, params = pool.statements[0]
    assert "RETURNING token_id" in sql
    assert "WHERE token_blacklist.expires_at < EXCLUDED.blacklisted_at" in sql
    assert params == ("t", _WHEN, _WHEN)
