from datetime import datetime, timezone

import pytest

from adminauth.storage.errors import ConstraintViolation
from adminauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    def connection(self):
        return self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unit-test"
    return store


def test_swap_refresh_token_is_conditional_update():
    pool = FakePool(FakeCursor(rowcount=1))
    store = _store(pool)
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)

    assert store.swap_refresh_token("user-1", "old", "new", expires)

    sql, params = pool.conn.statements[0]
    assert sql.startswith("UPDATE app_user SET refresh_token = %s")
    assert "WHERE id = %s AND refresh_token = %s" in sql
    assert params == ("new", expires, "user-1", "old")


def test_swap_refresh_token_reports_lost_race():
    store = _store(FakePool(FakeCursor(rowcount=0)))

    assert not store.swap_refresh_token(
        "user-1", "old", "new", datetime(2030, 1, 1, tzinfo=timezone.utc)
    )


def test_update_user_rejects_unknown_fields_without_query():
    store = _store(DummyPool())

    with pytest.raises(ValueError):
        store.update_user("user-1", refresh_token="digest")


def test_row_to_user_maps_columns():
    created = datetime(2024, 5, 1, tzinfo=timezone.utc)
    user = PostgresStore._row_to_user(
        {
            "id": "user-1",
            "email": "a@example.com",
            "username": "alice",
            "role": "admin",
            "is_active": False,
            "created_at": created,
            "refresh_token": "digest",
            "meta": None,
        }
    )

    assert user.role == "admin"
    assert not user.is_active
    assert user.created_at == created
    assert user.refresh_token == "digest"
    assert user.meta == {}


def test_role_row_permissions_are_strings():
    role = PostgresStore._row_to_role(
        {"id": "r1", "name": "auditor", "description": None, "permissions": ["p1", "p2"]}
    )

    assert role.permissions == ["p1", "p2"]


def test_foreign_key_violation_maps_to_constraint_violation():
    from psycopg import errors

    class RaisingConnection(FakeConnection):
        def execute(self, sql, params=None):
            raise errors.ForeignKeyViolation("role missing")

    class RaisingPool:
        def connection(self):
            return RaisingConnection([])

    store = _store(RaisingPool())

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("a@example.com", "alice", role="ghost")

    assert excinfo.value.detail["field"] == "role"
