from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg import errors

from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import Session
from authkernel.storage.postgres import PostgresStore

NOW = datetime(2025, 5, 1, 8, 0, tzinfo=timezone.utc)
SESSION_ID = "0b5e7f4e-6a1c-4c39-9a57-2f0d3c1e8b42"


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool: "FakePool") -> None:
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.raise_on_next is not None:
            exc, self.pool.raise_on_next = self.pool.raise_on_next, None
            raise exc
        if self.pool.results:
            return self.pool.results.pop(0)
        return FakeCursor()


class FakePool:
    """Connection pool stand-in replaying scripted cursors."""

    def __init__(self) -> None:
        self.executed = []
        self.results = []
        self.raise_on_next = None
        self.closed = False

    def connection(self):
        return FakeConnection(self)

    def close(self):
        self.closed = True


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def store(pool, tmp_path: Path):
    store = PostgresStore("postgresql://unit-test", str(tmp_path), pool=pool)
    pool.executed.clear()
    return store


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "email": "alice@example.com",
        "first_name": "Alice",
        "last_name": None,
        "display_name": "Alice",
        "avatar_url": None,
        "email_verified": True,
        "auth_provider": "local",
        "auth_provider_id": None,
        "created_at": NOW.replace(tzinfo=None),
        "updated_at": NOW,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_schema_created_on_init(tmp_path: Path):
    pool = FakePool()
    PostgresStore("postgresql://unit-test", str(tmp_path), pool=pool)

    statements = [sql for sql, _ in pool.executed]
    assert any("CREATE TABLE IF NOT EXISTS app_user" in sql for sql in statements)
    assert any("CREATE TABLE IF NOT EXISTS auth_session" in sql for sql in statements)


def test_create_user_normalizes_email(store, pool):
    user = store.create_user(" Alice@Example.com ", first_name="Alice")

    sql, params = pool.executed[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params[1] == "alice@example.com"
    assert user.email == "alice@example.com"


def test_duplicate_email_maps_to_constraint_violation(store, pool):
    pool.raise_on_next = errors.UniqueViolation("duplicate key")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("alice@example.com")
    assert exc_info.value.detail == {"field": "email"}


def test_user_row_mapping_makes_datetimes_aware(store, pool):
    pool.results.append(FakeCursor([_user_row()]))

    user = store.get_user("user-1")

    assert user.email_verified is True
    assert user.created_at.tzinfo is not None
    assert user.created_at == NOW


def test_update_user_uses_allow_listed_columns(store, pool):
    pool.results.append(FakeCursor([_user_row(last_name="Smith")]))

    updated = store.update_user("user-1", last_name="Smith", email="evil@example.com")

    sql, params = pool.executed[0]
    assert "last_name = %s" in sql
    assert "email =" not in sql.replace("email_verified", "")
    assert params == ["Smith", "user-1"]
    assert updated.last_name == "Smith"


def test_duplicate_refresh_token_maps_to_constraint_violation(store, pool):
    session = Session.new("user-1", "grant", timedelta(days=7), now=NOW)
    pool.raise_on_next = errors.UniqueViolation("duplicate key")

    with pytest.raises(ConstraintViolation):
        store.create_session(session)


def test_missing_user_for_password_maps_to_constraint_violation(store, pool):
    pool.raise_on_next = errors.ForeignKeyViolation("fk")

    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_refresh_token_lookup_filters_on_expiry(store, pool):
    store.get_session_by_refresh_token("grant", NOW)

    sql, params = pool.executed[0]
    assert "expires_at > %s" in sql
    assert params == ("grant", NOW)


def test_replace_refresh_token_reports_lost_race(store, pool):
    pool.results.append(FakeCursor([]))

    assert store.replace_refresh_token(SESSION_ID, "old", "new") is False
    sql, params = pool.executed[0]
    assert "WHERE id = %s AND refresh_token = %s" in sql
    assert params == ("new", SESSION_ID, "old")


def test_malformed_session_id_matches_nothing(store, pool):
    assert store.get_session("abc") is None
    assert store.delete_session("abc") is False
    assert store.delete_session("abc", user_id="user-1") is False
    assert store.replace_refresh_token("abc", "old", "new") is False
    store.touch_session("abc", NOW)

    assert pool.executed == []


def test_delete_session_scoped_to_owner(store, pool):
    pool.results.append(FakeCursor([{"id": SESSION_ID}]))

    assert store.delete_session(SESSION_ID, user_id="user-1") is True
    sql, params = pool.executed[0]
    assert "WHERE id = %s AND user_id = %s" in sql
    assert params == (SESSION_ID, "user-1")


def test_delete_user_sessions_returns_rowcount(store, pool):
    pool.results.append(FakeCursor(rowcount=3))

    assert store.delete_user_sessions("user-1") == 3


def test_consume_reset_token_is_single_statement(store, pool):
    pool.results.append(
        FakeCursor(
            [
                {
                    "token": "reset",
                    "user_id": "user-1",
                    "email": "alice@example.com",
                    "expires_at": NOW + timedelta(minutes=30),
                    "created_at": NOW,
                    "used": True,
                }
            ]
        )
    )

    record = store.consume_password_reset_token("reset", NOW)

    sql, _ = pool.executed[0]
    assert sql.startswith("UPDATE password_reset_token SET used = TRUE")
    assert "RETURNING *" in sql
    assert record.used is True
    assert len(pool.executed) == 1


def test_purge_expired_sums_rowcounts(store, pool):
    pool.results.extend([FakeCursor(rowcount=2), FakeCursor(rowcount=1), FakeCursor(rowcount=4)])

    assert store.purge_expired(NOW) == 7


def test_close_closes_pool(store, pool):
    store.close()

    assert pool.closed is True
