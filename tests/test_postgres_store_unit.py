"""Unit tests for PostgresStore SQL, run against a recording stub pool."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from taskboard.logging import get_logger
from taskboard.storage.errors import (
    REFRESH_TOKEN_OWNER_FK,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
)
from taskboard.storage.models import UserWithPassword
from taskboard.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
USER_ID = str(uuid.uuid4())


class StubCursor:
    def __init__(self, rows, rowcount):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class StubConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.raises:
            raise self.pool.raises.pop(0)
        rows, rowcount = self.pool.results.pop(0) if self.pool.results else ([], 0)
        return StubCursor(rows, rowcount)


class StubPool:
    def __init__(self):
        self.statements = []
        self.results = []
        self.raises = []

    def connection(self):
        return StubConnection(self)


def _user_row(**overrides):
    row = {
        "id": uuid.UUID(USER_ID),
        "email": "alice@x.com",
        "full_name": "Alice",
        "password_hash": "$argon2id$stub",
        "role": "backend_developer",
        "avatar_url": "https://example.com/a.svg",
        "team_id": None,
        "is_active": True,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def _token_row(**overrides):
    row = {
        "id": 7,
        "owner_id": uuid.UUID(USER_ID),
        "token_hash": "a" * 64,
        "device_info": "agent",
        "origin_ip": "10.0.0.1",
        "is_revoked": True,
        "expires_at": NOW + timedelta(days=30),
        "created_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def pool():
    return StubPool()


@pytest.fixture
def store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    return store


class TestSchema:
    def test_ensure_schema_creates_tables_and_indexes(self, store, pool):
        store._ensure_schema()
        sql = [statement for statement, _ in pool.statements]
        assert any("CREATE TABLE IF NOT EXISTS app_user" in s for s in sql)
        assert any("CREATE TABLE IF NOT EXISTS refresh_token" in s for s in sql)
        assert any("ON DELETE CASCADE" in s for s in sql)
        assert any("UNIQUE INDEX IF NOT EXISTS refresh_token_hash_idx" in s for s in sql)
        assert any("refresh_token_owner_idx ON refresh_token (owner_id)" in s for s in sql)


class TestUsers:
    def test_create_user_normalizes_email(self, store, pool):
        pool.results.append(([_user_row()], 1))
        user = store.create_user(" Alice@X.com ", "Alice", "$argon2id$stub")
        statement, params = pool.statements[0]
        assert statement.startswith("INSERT INTO app_user")
        assert params[1] == "alice@x.com"
        assert user.id == USER_ID
        assert not hasattr(user, "password_hash")

    def test_create_user_unique_violation(self, store, pool):
        pool.raises.append(errors.UniqueViolation("duplicate"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("alice@x.com", "Alice", "hash")
        assert excinfo.value.constraint == USER_EMAIL_UNIQUE

    def test_get_user_with_password(self, store, pool):
        pool.results.append(([_user_row()], 1))
        record = store.get_user_with_password("ALICE@x.com")
        assert isinstance(record, UserWithPassword)
        assert record.password_hash == "$argon2id$stub"
        assert pool.statements[0][1] == ("alice@x.com",)

    def test_get_user_skips_query_for_non_uuid(self, store, pool):
        assert store.get_user("not-a-uuid") is None
        assert pool.statements == []

    def test_writes_skip_query_for_non_uuid(self, store, pool):
        assert store.set_user_active("not-a-uuid", False) is None
        assert store.save_password("not-a-uuid", "$argon2id$new") is False
        assert store.delete_user("not-a-uuid") is False
        assert pool.statements == []

    def test_save_password_updates_hash(self, store, pool):
        pool.results.append(([], 1))
        assert store.save_password(USER_ID, "$argon2id$new") is True
        sql, params = pool.statements[0]
        assert sql.startswith("UPDATE app_user SET password_hash")
        assert params == ("$argon2id$new", USER_ID)

    def test_delete_user_reports_rowcount(self, store, pool):
        pool.results.append(([], 1))
        assert store.delete_user(USER_ID) is True
        pool.results.append(([], 0))
        assert store.delete_user(USER_ID) is False


class TestRefreshTokens:
    def test_claim_is_single_conditional_update(self, store, pool):
        pool.results.append(([_token_row()], 1))
        record = store.claim_refresh_token("a" * 64)
        statement, params = pool.statements[0]
        assert statement == (
            "UPDATE refresh_token SET is_revoked = TRUE "
            "WHERE token_hash = %s AND is_revoked = FALSE RETURNING *"
        )
        assert params == ("a" * 64,)
        assert record.id == 7
        assert record.owner_id == USER_ID
        assert record.is_revoked is True

    def test_claim_of_revoked_record_returns_none(self, store, pool):
        pool.results.append(([], 0))
        assert store.claim_refresh_token("a" * 64) is None

    def test_bulk_revoke_is_owner_scoped(self, store, pool):
        pool.results.append(([], 3))
        assert store.revoke_user_refresh_tokens(USER_ID) == 3
        statement, params = pool.statements[0]
        assert "WHERE owner_id = %s AND is_revoked = FALSE" in statement
        assert params == (USER_ID,)

    def test_create_refresh_token_missing_owner(self, store, pool):
        pool.raises.append(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_refresh_token(USER_ID, "a" * 64, NOW)
        assert excinfo.value.constraint == REFRESH_TOKEN_OWNER_FK

    def test_list_refresh_tokens_maps_rows(self, store, pool):
        pool.results.append(([_token_row(id=1), _token_row(id=2, is_revoked=False)], 2))
        records = store.list_refresh_tokens(USER_ID)
        assert [r.id for r in records] == [1, 2]
        assert records[1].is_live(NOW)
        assert "ORDER BY id" in pool.statements[0][0]
