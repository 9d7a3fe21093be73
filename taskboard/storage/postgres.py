from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskboard.logging import get_logger
from taskboard.storage.errors import (
    REFRESH_TOKEN_HASH_UNIQUE,
    REFRESH_TOKEN_OWNER_FK,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
)
from taskboard.storage.models import (
    DEFAULT_AVATAR_URL,
    RefreshTokenRecord,
    User,
    UserRole,
    UserWithPassword,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE,
        full_name VARCHAR(150) NOT NULL,
        password_hash TEXT NOT NULL,
        role VARCHAR(32) NOT NULL DEFAULT 'backend_developer',
        avatar_url TEXT NOT NULL,
        team_id INTEGER,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        owner_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash CHAR(64) NOT NULL,
        device_info VARCHAR(255),
        origin_ip VARCHAR(45),
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_hash_idx ON refresh_token (token_hash)",
    "CREATE INDEX IF NOT EXISTS refresh_token_owner_idx ON refresh_token (owner_id)",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed user directory and refresh-token table.

    Every method is one short transaction on a pooled connection; no state is
    cached in the process, so several workers can share one database.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        conn_kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if statement_timeout_ms:
            conn_kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs=conn_kwargs,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user and refresh-token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row["full_name"],
            role=row.get("role") or UserRole.BACKEND_DEVELOPER.value,
            avatar_url=row.get("avatar_url") or DEFAULT_AVATAR_URL,
            is_active=row.get("is_active", True),
            team_id=row.get("team_id"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=int(row["id"]),
            owner_id=str(row["owner_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            device_info=row.get("device_info"),
            origin_ip=row.get("origin_ip"),
            is_revoked=bool(row.get("is_revoked", False)),
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = UserRole.BACKEND_DEVELOPER.value,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
        team_id: Optional[int] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, password_hash, role, avatar_url, team_id, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        full_name,
                        password_hash,
                        role,
                        avatar_url or DEFAULT_AVATAR_URL,
                        team_id,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        user = self.get_user_with_password(email)
        return user.without_password() if user else None

    def get_user_with_password(self, email: str) -> Optional[UserWithPassword]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        if not row:
            return None
        user = self._user_from_row(row)
        return UserWithPassword(**vars(user), password_hash=row["password_hash"])

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def save_password(self, user_id: str, password_hash: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # refresh tokens
    def create_refresh_token(
        self,
        owner_id: str,
        token_hash: str,
        expires_at,
        *,
        device_info: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (owner_id, token_hash, device_info, origin_ip, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (owner_id, token_hash, device_info, origin_ip, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", constraint=REFRESH_TOKEN_HASH_UNIQUE
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist",
                {"owner_id": owner_id},
                constraint=REFRESH_TOKEN_OWNER_FK,
            )
        return self._refresh_token_from_row(row)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return self._refresh_token_from_row(row)

    def claim_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        """Atomically revoke a live record; ``None`` if unknown or already revoked."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE
                WHERE token_hash = %s AND is_revoked = FALSE
                RETURNING *
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._refresh_token_from_row(row)

    def revoke_user_refresh_tokens(self, owner_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE WHERE owner_id = %s AND is_revoked = FALSE",
                (owner_id,),
            )
            return result.rowcount

    def list_refresh_tokens(self, owner_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE owner_id = %s ORDER BY id",
                (owner_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]
