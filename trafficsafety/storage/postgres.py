from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from trafficsafety.logging import get_logger
from trafficsafety.storage.errors import ConstraintViolation
from trafficsafety.storage.models import (
    AccessTokenRecord,
    RefreshTokenRecord,
    User,
    UserRole,
    utcnow,
)


_AUTH_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'viewer',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_access_tokens (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_id TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_access_tokens_user_idx ON user_access_tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS user_access_tokens_expires_idx ON user_access_tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS user_refresh_tokens (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash CHAR(64) NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by_token_id BIGINT REFERENCES user_refresh_tokens(id) ON DELETE SET NULL,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_refresh_tokens_user_idx ON user_refresh_tokens (user_id)",
)


class PostgresStore:
    """Postgres-backed store for users, access-token records and refresh tokens."""

    def __init__(
        self, dsn: str, *, statement_timeout_seconds: float = 5.0
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        self._ensure_auth_tables()

    def _connect(self):
        return self.pool.connection()

    def _ensure_auth_tables(self) -> None:
        """Create the user and token tables if they are missing."""

        with self._connect() as conn:
            for statement in _AUTH_SCHEMA:
                conn.execute(statement)
        self.logger.info("auth_schema_ensured", tables=4)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # row mappers
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            role=row.get("role") or UserRole.VIEWER.value,
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _access_token_from_row(row: dict) -> AccessTokenRecord:
        return AccessTokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token_id=row["token_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _refresh_token_from_row(row: dict) -> RefreshTokenRecord:
        replaced_by = row.get("replaced_by_token_id")
        return RefreshTokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by_token_id=int(replaced_by) if replaced_by is not None else None,
            revoked_reason=row.get("revoked_reason"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = UserRole.VIEWER.value,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, first_name, last_name, role, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, first_name, last_name, role, is_active, now, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="app_user_email_key"
            )
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
                (role, utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = %s WHERE id = %s RETURNING *",
                (is_active, utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo, updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # access tokens
    def upsert_access_token(
        self, user_id: int, token_id: str, issued_at: datetime, expires_at: datetime
    ) -> AccessTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_access_tokens (user_id, token_id, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (token_id) DO UPDATE SET user_id = EXCLUDED.user_id,
                        issued_at = EXCLUDED.issued_at, expires_at = EXCLUDED.expires_at,
                        revoked_at = NULL
                    RETURNING *
                    """,
                    (user_id, token_id, issued_at, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("access token user missing", {"user_id": user_id})
        return self._access_token_from_row(row)

    def get_access_token(self, token_id: str) -> Optional[AccessTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_access_tokens WHERE token_id = %s", (token_id,)
            ).fetchone()
        return self._access_token_from_row(row) if row else None

    def revoke_access_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_access_tokens SET revoked_at = %s WHERE token_id = %s AND revoked_at IS NULL",
                (revoked_at, token_id),
            )
            return result.rowcount > 0

    def revoke_user_access_tokens(self, user_id: int, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_access_tokens SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (revoked_at, user_id),
            )
            return max(result.rowcount, 0)

    def delete_expired_access_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_access_tokens WHERE expires_at <= %s", (now,)
            )
            return max(result.rowcount, 0)

    # refresh tokens
    def create_refresh_token(
        self, user_id: int, token_hash: str, issued_at: datetime, expires_at: datetime
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_refresh_tokens (user_id, token_hash, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token_hash, issued_at, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return self._refresh_token_from_row(row)

    def get_refresh_token(self, token_id: int) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_refresh_tokens WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        token_id: int,
        successor_hash: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]:
        """Supersede an active token with a new one inside a single transaction.

        The conditional UPDATE is the compare step: when two callers race on
        the same token only one sees a row come back, the other gets None.
        """
        with self._connect() as conn:
            claimed = conn.execute(
                """
                UPDATE user_refresh_tokens
                SET revoked_at = %s, revoked_reason = 'rotated'
                WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING user_id
                """,
                (issued_at, token_id, issued_at),
            ).fetchone()
            if not claimed:
                return None
            try:
                row = conn.execute(
                    """
                    INSERT INTO user_refresh_tokens (user_id, token_hash, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (claimed["user_id"], successor_hash, issued_at, expires_at),
                ).fetchone()
            except errors.UniqueViolation:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_hash"}
                )
            conn.execute(
                "UPDATE user_refresh_tokens SET replaced_by_token_id = %s WHERE id = %s",
                (row["id"], token_id),
            )
        return self._refresh_token_from_row(row)

    def revoke_refresh_token(
        self, token_id: int, revoked_at: datetime, reason: str = "revoked"
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_refresh_tokens SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (revoked_at, reason, token_id),
            )
            return result.rowcount > 0

    def revoke_refresh_token_for_user(
        self, user_id: int, token_hash: str, revoked_at: datetime, reason: str = "logout"
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_refresh_tokens SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND token_hash = %s AND revoked_at IS NULL
                """,
                (revoked_at, reason, user_id, token_hash),
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(
        self, user_id: int, revoked_at: datetime, reason: str = "logout"
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_refresh_tokens SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (revoked_at, reason, user_id),
            )
            return max(result.rowcount, 0)

    def revoke_refresh_chain(
        self, token_id: int, revoked_at: datetime, reason: str = "replay"
    ) -> int:
        """Revoke ``token_id`` and every successor linked through ``replaced_by_token_id``."""
        with self._connect() as conn:
            result = conn.execute(
                """
                WITH RECURSIVE chain AS (
                    SELECT id, replaced_by_token_id FROM user_refresh_tokens WHERE id = %s
                    UNION
                    SELECT t.id, t.replaced_by_token_id
                    FROM user_refresh_tokens t
                    JOIN chain c ON t.id = c.replaced_by_token_id
                )
                UPDATE user_refresh_tokens SET revoked_at = %s, revoked_reason = %s
                WHERE id IN (SELECT id FROM chain) AND revoked_at IS NULL
                """,
                (token_id, revoked_at, reason),
            )
            return max(result.rowcount, 0)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM user_refresh_tokens t
                WHERE t.expires_at <= %s
                  AND NOT EXISTS (
                    SELECT 1 FROM user_refresh_tokens s
                    WHERE s.id = t.replaced_by_token_id AND s.expires_at > %s
                  )
                """,
                (now, now),
            )
            return max(result.rowcount, 0)
