from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from blogauth.logging import get_logger
from blogauth.storage.errors import ConstraintViolation, StorageUnavailable
from blogauth.storage.models import (
    OneTimeToken,
    Role,
    Session,
    TokenPurpose,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'VIEWER',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "ALTER TABLE app_user ADD COLUMN IF NOT EXISTS last_login_at TIMESTAMPTZ",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_digest TEXT NOT NULL UNIQUE,
        refresh_digest TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ,
        last_activity_at TIMESTAMPTZ,
        ip_addr TEXT,
        user_agent TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_active_idx ON auth_session (user_id, active, created_at)",
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_digest TEXT NOT NULL UNIQUE,
        purpose TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
)


class PostgresStore:
    """Postgres-backed user, session and one-time token store.

    Every method is blocking; async callers run them in a worker thread.
    Connectivity failures surface as ``StorageUnavailable`` and constraint
    failures as ``ConstraintViolation``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 5000,
        pool_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=pool_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password_hash") or "",
            role=Role(row.get("role") or Role.VIEWER.value),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_digest=row["access_digest"],
            refresh_digest=row["refresh_digest"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            updated_at=row.get("updated_at"),
            last_activity_at=row.get("last_activity_at"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            active=row.get("active", False),
            revoked_at=row.get("revoked_at"),
            revoke_reason=row.get("revoke_reason"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_digest=row["token_digest"],
            purpose=TokenPurpose(row["purpose"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.VIEWER,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, password_hash, role, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized_email,
                        username,
                        password_hash,
                        Role(role).value,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, user_id: str, column: str, value) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {column} = %s, updated_at = now() WHERE id = %s RETURNING *",
                (value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, "password_hash", password_hash)

    def set_active(self, user_id: str, active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active", active)

    def update_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, "role", Role(role).value)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "email_verified", True)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, "last_login_at", at)

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, access_digest, refresh_digest, created_at, expires_at,
                        updated_at, last_activity_at, ip_addr, user_agent, active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.access_digest,
                        session.refresh_digest,
                        session.created_at,
                        session.expires_at,
                        session.updated_at,
                        session.last_activity_at,
                        session.ip_addr,
                        session.user_agent,
                        session.active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token collision", {"id": session.id})
        return session

    def _get_session_where(self, column: str, value: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_session WHERE {column} = %s", (value,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._get_session_where("id", session_id)

    def get_session_by_access_digest(self, digest: str) -> Optional[Session]:
        return self._get_session_where("access_digest", digest)

    def get_session_by_refresh_digest(self, digest: str) -> Optional[Session]:
        return self._get_session_where("refresh_digest", digest)

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND active AND expires_at > %s
                ORDER BY created_at ASC, id ASC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def update_session(
        self, session: Session, *, expected_refresh_digest: Optional[str] = None
    ) -> bool:
        query = """
            UPDATE auth_session
            SET access_digest = %s, refresh_digest = %s, expires_at = %s,
                ip_addr = %s, user_agent = %s, last_activity_at = %s, updated_at = now()
            WHERE id = %s
        """
        params: list = [
            session.access_digest,
            session.refresh_digest,
            session.expires_at,
            session.ip_addr,
            session.user_agent,
            session.last_activity_at,
            session.id,
        ]
        if expected_refresh_digest is not None:
            query += " AND active AND refresh_digest = %s"
            params.append(expected_refresh_digest)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount > 0

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity_at = %s, updated_at = %s WHERE id = %s",
                (at, at, session_id),
            )

    def revoke_session(self, session_id: str, reason: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET active = FALSE, revoked_at = now(), revoke_reason = %s, updated_at = now()
                WHERE id = %s AND active
                """,
                (reason, session_id),
            )
            return result.rowcount > 0

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        reason: str,
    ) -> int:
        query = """
            UPDATE auth_session
            SET active = FALSE, revoked_at = now(), revoke_reason = %s, updated_at = now()
            WHERE user_id = %s AND active
        """
        params: list = [reason, user_id]
        if except_session_id:
            query += " AND id <> %s"
            params.append(except_session_id)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount

    # one-time tokens
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_token (id, user_id, token_digest, purpose, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_digest,
                        token.purpose.value,
                        token.created_at,
                        token.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        return token

    def consume_one_time_token(
        self, digest: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_token SET used_at = %s
                WHERE token_digest = %s AND purpose = %s
                  AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, digest, TokenPurpose(purpose).value, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def invalidate_one_time_tokens(self, user_id: str, purpose: TokenPurpose) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE one_time_token SET used_at = now()
                WHERE user_id = %s AND purpose = %s AND used_at IS NULL
                """,
                (user_id, TokenPurpose(purpose).value),
            )
            return result.rowcount
