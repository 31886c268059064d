from __future__ import annotations

import ipaddress
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation, StorageUnavailable
from authgate.storage.models import Session, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        previous_token_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        client_ip INET,
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_id_idx ON auth_session (user_id)",
    """
    CREATE INDEX IF NOT EXISTS auth_session_previous_token_idx
        ON auth_session (previous_token_hash)
    """,
)

_SESSION_COLUMNS = (
    "id, user_id, refresh_token_hash, previous_token_hash, created_at, "
    "expires_at, user_agent, client_ip, is_blocked"
)


def _is_uuid(value: Any) -> bool:
    """Ids arrive from clients as free text; the key columns only accept UUIDs."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _inet(value: Optional[str]) -> Optional[str]:
    # proxies and test clients can report a hostname instead of an address
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed user directory and session store.

    Every mutating operation is a single SQL statement, so atomicity comes
    from the database rather than from process-local locks.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool_size: int = 10,
        timeout_seconds: float = 5.0,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=pool_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        if ensure_schema:
            self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StorageUnavailable("database pool exhausted") from exc
        except errors.QueryCanceled as exc:
            self.logger.error("postgres_statement_timeout", error=str(exc))
            raise StorageUnavailable("database statement timed out") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        """Create the user and session tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
            is_blocked=bool(row.get("is_blocked", False)),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        raw_ip = row.get("client_ip")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            previous_token_hash=row.get("previous_token_hash"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            client_ip=str(raw_ip) if raw_ip is not None else None,
            is_blocked=bool(row.get("is_blocked", False)),
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, created_at, is_blocked)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        user.created_at,
                        user.is_blocked,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        needle = identifier.strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s OR email = %s LIMIT 1",
                (needle, needle),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_blocked(self, user_id: str, blocked: bool) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET is_blocked = %s WHERE id = %s",
                (blocked, user_id),
            )
            return result.rowcount > 0

    def is_user_active(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT is_blocked FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return bool(row) and not row["is_blocked"]

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, created_at, expires_at, user_agent, client_ip, is_blocked)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        _inet(session.client_ip),
                        session.is_blocked,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token_hash"}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE refresh_token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_previous_token(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE previous_token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        user_id: str,
        expected_token_hash: str,
        new_token_hash: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """Compare-and-swap the refresh digest in one statement."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session
                       SET refresh_token_hash = %s,
                           previous_token_hash = refresh_token_hash,
                           created_at = %s,
                           expires_at = %s
                     WHERE id = %s AND user_id = %s AND refresh_token_hash = %s
                    RETURNING id
                    """,
                    (
                        new_token_hash,
                        created_at,
                        expires_at,
                        session_id,
                        user_id,
                        expected_token_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token_hash"}
            )
        return row is not None

    def delete_session(self, user_id: str, session_id: str) -> bool:
        if not (_is_uuid(user_id) and _is_uuid(session_id)):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE id = %s AND user_id = %s",
                (session_id, user_id),
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (now or utcnow(),)
            )
            return result.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
