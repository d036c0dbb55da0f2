from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from vauth.logging import get_logger
from vauth.storage.errors import ConstraintViolation, StoreUnavailable
from vauth.storage.models import (
    Principal,
    Session,
    SessionStatus,
    Token,
    TokenStatus,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        device_id TEXT NOT NULL UNIQUE,
        profile_enc JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id TEXT PRIMARY KEY,
        device_id TEXT NOT NULL,
        digest TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_status_expiry_idx ON auth_token (status, expires_at)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        principal TEXT NOT NULL,
        device_id TEXT NOT NULL,
        origin_ip TEXT,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    # At most one ACTIVE session per principal, even if two writers race past the lock.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_session_one_active_idx
        ON auth_session (principal) WHERE status = 'ACTIVE'
    """,
)

# Columns recognised in default unique-constraint names, e.g. principal_device_id_key
_UNIQUE_COLUMNS = ("device_id", "username", "digest")


class PostgresStore:
    """Postgres-backed store for principals, tokens and sessions.

    Conditional transitions are single ``UPDATE ... WHERE status = expected``
    statements so the database arbitrates concurrent writers.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = next((col for col in _UNIQUE_COLUMNS if col in constraint), None)
            raise ConstraintViolation(
                "unique constraint violated", {"constraint": constraint, "field": field}
            ) from exc
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # principals
    def create_principal(
        self,
        username: str,
        password_hash: str,
        device_id: str,
        profile_enc: Optional[Dict[str, str]] = None,
    ) -> Principal:
        principal = Principal(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            device_id=device_id,
            profile_enc=dict(profile_enc or {}),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO principal (id, username, password_hash, device_id, profile_enc, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    principal.id,
                    principal.username,
                    principal.password_hash,
                    principal.device_id,
                    json.dumps(principal.profile_enc),
                    principal.created_at,
                ),
            )
        return principal

    def get_principal_by_username(self, username: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE username = %s", (username,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_device_id(self, device_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE device_id = %s", (device_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def list_principals(self) -> List[Principal]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM principal ORDER BY created_at DESC").fetchall()
        return [self._principal_from_row(r) for r in rows]

    def count_principals(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM principal").fetchone()
        return int(row["n"]) if row else 0

    # tokens
    def create_token(self, token: Token) -> Token:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_token (id, device_id, digest, status, created_at, expires_at, used_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.device_id,
                    token.digest,
                    token.status.value,
                    token.created_at,
                    token.expires_at,
                    token.used_at,
                ),
            )
        return token

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_token WHERE id = %s", (token_id,)).fetchone()
        return self._token_from_row(row) if row else None

    def get_token_by_digest(self, digest: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE digest = %s", (digest,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def transition_token(
        self,
        token_id: str,
        new_status: TokenStatus,
        *,
        expected: TokenStatus = TokenStatus.ACTIVE,
        used_at: Optional[datetime] = None,
    ) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token
                SET status = %s, used_at = COALESCE(%s, used_at)
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (new_status.value, used_at, token_id, expected.value),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def expire_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_token SET status = %s WHERE status = %s AND expires_at < %s",
                (TokenStatus.EXPIRED.value, TokenStatus.ACTIVE.value, now),
            )
            return result.rowcount

    def delete_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_token WHERE id = %s", (token_id,))
            return result.rowcount > 0

    def delete_tokens(self, status: TokenStatus) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_token WHERE status = %s", (status.value,))
            return result.rowcount

    def list_tokens(self, status: Optional[TokenStatus] = None) -> List[Token]:
        query = "SELECT * FROM auth_token"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = %s"
            params = (status.value,)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._token_from_row(r) for r in rows]

    def count_tokens(self, status: Optional[TokenStatus] = None) -> int:
        query = "SELECT COUNT(*) AS n FROM auth_token"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = %s"
            params = (status.value,)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["n"]) if row else 0

    # sessions
    def open_session(self, session: Session) -> Tuple[Session, int]:
        """Demote the principal's ACTIVE sessions and insert ``session`` in one transaction.

        A transaction-scoped advisory lock keyed on the principal serializes
        concurrent opens; the partial unique index backs it up.
        """
        with self._connect() as conn, conn.transaction():
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (session.principal,))
            demoted = conn.execute(
                "UPDATE auth_session SET status = %s WHERE principal = %s AND status = %s",
                (SessionStatus.EXPIRED.value, session.principal, SessionStatus.ACTIVE.value),
            ).rowcount
            conn.execute(
                """
                INSERT INTO auth_session (id, principal, device_id, origin_ip, status, started_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.principal,
                    session.device_id,
                    session.origin_ip,
                    session.status.value,
                    session.started_at,
                    session.expires_at,
                ),
            )
        return session, max(demoted, 0)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def transition_session(
        self,
        session_id: str,
        new_status: SessionStatus,
        *,
        expected: SessionStatus = SessionStatus.ACTIVE,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET status = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (new_status.value, session_id, expected.value),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET status = %s WHERE status = %s AND expires_at < %s",
                (SessionStatus.EXPIRED.value, SessionStatus.ACTIVE.value, now),
            )
            return result.rowcount

    def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        *,
        expires_after: Optional[datetime] = None,
    ) -> List[Session]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if expires_after is not None:
            clauses.append("expires_at > %s")
            params.append(expires_after)
        query = "SELECT * FROM auth_session"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._session_from_row(r) for r in rows]

    def count_sessions(self, status: Optional[SessionStatus] = None) -> int:
        query = "SELECT COUNT(*) AS n FROM auth_session"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = %s"
            params = (status.value,)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["n"]) if row else 0

    # row mapping
    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        profile = row.get("profile_enc") or {}
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Principal(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row["password_hash"],
            device_id=row["device_id"],
            profile_enc=dict(profile),
            created_at=row["created_at"],
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> Token:
        return Token(
            id=str(row["id"]),
            device_id=row["device_id"],
            digest=row["digest"],
            status=TokenStatus(row["status"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            principal=row["principal"],
            device_id=row["device_id"],
            origin_ip=row.get("origin_ip"),
            status=SessionStatus(row["status"]),
            started_at=row["started_at"],
            expires_at=row["expires_at"],
        )
