from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Set, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authkernel.logging import get_logger
from authkernel.storage.common import (
    generate_uuid,
    normalize_email,
    role_names,
    serialize_audit_metadata,
)
from authkernel.storage.errors import ConstraintViolation, StoreUnavailable
from authkernel.storage.models import (
    AuditEvent,
    OneTimeToken,
    SessionRecord,
    SessionSummary,
    TokenPurpose,
    User,
    utcnow,
)

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "auth_session",
    "user_role",
    "one_time_token",
    "audit_event",
)


class PostgresStore:
    """Postgres-backed durable store for accounts, session mirrors and audit."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        if verify_schema:
            self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection, mapping outages to StoreUnavailable.

        Integrity errors pass through so callers can report constraint
        violations.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.IntegrityError:
            raise
        except (PoolTimeout, psycopg.Error) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(
                "durable store unavailable", {"error": str(exc)}
            ) from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when migrations have not created the auth tables."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in REQUIRED_TABLES if name not in present]
        if missing:
            self.logger.error("postgres_schema_missing_tables", tables=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            is_active=bool(row.get("is_active", True)),
            email_verified_at=row.get("email_verified_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> SessionRecord:
        return SessionRecord(
            id=str(row["id"]),
            subject_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            client_fingerprint_hash=row.get("client_fingerprint_hash") or "",
            client_agent=row.get("client_agent") or "",
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=TokenPurpose(row["purpose"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(self, email: str, *, is_active: bool = True) -> User:
        user_id = generate_uuid()
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, is_active)
                    VALUES (%s, %s, %s)
                    RETURNING id, email, is_active, email_verified_at, created_at
                    """,
                    (user_id, normalized, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
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
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, now())
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(self, record: SessionRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, client_fingerprint_hash, client_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.subject_id,
                        record.created_at,
                        record.expires_at,
                        record.client_fingerprint_hash,
                        record.client_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"user_id": record.subject_id}
            )

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return bool(cur.rowcount)

    def list_session_ids(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM auth_session WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                )
            return int(cur.rowcount or 0)

    def list_sessions(self, user_id: str) -> List[SessionSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, created_at, client_agent, expires_at, revoked_at
                FROM auth_session WHERE user_id = %s
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [
            SessionSummary(
                id=str(row["id"]),
                created_at=row["created_at"],
                user_agent=row.get("client_agent") or "",
                expires_at=row.get("expires_at"),
                revoked_at=row.get("revoked_at"),
            )
            for row in rows
        ]

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (before,)
            )
            return int(cur.rowcount or 0)

    def resolve_session_principal(
        self, session_id: str
    ) -> Optional[Tuple[SessionRecord, User]]:
        """Read the session row and its owner in a single statement."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.id, s.user_id, s.created_at, s.expires_at,
                       s.client_fingerprint_hash, s.client_agent, s.revoked_at,
                       u.email AS user_email, u.is_active AS user_is_active,
                       u.email_verified_at AS user_email_verified_at,
                       u.created_at AS user_created_at
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                WHERE s.id = %s
                """,
                (session_id,),
            ).fetchone()
        if not row:
            return None
        user = User(
            id=str(row["user_id"]),
            email=row["user_email"],
            is_active=bool(row["user_is_active"]),
            email_verified_at=row.get("user_email_verified_at"),
            created_at=row.get("user_created_at") or utcnow(),
        )
        return self._session_from_row(row), user

    # roles
    def assign_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_role (user_id, role_name) VALUES (%s, %s)
                ON CONFLICT (user_id, role_name) DO NOTHING
                """,
                (user_id, role),
            )

    def get_user_roles(self, user_id: str) -> Set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role_name AS name FROM user_role WHERE user_id = %s",
                (user_id,),
            ).fetchall()
        return role_names(rows)

    # one-time tokens
    def create_one_time_token(self, token: OneTimeToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO one_time_token (id, user_id, purpose, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.purpose.value,
                    token.token_hash,
                    token.expires_at,
                    token.created_at,
                ),
            )

    def get_one_time_token(
        self, token_hash: str, purpose: TokenPurpose
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE token_hash = %s AND purpose = %s",
                (token_hash, purpose.value),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def consume_one_time_token(
        self, token_id: str, *, discard_siblings: bool = False
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_token SET used_at = now()
                WHERE id = %s AND used_at IS NULL
                RETURNING user_id, purpose
                """,
                (token_id,),
            ).fetchone()
            if not row:
                return False
            if discard_siblings:
                conn.execute(
                    """
                    DELETE FROM one_time_token
                    WHERE user_id = %s AND purpose = %s AND id <> %s AND used_at IS NULL
                    """,
                    (row["user_id"], row["purpose"], token_id),
                )
        return True

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, kind, user_id, client_fingerprint_hash, client_agent, metadata, occurred_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    generate_uuid(),
                    event.kind.value,
                    event.subject_id,
                    event.client_fingerprint_hash,
                    event.client_agent,
                    serialize_audit_metadata(event.metadata),
                    event.occurred_at,
                ),
            )

