"""Collaborator interfaces and helpers shared by the cache and store adapters.

The service layer only talks to ``Cache`` and ``AuthStore``; Redis, Postgres
and the in-memory adapters implement them.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from authkernel.storage.models import (
    AuditEvent,
    OneTimeToken,
    SessionRecord,
    SessionSummary,
    TokenPurpose,
    User,
)

SESSION_KEY_PREFIX = "sess:"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def session_id_from_key(key: str) -> str:
    return key[len(SESSION_KEY_PREFIX):] if key.startswith(SESSION_KEY_PREFIX) else key


class Cache(Protocol):
    """Shared expiring key/value cache with sorted-set support."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def get_many(self, keys: List[str]) -> List[Optional[str]]: ...

    async def scan_prefix(self, prefix: str) -> List[str]: ...

    async def zadd(self, key: str, score: float, member: str) -> None: ...

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def zoldest(self, key: str) -> Optional[Tuple[str, float]]: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...


class AuthStore(Protocol):
    """Durable store for users, credentials, session mirrors and audit."""

    def create_user(self, email: str, *, is_active: bool = True) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(self, record: SessionRecord) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def list_session_ids(self, user_id: str) -> List[str]: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_sessions(self, user_id: str) -> List[SessionSummary]: ...

    def delete_expired_sessions(self, before: datetime) -> int: ...

    def resolve_session_principal(
        self, session_id: str
    ) -> Optional[Tuple[SessionRecord, User]]: ...

    def get_user_roles(self, user_id: str) -> Set[str]: ...

    def create_one_time_token(self, token: OneTimeToken) -> None: ...

    def get_one_time_token(
        self, token_hash: str, purpose: TokenPurpose
    ) -> Optional[OneTimeToken]: ...

    def consume_one_time_token(
        self, token_id: str, *, discard_siblings: bool = False
    ) -> bool: ...

    def append_audit_event(self, event: AuditEvent) -> None: ...


def normalize_email(email: Optional[str]) -> str:
    """Trim and lower-case an email address for lookups and bucket keys."""
    return (email or "").strip().lower()


def serialize_audit_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if metadata is None:
        return None
    return json.dumps(metadata, default=str, separators=(",", ":"))


def session_summary(record: SessionRecord) -> SessionSummary:
    return SessionSummary(
        id=record.id,
        created_at=record.created_at,
        user_agent=record.client_agent,
        expires_at=record.expires_at,
        revoked_at=record.revoked_at,
    )


def role_names(rows: Iterable[Any]) -> Set[str]:
    """Collect non-empty role names from store rows."""
    names: Set[str] = set()
    for row in rows:
        name = row.get("name") if hasattr(row, "get") else row
        if isinstance(name, str) and name:
            names.add(name)
    return names


def generate_uuid() -> str:
    return str(uuid.uuid4())
