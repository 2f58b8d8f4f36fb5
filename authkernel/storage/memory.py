"""In-process cache and store adapters for development and tests.

Both adapters guard their state with a lock so they can be shared across
threads; neither persists anything.
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from authkernel.logging import get_logger
from authkernel.storage.common import generate_uuid, normalize_email, session_summary
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    AuditEvent,
    OneTimeToken,
    SessionRecord,
    SessionSummary,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryCache:
    """Dict-backed stand-in for :class:`RedisCache` with lazy TTL expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._zsets.pop(key, None)
            self._expiry.pop(key, None)

    def _live_keys(self) -> List[str]:
        keys = set(self._values) | set(self._zsets)
        for key in list(keys):
            self._purge_if_expired(key)
        return [key for key in keys if key in self._values or key in self._zsets]

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = value
            self._zsets.pop(key, None)
            self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                self._purge_if_expired(key)
                found = self._values.pop(key, None) is not None
                found = (self._zsets.pop(key, None) is not None) or found
                self._expiry.pop(key, None)
                if found:
                    removed += 1
        return removed

    async def get_many(self, keys: List[str]) -> List[Optional[str]]:
        with self._lock:
            results: List[Optional[str]] = []
            for key in keys:
                self._purge_if_expired(key)
                results.append(self._values.get(key))
            return results

    async def scan_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(key for key in self._live_keys() if key.startswith(prefix))

    async def zadd(self, key: str, score: float, member: str) -> None:
        with self._lock:
            self._purge_if_expired(key)
            self._zsets.setdefault(key, {})[member] = float(score)

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        with self._lock:
            return self._zremrange(key, min_score, max_score)

    def _zremrange(self, key: str, min_score: float, max_score: float) -> int:
        self._purge_if_expired(key)
        members = self._zsets.get(key)
        if not members:
            return 0
        doomed = [m for m, s in members.items() if min_score <= s <= max_score]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zcard(self, key: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            return len(self._zsets.get(key, {}))

    async def zoldest(self, key: str) -> Optional[Tuple[str, float]]:
        with self._lock:
            return self._zoldest(key)

    def _zoldest(self, key: str) -> Optional[Tuple[str, float]]:
        self._purge_if_expired(key)
        members = self._zsets.get(key)
        if not members:
            return None
        member = min(members, key=lambda m: (members[m], m))
        return member, members[member]

    async def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            if key in self._values or key in self._zsets:
                self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    async def sliding_window_hit(
        self, key: str, now: int, window_seconds: int, limit: int, member: str
    ) -> Tuple[bool, int]:
        """Prune, count and insert under one lock acquisition."""
        with self._lock:
            self._zremrange(key, float("-inf"), now - window_seconds - 1)
            members = self._zsets.get(key, {})
            if len(members) >= limit:
                oldest = self._zoldest(key)
                oldest_score = int(oldest[1]) if oldest else now
                return False, max(1, window_seconds - (now - oldest_score))
            self._zsets.setdefault(key, {})[member] = float(now)
            self._expiry[key] = self._clock() + max(1, window_seconds) + 1
            return True, 0


class MemoryStore:
    """Durable-store stand-in holding users, credentials and session mirrors."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.roles: Dict[str, Set[str]] = {}
        self.tokens: Dict[str, OneTimeToken] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()

    # Users

    def create_user(self, email: str, *, is_active: bool = True) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=generate_uuid(), email=normalized, is_active=is_active)
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = utcnow()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # Sessions

    def create_session(self, record: SessionRecord) -> None:
        with self._data_lock:
            if record.subject_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": record.subject_id}
                )
            self.sessions[record.id] = replace(record)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def list_session_ids(self, user_id: str) -> List[str]:
        with self._data_lock:
            return [sid for sid, sess in self.sessions.items() if sess.subject_id == user_id]

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid in self.list_session_ids(user_id)
                if sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_sessions(self, user_id: str) -> List[SessionSummary]:
        with self._data_lock:
            records = [s for s in self.sessions.values() if s.subject_id == user_id]
        records.sort(key=lambda s: s.created_at, reverse=True)
        return [session_summary(r) for r in records]

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at < before]
            for sid in stale:
                del self.sessions[sid]
            return len(stale)

    def resolve_session_principal(
        self, session_id: str
    ) -> Optional[Tuple[SessionRecord, User]]:
        # Session and user are read under one lock acquisition
        with self._data_lock:
            record = self.sessions.get(session_id)
            if not record:
                return None
            user = self.users.get(record.subject_id)
            if not user:
                return None
            return replace(record), replace(user)

    # Roles

    def assign_role(self, user_id: str, role: str) -> None:
        with self._data_lock:
            self.roles.setdefault(user_id, set()).add(role)

    def get_user_roles(self, user_id: str) -> Set[str]:
        with self._data_lock:
            return set(self.roles.get(user_id, set()))

    # One-time tokens

    def create_one_time_token(self, token: OneTimeToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.tokens[token.id] = replace(token)

    def get_one_time_token(
        self, token_hash: str, purpose: TokenPurpose
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            for token in self.tokens.values():
                if token.token_hash == token_hash and token.purpose == purpose:
                    return replace(token)
            return None

    def consume_one_time_token(
        self, token_id: str, *, discard_siblings: bool = False
    ) -> bool:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.used_at is not None:
                return False
            token.used_at = utcnow()
            if discard_siblings:
                siblings = [
                    tid
                    for tid, other in self.tokens.items()
                    if tid != token_id
                    and other.user_id == token.user_id
                    and other.purpose == token.purpose
                    and other.used_at is None
                ]
                for tid in siblings:
                    del self.tokens[tid]
            return True

    # Audit

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
