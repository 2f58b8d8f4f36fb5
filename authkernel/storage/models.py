from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    is_active: bool = True
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass(frozen=True)
class ClientContext:
    """Caller-supplied request origin; opaque beyond fingerprinting."""

    ip: str
    user_agent: str = ""


@dataclass
class SessionRecord:
    id: str
    subject_id: str
    created_at: datetime
    expires_at: datetime
    client_fingerprint_hash: str
    client_agent: str = ""
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        subject_id: str,
        ttl_seconds: int,
        client_fingerprint_hash: str,
        client_agent: str = "",
        *,
        now: Optional[datetime] = None,
    ) -> "SessionRecord":
        created = now or utcnow()
        return cls(
            id=session_id,
            subject_id=subject_id,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            client_fingerprint_hash=client_fingerprint_hash,
            client_agent=client_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())

    def to_cache_payload(self) -> str:
        """Serialize to the JSON shape stored under ``sess:<id>``."""
        return json.dumps(
            {
                "subjectId": self.subject_id,
                "createdAt": as_utc(self.created_at).isoformat(),
                "expiresAt": as_utc(self.expires_at).isoformat(),
                "clientFingerprintHash": self.client_fingerprint_hash,
                "clientAgent": self.client_agent,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_cache_payload(cls, session_id: str, raw: Any) -> "SessionRecord":
        """Parse a cached session; raises ValueError on any malformed input."""
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValueError("session payload is not JSON") from exc
        if not isinstance(data, dict):
            raise ValueError("session payload is not an object")
        subject_id = data.get("subjectId")
        if not isinstance(subject_id, str) or not subject_id:
            raise ValueError("session payload missing subjectId")
        try:
            created_at = as_utc(datetime.fromisoformat(data["createdAt"]))
            expires_at = as_utc(datetime.fromisoformat(data["expiresAt"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("session payload has invalid timestamps") from exc
        return cls(
            id=session_id,
            subject_id=subject_id,
            created_at=created_at,
            expires_at=expires_at,
            client_fingerprint_hash=str(data.get("clientFingerprintHash") or ""),
            client_agent=str(data.get("clientAgent") or ""),
        )


@dataclass
class SessionSummary:
    id: str
    created_at: datetime
    user_agent: str = ""
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


@dataclass(frozen=True)
class Principal:
    subject_id: str
    session_id: str
    email: Optional[str] = None


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class OneTimeToken:
    """Single-use token; only the SHA-256 digest of the secret is kept."""

    id: str
    user_id: str
    purpose: TokenPurpose
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, purpose: TokenPurpose, token_hash: str, ttl_minutes: int
    ) -> "OneTimeToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=purpose,
            token_hash=token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and as_utc(self.expires_at) > (now or utcnow())


class AuditEventKind(str, Enum):
    REGISTER = "REGISTER"
    VERIFY_SENT = "VERIFY_SENT"
    VERIFY_OK = "VERIFY_OK"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAIL = "LOGIN_FAIL"
    LOGIN_FAIL_NOT_VERIFIED = "LOGIN_FAIL_NOT_VERIFIED"
    LOGOUT = "LOGOUT"
    SESSION_CREATED_POST_VERIFICATION = "SESSION_CREATED_POST_VERIFICATION"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSIONS_REVOKED_ALL = "SESSIONS_REVOKED_ALL"
    RESET_REQ = "RESET_REQ"
    RESET_OK = "RESET_OK"


@dataclass(frozen=True)
class AuditEvent:
    kind: AuditEventKind
    subject_id: Optional[str] = None
    client_fingerprint_hash: Optional[str] = None
    client_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=utcnow)
