"""Opaque server-side sessions held in the shared cache with a durable mirror.

The cache entry decides liveness; the durable record (when a store is
configured) is re-read by :meth:`SessionManager.resolve_principal` so a
revocation that reached the store but not the cache still denies access.
Every read path resolves uncertainty to "not authenticated".
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, List, Optional

from authkernel.logging import get_logger, token_prefix
from authkernel.service.crypto import fingerprint_client_ip, random_token
from authkernel.service.errors import BackendUnavailableError
from authkernel.storage.common import (
    SESSION_KEY_PREFIX,
    AuthStore,
    Cache,
    session_id_from_key,
    session_key,
    session_summary,
)
from authkernel.storage.models import (
    ClientContext,
    Principal,
    SessionRecord,
    SessionSummary,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

# Keys fetched per round trip during namespace scans
_SCAN_BATCH = 200


class SessionManager:
    def __init__(
        self,
        cache: Cache,
        store: Optional[AuthStore],
        *,
        ttl_seconds: int,
        fingerprint_secret: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("session ttl must be positive")
        self.cache = cache
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.fingerprint_secret = fingerprint_secret
        self._clock = clock

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _remaining_seconds(self, expires_at: datetime) -> int:
        remaining = (as_utc(expires_at) - self._now()).total_seconds()
        # Rounded up so the cache never expires before the durable record
        return max(1, math.ceil(remaining))

    async def create(self, subject_id: str, client: ClientContext) -> str:
        """Issue a session for ``subject_id`` and return its opaque id."""
        session_id = random_token(32)
        record = SessionRecord.new(
            session_id,
            subject_id,
            self.ttl_seconds,
            fingerprint_client_ip(client.ip, self.fingerprint_secret),
            client.user_agent or "",
            now=self._now(),
        )
        try:
            await self.cache.set(
                session_key(session_id),
                record.to_cache_payload(),
                self._remaining_seconds(record.expires_at),
            )
        except Exception as exc:
            logger.error(
                "session_cache_write_failed", subject_id=subject_id, error=str(exc)
            )
            raise BackendUnavailableError("session could not be created") from exc
        if self.store is not None:
            try:
                self.store.create_session(record)
            except Exception as exc:
                # resolve_principal denies this session until the mirror exists
                logger.warning(
                    "session_durable_mirror_failed",
                    subject_id=subject_id,
                    session_prefix=token_prefix(session_id),
                    error=str(exc),
                )
        logger.info(
            "session_created",
            subject_id=subject_id,
            session_prefix=token_prefix(session_id),
        )
        return session_id

    async def get(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        try:
            raw = await self.cache.get(session_key(session_id))
        except Exception as exc:
            logger.warning(
                "session_cache_read_failed",
                session_prefix=token_prefix(session_id),
                error=str(exc),
            )
            return None
        if raw is None:
            return None
        try:
            record = SessionRecord.from_cache_payload(session_id, raw)
        except ValueError as exc:
            logger.warning(
                "session_cache_payload_malformed",
                session_prefix=token_prefix(session_id),
                error=str(exc),
            )
            return None
        if record.is_expired(self._now()):
            return None
        return record

    async def resolve_principal(self, session_id: Optional[str]) -> Optional[Principal]:
        """Return the authenticated principal or None; never raises."""
        record = await self.get(session_id)
        if record is None:
            return None
        if self.store is None:
            return Principal(subject_id=record.subject_id, session_id=record.id)
        try:
            resolved = self.store.resolve_session_principal(record.id)
        except Exception as exc:
            logger.warning(
                "session_durable_check_failed",
                session_prefix=token_prefix(record.id),
                error=str(exc),
            )
            return None
        if resolved is None:
            return None
        durable, user = resolved
        if (
            durable.revoked_at is not None
            or durable.is_expired(self._now())
            or durable.subject_id != record.subject_id
            or not user.is_active
        ):
            logger.info(
                "session_rejected_by_store",
                session_prefix=token_prefix(record.id),
                subject_id=record.subject_id,
            )
            return None
        return Principal(subject_id=user.id, session_id=record.id, email=user.email)

    async def revoke(self, session_id: Optional[str]) -> None:
        """Delete a session from the cache and, best-effort, the store."""
        if not session_id:
            return
        cache_error: Optional[Exception] = None
        try:
            await self.cache.delete(session_key(session_id))
        except Exception as exc:
            cache_error = exc
            logger.warning(
                "session_cache_delete_failed",
                session_prefix=token_prefix(session_id),
                error=str(exc),
            )
        durable_deleted = False
        if self.store is not None:
            try:
                self.store.delete_session(session_id)
                durable_deleted = True
            except Exception as exc:
                logger.warning(
                    "session_durable_delete_failed",
                    session_prefix=token_prefix(session_id),
                    error=str(exc),
                )
        # Either deletion alone is enough for resolve_principal to deny
        if cache_error is not None and not durable_deleted:
            raise BackendUnavailableError("session could not be revoked") from cache_error

    async def revoke_all(
        self, subject_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke every session of ``subject_id``; returns how many were found.

        With a store, durable deletion goes first and is authoritative. Without
        one, or if the store call fails, the cache namespace is scanned.
        """
        session_ids: Optional[List[str]] = None
        if self.store is not None:
            try:
                session_ids = [
                    sid
                    for sid in self.store.list_session_ids(subject_id)
                    if sid != except_session_id
                ]
                self.store.delete_user_sessions(subject_id, except_session_id)
            except Exception as exc:
                logger.warning(
                    "revoke_all_durable_failed", subject_id=subject_id, error=str(exc)
                )
                session_ids = None

        if session_ids is None:
            session_ids = [
                record.id
                for record in await self._scan_cache(subject_id)
                if record.id != except_session_id
            ]

        if session_ids:
            try:
                await self.cache.delete(*[session_key(sid) for sid in session_ids])
            except Exception as exc:
                # Stale entries are still rejected by the durable re-check
                logger.warning(
                    "revoke_all_cache_delete_failed",
                    subject_id=subject_id,
                    count=len(session_ids),
                    error=str(exc),
                )
        logger.info("sessions_revoked_all", subject_id=subject_id, count=len(session_ids))
        return len(session_ids)

    async def _scan_cache(self, subject_id: str) -> List[SessionRecord]:
        """Walk every ``sess:`` entry; linear in the number of live sessions."""
        try:
            keys = await self.cache.scan_prefix(SESSION_KEY_PREFIX)
        except Exception as exc:
            logger.error("session_cache_scan_failed", subject_id=subject_id, error=str(exc))
            raise BackendUnavailableError("sessions could not be enumerated") from exc
        owned: List[SessionRecord] = []
        for start in range(0, len(keys), _SCAN_BATCH):
            batch = keys[start : start + _SCAN_BATCH]
            try:
                values = await self.cache.get_many(batch)
            except Exception as exc:
                logger.error(
                    "session_cache_scan_failed", subject_id=subject_id, error=str(exc)
                )
                raise BackendUnavailableError("sessions could not be enumerated") from exc
            for key, raw in zip(batch, values):
                if raw is None:
                    continue
                try:
                    record = SessionRecord.from_cache_payload(session_id_from_key(key), raw)
                except ValueError:
                    continue
                if record.subject_id == subject_id:
                    owned.append(record)
        return owned

    async def list_for_subject(self, subject_id: str) -> List[SessionSummary]:
        if self.store is not None:
            try:
                return self.store.list_sessions(subject_id)
            except Exception as exc:
                logger.warning(
                    "list_sessions_durable_failed", subject_id=subject_id, error=str(exc)
                )
        # Approximate: only what is still cached, no revocation history
        records = await self._scan_cache(subject_id)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [session_summary(r) for r in records]

    async def prune_expired(self, before: Optional[datetime] = None) -> int:
        """Delete durable session records that expired before ``before``."""
        if self.store is None:
            return 0
        cutoff = before or self._now()
        removed = self.store.delete_expired_sessions(cutoff)
        logger.info("sessions_pruned", removed=removed, before=cutoff.isoformat())
        return removed
