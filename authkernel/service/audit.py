"""Best-effort audit trail for authentication outcomes.

Recording never fails the caller: sink errors and timeouts are logged and
dropped.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Dict, Optional, Protocol

from authkernel.logging import get_logger
from authkernel.service.crypto import fingerprint_client_ip
from authkernel.storage.models import AuditEvent, AuditEventKind, ClientContext

logger = get_logger(__name__)


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> Any:
        """Persist one event; may be a coroutine function."""


class LoggingAuditSink:
    """Writes events to the structured log only."""

    def __init__(self, event_name: str = "audit_event") -> None:
        self.event_name = event_name
        self.logger = get_logger("authkernel.audit")

    def append(self, event: AuditEvent) -> None:
        self.logger.info(
            self.event_name,
            kind=event.kind.value,
            subject_id=event.subject_id,
            client_fingerprint_hash=event.client_fingerprint_hash,
            client_agent=event.client_agent,
            metadata=event.metadata,
            occurred_at=event.occurred_at.isoformat(),
        )


class StoreAuditSink:
    def __init__(self, store: Any) -> None:
        self.store = store

    def append(self, event: AuditEvent) -> None:
        self.store.append_audit_event(event)


class AuditRecorder:
    def __init__(
        self,
        sink: AuditSink,
        *,
        fingerprint_secret: str,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.sink = sink
        self.fingerprint_secret = fingerprint_secret
        self.timeout_seconds = timeout_seconds

    def build_event(
        self,
        kind: AuditEventKind,
        subject_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        return AuditEvent(
            kind=AuditEventKind(kind),
            subject_id=subject_id,
            client_fingerprint_hash=(
                fingerprint_client_ip(client.ip, self.fingerprint_secret) if client else None
            ),
            client_agent=client.user_agent if client else None,
            metadata=metadata,
        )

    async def record(
        self,
        kind: AuditEventKind,
        subject_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = self.build_event(kind, subject_id, client, metadata)
        try:
            if inspect.iscoroutinefunction(self.sink.append):
                await asyncio.wait_for(self.sink.append(event), self.timeout_seconds)
            else:
                await asyncio.wait_for(
                    asyncio.to_thread(self.sink.append, event), self.timeout_seconds
                )
        except asyncio.TimeoutError:
            logger.warning("audit_append_timeout", kind=event.kind.value, subject_id=subject_id)
        except Exception as exc:
            logger.warning(
                "audit_append_failed",
                kind=event.kind.value,
                subject_id=subject_id,
                error=str(exc),
            )
