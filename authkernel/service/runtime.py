from __future__ import annotations

import asyncio
import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.audit import AuditRecorder, AuditSink, LoggingAuditSink, StoreAuditSink
from authkernel.service.auth import AccountService, Mailer
from authkernel.service.csrf import CsrfGuard
from authkernel.service.passwords import PasswordVerifier
from authkernel.service.rate_limit import RateLimiter
from authkernel.service.rbac import RoleAuthorizer
from authkernel.service.sessions import SessionManager
from authkernel.storage.memory import MemoryCache, MemoryStore
from authkernel.storage.postgres import PostgresStore
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the wired service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[Any] = None,
        store: Optional[Any] = None,
        mailer: Optional[Mailer] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", use_memory_store=self.settings.use_memory_store)

        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.passwords = PasswordVerifier.from_settings(self.settings)
        self.sessions = SessionManager(
            self.cache,
            self.store,
            ttl_seconds=self.settings.session_ttl_seconds,
            fingerprint_secret=self.settings.fingerprint_secret,
        )
        self.rate_limiter = RateLimiter(self.cache, atomic=self.settings.rate_limit_atomic)
        self.csrf = CsrfGuard.from_settings(self.settings)
        self.rbac = RoleAuthorizer(self.store)
        if audit_sink is None:
            audit_sink = (
                StoreAuditSink(self.store)
                if hasattr(self.store, "append_audit_event")
                else LoggingAuditSink()
            )
        self.audit = AuditRecorder(
            audit_sink,
            fingerprint_secret=self.settings.fingerprint_secret,
            timeout_seconds=self.settings.audit_timeout_seconds,
        )
        self.accounts: Optional[AccountService] = None
        if self.store is not None:
            self.accounts = AccountService(
                self.store,
                self.sessions,
                self.passwords,
                self.audit,
                self.settings,
                mailer=mailer,
            )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            store_type=type(self.store).__name__ if self.store is not None else None,
        )

    def _build_store(self) -> Optional[Any]:
        if self.settings.use_memory_store:
            return MemoryStore()
        if not self.settings.database_url:
            logger.warning(
                "runtime_no_durable_store",
                message="DATABASE_URL unset; sessions are cache-only and bulk revocation scans the cache",
            )
            return None
        try:
            store = PostgresStore(
                self.settings.database_url,
                timeout_seconds=self.settings.store_timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type="postgres")
        return store

    def _build_cache(self) -> Any:
        if self.settings.use_memory_store:
            return MemoryCache()
        cache = RedisCache(
            self.settings.redis_url, socket_timeout=self.settings.cache_timeout_seconds
        )
        try:
            cache.verify_connection()
        except Exception as exc:
            # Sessions and rate limits cannot work without the shared cache
            logger.error(
                "runtime_cache_init_failed",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            raise RuntimeError(
                "Redis is required for sessions and rate limits; start Redis or set USE_MEMORY_STORE=true"
            ) from exc
        return cache

    async def close(self) -> None:
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment read."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.use_memory_store:
            raise RuntimeError("runtime reset is only allowed with USE_MEMORY_STORE")
        runtime = Runtime(settings)
        return runtime
