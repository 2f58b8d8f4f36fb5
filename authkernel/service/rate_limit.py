"""Sliding-window rate limiting over cache sorted sets.

Each bucket ``rl:<kind>:<value>:<action>`` holds one member per admitted
event, scored by its integer-second timestamp. The default path issues
separate cache commands, so two concurrent checks can both pass when the
bucket holds ``limit - 1`` entries; at most ``limit + 1`` entries then exist
when the next request is rejected. Pass ``atomic=True`` to run the same steps
as a single server-side operation instead.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from authkernel.logging import get_logger
from authkernel.service.errors import RateLimitedError
from authkernel.storage.common import Cache, normalize_email

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class SubjectKind(str, Enum):
    IP = "ip"
    ACCOUNT = "acct"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


@dataclass(frozen=True)
class RateLimitRule:
    """One limit applied to an action, keyed by client IP or by account."""

    subject_kind: SubjectKind
    action: str
    limit: int
    window_seconds: int


def bucket_key(subject_kind: SubjectKind, subject_value: str, action: str) -> str:
    kind = SubjectKind(subject_kind)
    value = normalize_email(subject_value) if kind is SubjectKind.ACCOUNT else subject_value
    return f"rl:{kind.value}:{value}:{action}"


class RateLimiter:
    def __init__(
        self,
        cache: Cache,
        *,
        atomic: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.atomic = atomic
        self._clock = clock

    async def check(
        self,
        subject_kind: SubjectKind,
        subject_value: str,
        action: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                action=action,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        key = bucket_key(subject_kind, subject_value, action)
        now = int(self._clock())
        member = f"{now}:{secrets.token_hex(8)}"
        try:
            if self.atomic and hasattr(self.cache, "sliding_window_hit"):
                allowed, retry_after = await self.cache.sliding_window_hit(  # type: ignore[attr-defined]
                    key, now, window_seconds, limit, member
                )
                decision = RateLimitDecision(
                    allowed=allowed, retry_after_seconds=None if allowed else retry_after
                )
            else:
                decision = await self._check_stepwise(key, now, window_seconds, limit, member)
        except Exception as exc:
            # Limiter state unknown: deny rather than admit unbounded traffic
            logger.warning(
                "rate_limit_cache_error",
                subject_kind=SubjectKind(subject_kind).value,
                action=action,
                error=str(exc),
            )
            return RateLimitDecision(allowed=False, retry_after_seconds=1)

        if not decision.allowed:
            logger.info(
                "rate_limit_exceeded",
                subject_kind=SubjectKind(subject_kind).value,
                action=action,
                limit=limit,
                window_seconds=window_seconds,
                retry_after=decision.retry_after_seconds,
            )
        return decision

    async def _check_stepwise(
        self, key: str, now: int, window_seconds: int, limit: int, member: str
    ) -> RateLimitDecision:
        window_start = now - window_seconds
        # Scores are whole seconds, so this drops everything before window_start
        await self.cache.zremrangebyscore(key, float("-inf"), window_start - 1)
        count = await self.cache.zcard(key)
        if count >= limit:
            oldest = await self.cache.zoldest(key)
            oldest_score = int(oldest[1]) if oldest else now
            retry_after = max(1, window_seconds - (now - oldest_score))
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)
        await self.cache.zadd(key, now, member)
        # Outlive the newest entry by a second so it still counts at now - window
        await self.cache.expire(key, window_seconds + 1)
        return RateLimitDecision(allowed=True)

    async def check_rules(
        self,
        rules: Iterable[RateLimitRule],
        *,
        ip: Optional[str] = None,
        account: Optional[str] = None,
    ) -> RateLimitDecision:
        """Evaluate every rule; reject if any rejects.

        Rules whose subject value is unavailable (no account supplied) are
        skipped. The reported retry-after is the largest among rejections.
        """
        retry_after: Optional[int] = None
        for rule in rules:
            value = ip if SubjectKind(rule.subject_kind) is SubjectKind.IP else account
            if not value:
                continue
            decision = await self.check(
                rule.subject_kind, value, rule.action, rule.limit, rule.window_seconds
            )
            if not decision.allowed:
                wait = decision.retry_after_seconds or 1
                retry_after = wait if retry_after is None else max(retry_after, wait)
        if retry_after is not None:
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)
        return RateLimitDecision(allowed=True)

    async def enforce(
        self,
        rules: Iterable[RateLimitRule],
        *,
        ip: Optional[str] = None,
        account: Optional[str] = None,
    ) -> None:
        decision = await self.check_rules(rules, ip=ip, account=account)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after_seconds or 1)


# Default buckets for the account endpoints
LOGIN_RULES = (
    RateLimitRule(SubjectKind.IP, "login", limit=10, window_seconds=60),
    RateLimitRule(SubjectKind.ACCOUNT, "login", limit=5, window_seconds=300),
)
REGISTER_RULES = (RateLimitRule(SubjectKind.IP, "register", limit=5, window_seconds=60),)
VERIFY_REQUEST_RULES = (
    RateLimitRule(SubjectKind.ACCOUNT, "verify", limit=3, window_seconds=300),
)
VERIFY_RULES = (RateLimitRule(SubjectKind.IP, "verify", limit=10, window_seconds=300),)
RESET_RULES = (
    RateLimitRule(SubjectKind.IP, "reset", limit=3, window_seconds=300),
    RateLimitRule(SubjectKind.ACCOUNT, "reset", limit=3, window_seconds=300),
)
RESET_CONFIRM_RULES = (
    RateLimitRule(SubjectKind.IP, "reset_confirm", limit=10, window_seconds=300),
)
