"""FastAPI dependencies wiring requests to the runtime services."""

from __future__ import annotations

from ipaddress import ip_address
from typing import Callable, Optional

from fastapi import Depends, Request

from authkernel.service.errors import AuthenticationError
from authkernel.service.rate_limit import RateLimitRule
from authkernel.service.runtime import Runtime, get_runtime
from authkernel.storage.models import ClientContext, Principal

FALLBACK_IP = "0.0.0.0"


def normalize_ip(raw: Optional[str]) -> Optional[str]:
    """Return a canonical address string, or None if ``raw`` is not an IP."""
    if not raw:
        return None
    candidate = raw.strip()
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    try:
        addr = ip_address(candidate)
    except ValueError:
        return None
    mapped = getattr(addr, "ipv4_mapped", None)
    if mapped is not None:
        addr = mapped
    if addr.version == 6 and addr.is_loopback:
        return "127.0.0.1"
    return str(addr)


def client_ip(request: Request) -> str:
    """First valid ``X-Forwarded-For`` hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    for hop in forwarded.split(","):
        normalized = normalize_ip(hop)
        if normalized:
            return normalized
    peer = request.client.host if request.client else None
    return normalize_ip(peer) or FALLBACK_IP


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip=client_ip(request), user_agent=request.headers.get("user-agent", "")
    )


def get_runtime_dep() -> Runtime:
    return get_runtime()


async def get_optional_principal(
    request: Request, runtime: Runtime = Depends(get_runtime_dep)
) -> Optional[Principal]:
    session_id = request.cookies.get(runtime.settings.session_cookie_name)
    return await runtime.sessions.resolve_principal(session_id)


async def get_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise AuthenticationError("unauthorized")
    return principal


def require_roles(*roles: str) -> Callable:
    """Dependency granting access when the principal holds any of ``roles``."""

    async def dependency(
        principal: Principal = Depends(get_principal),
        runtime: Runtime = Depends(get_runtime_dep),
    ) -> Principal:
        runtime.rbac.require(principal.subject_id, roles)
        return principal

    return dependency


def rate_limit(*rules: RateLimitRule) -> Callable:
    """IP-keyed limits checked before the handler runs.

    Account-keyed rules need the request body, so handlers enforce those
    themselves once the payload is parsed.
    """

    async def dependency(
        client: ClientContext = Depends(get_client_context),
        runtime: Runtime = Depends(get_runtime_dep),
    ) -> None:
        await runtime.rate_limiter.enforce(rules, ip=client.ip)

    return dependency
