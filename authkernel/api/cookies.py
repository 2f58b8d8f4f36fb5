from __future__ import annotations

from fastapi import Response

from authkernel.config import Settings


def set_session_cookie(response: Response, settings: Settings, session_id: str) -> None:
    """HTTP-only session cookie living as long as the cached session."""
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        max_age=settings.session_ttl_seconds,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_same_site.value,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_same_site.value,
    )
