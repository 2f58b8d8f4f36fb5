"""Double-submit cookie CSRF protection.

A readable cookie carries a random token which the client echoes in a request
header on mutating calls. The check only applies to requests that carry a
session cookie; the token is not rotated on login or logout.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.crypto import constant_time_equals, random_token
from authkernel.service.errors import ForbiddenError

logger = get_logger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CSRF_TOKEN_BYTES = 24


@dataclass(frozen=True)
class CsrfGuard:
    session_cookie_name: str = "sid"
    cookie_name: str = "csrf_token"
    header_name: str = "X-CSRF-Token"
    cookie_domain: Optional[str] = None
    cookie_secure: bool = True
    cookie_same_site: str = "lax"
    cookie_max_age_seconds: int = 60 * 60 * 24 * 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "CsrfGuard":
        return cls(
            session_cookie_name=settings.session_cookie_name,
            cookie_name=settings.csrf_cookie_name,
            header_name=settings.csrf_header_name,
            cookie_domain=settings.cookie_domain,
            cookie_secure=settings.cookie_secure,
            cookie_same_site=settings.cookie_same_site.value,
            cookie_max_age_seconds=settings.csrf_cookie_max_age_seconds,
        )

    def should_issue(self, method: str, cookies: Mapping[str, str]) -> bool:
        return method.upper() == "GET" and not cookies.get(self.cookie_name)

    def issue_token(self) -> str:
        return random_token(CSRF_TOKEN_BYTES)

    def cookie_params(self) -> Dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``; readable by scripts."""
        return {
            "key": self.cookie_name,
            "max_age": self.cookie_max_age_seconds,
            "path": "/",
            "domain": self.cookie_domain,
            "secure": self.cookie_secure,
            "httponly": False,
            "samesite": self.cookie_same_site,
        }

    def requires_check(self, method: str, cookies: Mapping[str, str]) -> bool:
        return method.upper() in MUTATING_METHODS and bool(
            cookies.get(self.session_cookie_name)
        )

    def is_valid(self, cookies: Mapping[str, str], headers: Mapping[str, str]) -> bool:
        cookie_token = cookies.get(self.cookie_name)
        header_token = headers.get(self.header_name)
        if not cookie_token or not header_token:
            return False
        return constant_time_equals(cookie_token, header_token)

    def verify(
        self, method: str, cookies: Mapping[str, str], headers: Mapping[str, str]
    ) -> None:
        """Raise :class:`ForbiddenError` when a guarded request fails the check."""
        if not self.requires_check(method, cookies):
            return
        if not self.is_valid(cookies, headers):
            logger.info(
                "csrf_rejected",
                method=method.upper(),
                has_cookie=bool(cookies.get(self.cookie_name)),
                has_header=bool(headers.get(self.header_name)),
            )
            raise ForbiddenError("missing or invalid CSRF token")
