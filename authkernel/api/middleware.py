from __future__ import annotations

from fastapi import FastAPI, Request

from authkernel.api.error_handling import error_response
from authkernel.logging import get_logger, set_correlation_id
from authkernel.service.errors import ForbiddenError
from authkernel.service.runtime import get_runtime

logger = get_logger(__name__)


async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check on mutating cookie-authenticated requests.

    GET requests without a CSRF cookie receive a fresh one.
    """
    guard = get_runtime().csrf
    try:
        guard.verify(request.method, request.cookies, request.headers)
    except ForbiddenError as exc:
        return error_response(exc.status_code, exc.message, code=exc.error_code)
    response = await call_next(request)
    if guard.should_issue(request.method, request.cookies):
        response.set_cookie(value=guard.issue_token(), **guard.cookie_params())
    return response


async def add_correlation_id(request: Request, call_next):
    """Tag logs with the caller's X-Request-ID, or a generated one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


def install_middleware(app: FastAPI) -> None:
    # Last registered runs first: correlation id wraps the CSRF check
    app.middleware("http")(enforce_csrf_token)
    app.middleware("http")(add_correlation_id)
