from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response

from authkernel.api.cookies import clear_session_cookie, set_session_cookie
from authkernel.api.deps import (
    get_client_context,
    get_principal,
    get_runtime_dep,
    rate_limit,
)
from authkernel.api.schemas import (
    CredentialsRequest,
    Envelope,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegistrationResponse,
    SessionSummaryResponse,
    UserResponse,
    VerifyEmailRequest,
)
from authkernel.service.auth import AccountService
from authkernel.service.errors import BackendUnavailableError
from authkernel.service.rate_limit import (
    LOGIN_RULES,
    REGISTER_RULES,
    RESET_CONFIRM_RULES,
    RESET_RULES,
    VERIFY_REQUEST_RULES,
    VERIFY_RULES,
)
from authkernel.service.runtime import Runtime
from authkernel.storage.models import ClientContext, Principal

router = APIRouter(prefix="/auth")


def _accounts(runtime: Runtime) -> AccountService:
    if runtime.accounts is None:
        raise BackendUnavailableError("account store not configured")
    return runtime.accounts


@router.post("/register", status_code=201, dependencies=[Depends(rate_limit(*REGISTER_RULES))])
async def register(
    body: RegisterRequest,
    response: Response,
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Envelope:
    result = await _accounts(runtime).register(body.email, body.password, client)
    if result.session_id:
        set_session_cookie(response, runtime.settings, result.session_id)
    response.status_code = result.status_code
    data = RegistrationResponse(
        id=result.user.id,
        email=result.user.email,
        email_verified=result.user.email_verified,
        requires_verification=result.requires_verification,
        verification_sent=result.verification_sent,
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/login", dependencies=[Depends(rate_limit(*LOGIN_RULES))])
async def login(
    body: CredentialsRequest,
    response: Response,
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Envelope:
    await runtime.rate_limiter.enforce(LOGIN_RULES, account=body.email)
    result = await _accounts(runtime).login(body.email, body.password, client)
    set_session_cookie(response, runtime.settings, result.session_id)
    data = UserResponse(
        id=result.user.id, email=result.user.email, email_verified=result.user.email_verified
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/logout", status_code=204)
async def logout(
    principal: Principal = Depends(get_principal),
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    await _accounts(runtime).logout(principal, client)
    clear_session_cookie(response, runtime.settings)
    return response


@router.get("/me")
async def me(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Envelope:
    user = runtime.store.get_user(principal.subject_id) if runtime.store else None
    data = UserResponse(
        id=principal.subject_id,
        email=user.email if user else (principal.email or ""),
        email_verified=bool(user and user.email_verified),
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/request-verify", status_code=204)
async def request_verify(
    principal: Principal = Depends(get_principal),
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    await runtime.rate_limiter.enforce(VERIFY_REQUEST_RULES, account=principal.email)
    await _accounts(runtime).request_email_verification(principal, client)
    return response


@router.post("/verify", status_code=204, dependencies=[Depends(rate_limit(*VERIFY_RULES))])
async def verify(
    body: VerifyEmailRequest,
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    session_id = await _accounts(runtime).verify_email(body.token, client)
    if session_id:
        set_session_cookie(response, runtime.settings, session_id)
    return response


@router.post("/request-reset", status_code=204, dependencies=[Depends(rate_limit(*RESET_RULES))])
async def request_reset(
    body: PasswordResetRequest,
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    await runtime.rate_limiter.enforce(RESET_RULES, account=body.email)
    await _accounts(runtime).request_password_reset(body.email, client)
    return response


@router.post(
    "/reset-password", status_code=204, dependencies=[Depends(rate_limit(*RESET_CONFIRM_RULES))]
)
async def reset_password(
    body: PasswordResetConfirm,
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    await _accounts(runtime).reset_password(body.token, body.password, client)
    return response


@router.get("/sessions")
async def list_sessions(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Envelope:
    summaries = await runtime.sessions.list_for_subject(principal.subject_id)
    data: List[dict] = [
        SessionSummaryResponse(
            id=s.id,
            created_at=s.created_at,
            user_agent=s.user_agent,
            expires_at=s.expires_at,
            current=s.id == principal.session_id,
        ).model_dump(mode="json")
        for s in summaries
    ]
    return Envelope(status="ok", data=data)


@router.delete("/sessions/{session_id}", status_code=204)
async def revoke_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    await _accounts(runtime).revoke_session(principal, session_id, client)
    if session_id == principal.session_id:
        clear_session_cookie(response, runtime.settings)
    return response


@router.post("/sessions/revoke-all", status_code=204)
async def revoke_all_sessions(
    keep_current: bool = True,
    principal: Principal = Depends(get_principal),
    client: ClientContext = Depends(get_client_context),
    runtime: Runtime = Depends(get_runtime_dep),
) -> Response:
    response = Response(status_code=204)
    await _accounts(runtime).revoke_all_sessions(principal, client, keep_current=keep_current)
    if not keep_current:
        clear_session_cookie(response, runtime.settings)
    return response
