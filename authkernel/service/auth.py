"""Account flows built on the session, password and audit components."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from authkernel.config import Settings
from authkernel.logging import get_logger, token_prefix
from authkernel.service.audit import AuditRecorder
from authkernel.service.crypto import hash_value, random_token
from authkernel.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
)
from authkernel.service.passwords import PASSWORD_ALGO, PasswordVerifier
from authkernel.service.sessions import SessionManager
from authkernel.storage.common import AuthStore, normalize_email
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    AuditEventKind,
    ClientContext,
    OneTimeToken,
    Principal,
    TokenPurpose,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
INVALID_TOKEN = "invalid token"


class Mailer(Protocol):
    async def send_verify_email(self, email: str, token: str) -> None: ...

    async def send_password_reset(self, email: str, token: str) -> None: ...


class LoggingMailer:
    """Development mailer: records that a message would have been sent."""

    async def send_verify_email(self, email: str, token: str) -> None:
        logger.info("mail_verify_email", email=email, token_prefix=token_prefix(token))

    async def send_password_reset(self, email: str, token: str) -> None:
        logger.info("mail_password_reset", email=email, token_prefix=token_prefix(token))


@dataclass
class RegistrationResult:
    user: User
    requires_verification: bool
    verification_sent: bool
    session_id: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 202 if self.requires_verification else 201


@dataclass
class LoginResult:
    user: User
    session_id: str


class AccountService:
    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        passwords: PasswordVerifier,
        audit: AuditRecorder,
        settings: Settings,
        *,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.passwords = passwords
        self.audit = audit
        self.settings = settings
        self.mailer: Mailer = mailer or LoggingMailer()

    @property
    def verification_required(self) -> bool:
        return not self.settings.disable_email_verification

    async def _send_mail(self, kind: str, email: str, token: str) -> None:
        try:
            if kind == "verify":
                await self.mailer.send_verify_email(email, token)
            else:
                await self.mailer.send_password_reset(email, token)
        except Exception as exc:
            logger.warning("mail_send_failed", mail_kind=kind, error=str(exc))

    def _issue_token(self, user_id: str, purpose: TokenPurpose, ttl_minutes: int) -> str:
        token = random_token(32)
        self.store.create_one_time_token(
            OneTimeToken.new(user_id, purpose, hash_value(token), ttl_minutes)
        )
        return token

    def _usable_token(self, token: str, purpose: TokenPurpose) -> OneTimeToken:
        record = self.store.get_one_time_token(hash_value(token or ""), purpose)
        if not record or not record.is_usable():
            raise BadRequestError(INVALID_TOKEN)
        return record

    async def _send_verification(self, user: User, client: ClientContext) -> None:
        token = self._issue_token(
            user.id,
            TokenPurpose.EMAIL_VERIFICATION,
            self.settings.email_verification_ttl_minutes,
        )
        await self._send_mail("verify", user.email, token)
        await self.audit.record(AuditEventKind.VERIFY_SENT, user.id, client)

    async def register(
        self, email: str, password: str, client: ClientContext
    ) -> RegistrationResult:
        normalized = normalize_email(email)
        if not normalized or self.store.get_user_by_email(normalized):
            raise BadRequestError(INVALID_CREDENTIALS)
        password_hash = self.passwords.hash(password)
        try:
            user = self.store.create_user(normalized)
        except ConstraintViolation:
            raise BadRequestError(INVALID_CREDENTIALS)
        self.store.save_password(user.id, password_hash, PASSWORD_ALGO)
        await self.audit.record(AuditEventKind.REGISTER, user.id, client)

        send_verification = (
            self.verification_required and self.settings.auto_send_verification_on_register
        )
        if send_verification:
            await self._send_verification(user, client)

        requires_verification = (
            self.verification_required and not self.settings.session_before_verification
        )
        session_id = None
        if not requires_verification:
            session_id = await self.sessions.create(user.id, client)
        logger.info("user_registered", user_id=user.id, requires_verification=requires_verification)
        return RegistrationResult(
            user=user,
            requires_verification=requires_verification,
            verification_sent=send_verification,
            session_id=session_id,
        )

    async def login(self, email: str, password: str, client: ClientContext) -> LoginResult:
        user = self.store.get_user_by_email(normalize_email(email))
        record = self.store.get_password_record(user.id) if user else None
        stored_hash = None
        if record and record[1] == PASSWORD_ALGO:
            stored_hash = record[0]
        # Always verify so unknown accounts cost the same as wrong passwords
        ok = self.passwords.verify(stored_hash, password or "")

        if not user or not ok or not user.is_active:
            await self.audit.record(
                AuditEventKind.LOGIN_FAIL, user.id if user else None, client
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.verification_required and not user.email_verified:
            await self.audit.record(AuditEventKind.LOGIN_FAIL_NOT_VERIFIED, user.id, client)
            raise ForbiddenError("email verification required")

        if stored_hash and self.passwords.needs_rehash(stored_hash):
            try:
                self.store.save_password(user.id, self.passwords.hash(password), PASSWORD_ALGO)
                logger.info("password_rehashed", user_id=user.id)
            except Exception as exc:
                logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))

        session_id = await self.sessions.create(user.id, client)
        await self.audit.record(AuditEventKind.LOGIN_SUCCESS, user.id, client)
        return LoginResult(user=user, session_id=session_id)

    async def logout(self, principal: Principal, client: ClientContext) -> None:
        await self.sessions.revoke(principal.session_id)
        await self.audit.record(AuditEventKind.LOGOUT, principal.subject_id, client)

    async def request_email_verification(
        self, principal: Principal, client: ClientContext
    ) -> None:
        user = self.store.get_user(principal.subject_id)
        if not user:
            raise AuthenticationError("unauthorized")
        if user.email_verified:
            return
        await self._send_verification(user, client)

    async def verify_email(self, token: str, client: ClientContext) -> Optional[str]:
        """Mark the address verified; returns a new session id when one is issued."""
        record = self._usable_token(token, TokenPurpose.EMAIL_VERIFICATION)
        if not self.store.consume_one_time_token(record.id, discard_siblings=True):
            raise BadRequestError(INVALID_TOKEN)
        user = self.store.mark_email_verified(record.user_id)
        await self.audit.record(AuditEventKind.VERIFY_OK, record.user_id, client)
        if not self.verification_required or not user or not user.is_active:
            return None
        session_id = await self.sessions.create(user.id, client)
        await self.audit.record(
            AuditEventKind.SESSION_CREATED_POST_VERIFICATION, user.id, client
        )
        return session_id

    async def request_password_reset(self, email: str, client: ClientContext) -> None:
        """Issue a reset token if the account exists; silent either way."""
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            return
        token = self._issue_token(
            user.id, TokenPurpose.PASSWORD_RESET, self.settings.password_reset_ttl_minutes
        )
        await self._send_mail("reset", user.email, token)
        await self.audit.record(AuditEventKind.RESET_REQ, user.id, client)

    async def reset_password(
        self, token: str, new_password: str, client: ClientContext
    ) -> None:
        record = self._usable_token(token, TokenPurpose.PASSWORD_RESET)
        password_hash = self.passwords.hash(new_password)
        if not self.store.consume_one_time_token(record.id):
            raise BadRequestError(INVALID_TOKEN)
        self.store.save_password(record.user_id, password_hash, PASSWORD_ALGO)
        revoked = await self.sessions.revoke_all(record.user_id)
        await self.audit.record(
            AuditEventKind.RESET_OK, record.user_id, client, {"sessions_revoked": revoked}
        )

    async def revoke_all_sessions(
        self, principal: Principal, client: ClientContext, *, keep_current: bool = False
    ) -> int:
        revoked = await self.sessions.revoke_all(
            principal.subject_id, principal.session_id if keep_current else None
        )
        await self.audit.record(
            AuditEventKind.SESSIONS_REVOKED_ALL,
            principal.subject_id,
            client,
            {"count": revoked},
        )
        return revoked

    async def revoke_session(
        self, principal: Principal, session_id: str, client: ClientContext
    ) -> None:
        """Revoke one of the caller's own sessions; foreign ids are not found."""
        owned = {s.id for s in await self.sessions.list_for_subject(principal.subject_id)}
        if session_id not in owned:
            raise NotFoundError("session not found")
        await self.sessions.revoke(session_id)
        await self.audit.record(
            AuditEventKind.SESSION_REVOKED,
            principal.subject_id,
            client,
            {"session_prefix": token_prefix(session_id)},
        )
