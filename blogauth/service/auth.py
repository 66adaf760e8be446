from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable, List, Optional, Set, Union

from blogauth.config import Settings
from blogauth.logging import get_logger
from blogauth.service.calls import call_store
from blogauth.service.email import Notifier
from blogauth.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOneTimeTokenError,
    ValidationError,
)
from blogauth.service.hijack import RequestContext
from blogauth.service.one_time_tokens import OneTimeTokenService
from blogauth.service.passwords import CredentialHasher, validate_password_strength
from blogauth.service.sessions import AuthContext, LoginResult, SessionManager
from blogauth.service.tokens import TokenCodec
from blogauth.storage.base import AuthStore, RevocationCache
from blogauth.storage.errors import ConstraintViolation
from blogauth.storage.models import RevokeReason, Role, Session, TokenPurpose, User

logger = get_logger(__name__)

PASSWORD_RESET_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)


class AuthService:
    """Entry point for the route layer: accounts, sessions and one-time tokens.

    Every public coroutine either returns its payload or raises one of the
    ``ServiceError`` subclasses in ``blogauth.service.errors``.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RevocationCache],
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        hasher: Optional[CredentialHasher] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self.hasher = hasher or CredentialHasher(settings)
        self.codec = codec or TokenCodec(settings)
        self.sessions = SessionManager(
            store, cache, settings, hasher=self.hasher, codec=self.codec
        )
        self.one_time_tokens = OneTimeTokenService(
            store, self.hasher, timeout_seconds=settings.repository_timeout_seconds
        )
        self._pending: Set[asyncio.Task] = set()

    async def _store(self, op: str, fn, *args: Any, **kwargs: Any):
        return await call_store(
            op, fn, *args, timeout=self.settings.repository_timeout_seconds, **kwargs
        )

    def _check_password(self, password: str) -> None:
        validate_password_strength(
            password or "", strong=self.settings.require_strong_passwords
        )

    async def _get_user_or_invalid(self, user_id: str) -> User:
        user = await self._store("get_user", self.store.get_user, user_id)
        if user is None:
            raise ValidationError("unknown user", detail={"user_id": user_id})
        return user

    # notifications
    def _notify(self, kind: str, email: str, raw: str) -> None:
        if self.notifier is None:
            logger.warning("notifier_missing", kind=kind)
            return
        send = getattr(self.notifier, kind)
        task = asyncio.ensure_future(self._deliver(send, email, raw))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, send: Callable[[str, str], bool], email: str, raw: str) -> None:
        try:
            delivered = await asyncio.to_thread(send, email, raw)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=send.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("notification_not_delivered", kind=send.__name__)

    async def drain(self) -> None:
        """Wait for pending notifications and session activity writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.sessions.drain()

    # accounts
    async def register(self, email: str, username: str, password: str) -> User:
        email = (email or "").strip().lower()
        username = (username or "").strip()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError("invalid email")
        if not username:
            raise ValidationError("username is required")
        self._check_password(password)
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = await self._store(
                "create_user",
                self.store.create_user,
                email,
                username,
                password_hash,
                role=Role.VIEWER,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id)
        return user

    async def set_user_active(self, user_id: str, active: bool) -> User:
        user = await self._store("set_active", self.store.set_active, user_id, active)
        if user is None:
            raise ValidationError("unknown user", detail={"user_id": user_id})
        if not active:
            await self.sessions.revoke_all_except_current(
                user_id, reason=RevokeReason.ADMIN
            )
        logger.info("user_active_changed", user_id=user_id, active=active)
        return user

    async def set_user_role(self, user_id: str, role: Union[Role, str]) -> User:
        try:
            new_role = Role(role)
        except ValueError:
            raise ValidationError("unknown role", detail={"role": str(role)}) from None
        user = await self._store("update_role", self.store.update_role, user_id, new_role)
        if user is None:
            raise ValidationError("unknown user", detail={"user_id": user_id})
        # Tokens carry the role; force re-login so no token holds the old one
        await self.sessions.revoke_all_except_current(user_id, reason=RevokeReason.ADMIN)
        logger.info("user_role_changed", user_id=user_id, role=new_role.value)
        return user

    # sessions
    async def login(
        self, email: str, password: str, ctx: Optional[RequestContext] = None
    ) -> LoginResult:
        return await self.sessions.login(email, password, ctx)

    async def refresh(
        self, refresh_token: str, ctx: Optional[RequestContext] = None
    ) -> LoginResult:
        return await self.sessions.refresh(refresh_token, ctx)

    async def logout(self, access_token: Optional[str]) -> bool:
        return await self.sessions.logout(access_token)

    async def authenticate(
        self, access_token: Optional[str], ctx: Optional[RequestContext] = None
    ) -> AuthContext:
        return await self.sessions.authenticate(access_token, ctx)

    def authorize(self, ctx: AuthContext, *roles: Union[Role, str]) -> AuthContext:
        """Raise ``ForbiddenError`` unless ``ctx`` holds one of ``roles``.

        No roles means any authenticated caller is allowed.
        """
        if not roles:
            return ctx
        allowed = {Role(r) for r in roles}
        if Role(ctx.role) not in allowed:
            logger.info(
                "authorization_denied",
                user_id=ctx.user_id,
                role=ctx.role,
                required=sorted(r.value for r in allowed),
            )
            raise ForbiddenError()
        return ctx

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_sessions(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        return await self.sessions.revoke_session(user_id, session_id)

    # passwords
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        current_token: Optional[str] = None,
    ) -> int:
        """Replace the password and end every other session of the user.

        Returns the number of sessions revoked.
        """
        user = await self._store("get_user", self.store.get_user, user_id)
        if user is None:
            raise InvalidCredentialsError()
        verified = await asyncio.to_thread(
            self.hasher.verify, current_password or "", user.password_hash
        )
        if not verified:
            logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError()
        self._check_password(new_password)
        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        await self._store("update_password", self.store.update_password, user_id, new_hash)
        revoked = await self.sessions.revoke_all_except_current(
            user_id, current_token, reason=RevokeReason.PASSWORD_CHANGE
        )
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def request_password_reset(self, email: str) -> str:
        """Start a reset for ``email``; the reply never reveals whether it exists."""
        user = await self._store(
            "get_user_by_email", self.store.get_user_by_email, (email or "").strip()
        )
        if user is None or not user.is_active:
            logger.info("password_reset_skipped")
            return PASSWORD_RESET_MESSAGE
        raw = await self.one_time_tokens.issue(
            user.id,
            TokenPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self._notify("send_password_reset", user.email, raw)
        logger.info("password_reset_requested", user_id=user.id)
        return PASSWORD_RESET_MESSAGE

    async def confirm_password_reset(self, raw_token: str, new_password: str) -> str:
        self._check_password(new_password)
        user_id = await self.one_time_tokens.redeem(raw_token, TokenPurpose.PASSWORD_RESET)
        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        user = await self._store(
            "update_password", self.store.update_password, user_id, new_hash
        )
        if user is None:
            raise InvalidOneTimeTokenError()
        await self.sessions.revoke_all_except_current(
            user_id, reason=RevokeReason.PASSWORD_RESET
        )
        logger.info("password_reset_completed", user_id=user_id)
        return user_id

    # email verification
    async def send_email_verification(self, user_id: str) -> None:
        user = await self._get_user_or_invalid(user_id)
        if user.email_verified:
            raise ConflictError("email already verified")
        raw = await self.one_time_tokens.issue(
            user.id,
            TokenPurpose.EMAIL_VERIFY,
            timedelta(minutes=self.settings.email_verification_ttl_minutes),
        )
        self._notify("send_email_verification", user.email, raw)
        logger.info("email_verification_requested", user_id=user.id)

    async def confirm_email_verification(self, raw_token: str) -> str:
        user_id = await self.one_time_tokens.redeem(raw_token, TokenPurpose.EMAIL_VERIFY)
        user = await self._store(
            "mark_email_verified", self.store.mark_email_verified, user_id
        )
        if user is None:
            raise InvalidOneTimeTokenError()
        logger.info("email_verified", user_id=user_id)
        return user_id
