from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, List, Optional, Set

from blogauth.config import Settings
from blogauth.logging import bind_auth_context, get_logger
from blogauth.service.calls import call_store
from blogauth.service.errors import (
    AccountInactiveError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidTokenError,
    NoTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from blogauth.service.hijack import HijackDetector, RequestContext
from blogauth.service.limiter import ConcurrentSessionLimiter
from blogauth.service.passwords import CredentialHasher
from blogauth.service.tokens import TokenClaims, TokenCodec, TokenKind
from blogauth.storage.base import AuthStore, RevocationCache
from blogauth.storage.errors import ConstraintViolation
from blogauth.storage.models import RevokeReason, Session, User, utcnow

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    ip_mismatch: bool = False


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair


class SessionManager:
    """Login, refresh, logout and per-request authentication.

    All durable state lives in the store and the revocation cache. Store calls
    run in worker threads under ``repository_timeout_seconds`` and fail closed;
    revocation reads run under ``cache_timeout_seconds`` and fail open.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RevocationCache],
        settings: Settings,
        *,
        hasher: CredentialHasher,
        codec: TokenCodec,
        limiter: Optional[ConcurrentSessionLimiter] = None,
        detector: Optional[HijackDetector] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher
        self.codec = codec
        self.limiter = limiter or ConcurrentSessionLimiter(store)
        self.detector = detector or HijackDetector(
            settings.hijack_mode, settings.ip_allowlist
        )
        self._background: Set[asyncio.Task] = set()

    async def _store(self, op: str, fn, *args: Any, **kwargs: Any):
        return await call_store(
            op, fn, *args, timeout=self.settings.repository_timeout_seconds, **kwargs
        )

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for scheduled background work (activity touches)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # token helpers
    def _issue_pair(self, user: User) -> TokenPair:
        now = utcnow()
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        claims = {"sub": user.id, "role": user.role.value}
        return TokenPair(
            access_token=self.codec.issue_access(claims, access_ttl),
            refresh_token=self.codec.issue_refresh(claims, refresh_ttl),
            access_expires_at=now + access_ttl,
            refresh_expires_at=now + refresh_ttl,
        )

    async def _is_revoked(self, digest: str) -> bool:
        if self.cache is None:
            return False
        try:
            return await asyncio.wait_for(
                self.cache.is_token_revoked(digest),
                timeout=self.settings.cache_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "revocation_check_timeout",
                timeout_seconds=self.settings.cache_timeout_seconds,
            )
            return False
        except Exception as exc:
            # Revocation cache is an optimisation over session state; fail open
            logger.warning("revocation_check_failed", error=str(exc))
            return False

    async def _blacklist(self, digest: str, claims: TokenClaims) -> None:
        ttl = claims.remaining_seconds()
        if self.cache is None or ttl <= 0:
            return
        try:
            await asyncio.wait_for(
                self.cache.revoke_token(digest, ttl),
                timeout=self.settings.cache_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "access_token_blacklist_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # login
    async def login(
        self, email: str, password: str, ctx: Optional[RequestContext] = None
    ) -> LoginResult:
        ctx = ctx or RequestContext()
        user = await self._store("get_user_by_email", self.store.get_user_by_email, email)
        if user is None:
            await asyncio.to_thread(self.hasher.verify_dummy, password)
            logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        verified = await asyncio.to_thread(
            self.hasher.verify, password, user.password_hash
        )
        if not verified:
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AccountInactiveError()

        if self.hasher.needs_rehash(user.password_hash):
            new_hash = await asyncio.to_thread(self.hasher.hash, password)
            await self._store("update_password", self.store.update_password, user.id, new_hash)
            logger.info("password_rehashed", user_id=user.id)

        evicted = await self._store(
            "enforce_session_limit",
            self.limiter.enforce,
            user.id,
            self.settings.max_concurrent_sessions,
        )
        tokens = self._issue_pair(user)
        session = Session.new(
            user.id,
            access_digest=self.hasher.digest_token(tokens.access_token),
            refresh_digest=self.hasher.digest_token(tokens.refresh_token),
            expires_at=tokens.refresh_expires_at,
            ip_addr=ctx.ip_addr,
            user_agent=ctx.user_agent,
        )
        try:
            await self._store("create_session", self.store.create_session, session)
        except ConstraintViolation as exc:
            logger.error("session_create_failed", user_id=user.id, error=exc.message)
            raise InternalError() from exc
        user = (
            await self._store(
                "record_login", self.store.record_login, user.id, session.created_at
            )
            or user
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            evicted=len(evicted),
        )
        return LoginResult(user=user, session=session, tokens=tokens)

    # refresh
    async def refresh(
        self, refresh_token: str, ctx: Optional[RequestContext] = None
    ) -> LoginResult:
        """Rotate the token pair of the session that owns ``refresh_token``.

        Every rejection is ``InvalidTokenError``. Two concurrent refreshes with
        the same token race on a conditional update; exactly one wins.
        """
        if not refresh_token:
            raise InvalidTokenError()
        try:
            claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        except TokenExpiredError:
            raise InvalidTokenError() from None
        presented = self.hasher.digest_token(refresh_token)
        session = await self._store(
            "get_session_by_refresh_digest",
            self.store.get_session_by_refresh_digest,
            presented,
        )
        now = utcnow()
        if session is None or not session.is_usable(now) or session.user_id != claims.sub:
            logger.info("refresh_rejected", reason="session")
            raise InvalidTokenError()
        user = await self._store("get_user", self.store.get_user, session.user_id)
        if user is None or not user.is_active:
            logger.info("refresh_rejected", reason="user", user_id=session.user_id)
            raise InvalidTokenError()

        tokens = self._issue_pair(user)
        session.access_digest = self.hasher.digest_token(tokens.access_token)
        session.refresh_digest = self.hasher.digest_token(tokens.refresh_token)
        session.expires_at = tokens.refresh_expires_at
        session.last_activity_at = now
        if ctx is not None:
            session.ip_addr = ctx.ip_addr or session.ip_addr
            session.user_agent = ctx.user_agent or session.user_agent
        rotated = await self._store(
            "update_session",
            self.store.update_session,
            session,
            expected_refresh_digest=presented,
        )
        if not rotated:
            logger.warning("refresh_stale", session_id=session.id, user_id=user.id)
            raise InvalidTokenError()
        logger.info("session_refreshed", session_id=session.id, user_id=user.id)
        return LoginResult(user=user, session=session, tokens=tokens)

    # logout
    async def logout(self, access_token: Optional[str]) -> bool:
        """Revoke the session behind ``access_token`` and blacklist the token.

        Returns whether an active session was revoked. An expired token still
        ends its session but needs no blacklist entry.
        """
        if not access_token:
            raise NoTokenError()
        claims: Optional[TokenClaims]
        try:
            claims = self.codec.verify(access_token, TokenKind.ACCESS)
        except TokenExpiredError:
            claims = None
        digest = self.hasher.digest_token(access_token)
        session = await self._store(
            "get_session_by_access_digest",
            self.store.get_session_by_access_digest,
            digest,
        )
        revoked = False
        if session is not None:
            revoked = await self._store(
                "revoke_session",
                self.store.revoke_session,
                session.id,
                RevokeReason.LOGOUT.value,
            )
        if claims is not None:
            await self._blacklist(digest, claims)
        logger.info(
            "logout",
            session_id=session.id if session else None,
            revoked=revoked,
        )
        return revoked

    # per-request gate
    async def authenticate(
        self, access_token: Optional[str], ctx: Optional[RequestContext] = None
    ) -> AuthContext:
        if not access_token:
            raise NoTokenError()
        claims = self.codec.verify(access_token, TokenKind.ACCESS)
        digest = self.hasher.digest_token(access_token)
        if await self._is_revoked(digest):
            raise TokenRevokedError()

        session = await self._store(
            "get_session_by_access_digest",
            self.store.get_session_by_access_digest,
            digest,
        )
        if session is None or session.user_id != claims.sub:
            raise InvalidTokenError()
        if not session.active:
            raise TokenRevokedError()
        now = utcnow()
        if session.expires_at <= now:
            raise TokenExpiredError()
        user = await self._store("get_user", self.store.get_user, session.user_id)
        if user is None:
            raise InvalidTokenError()
        if not user.is_active:
            raise AccountInactiveError()

        verdict = self.detector.check(session, ctx)
        if verdict.violation:
            if verdict.revoke:
                await self._store(
                    "revoke_session",
                    self.store.revoke_session,
                    session.id,
                    RevokeReason.HIJACK.value,
                )
                await self._blacklist(digest, claims)
                logger.warning(
                    "session_revoked_hijack", session_id=session.id, user_id=user.id
                )
            raise ForbiddenError(detail={"reason": verdict.reason})

        self._schedule_touch(session, now)
        bind_auth_context(user.id, session.id)
        return AuthContext(
            user_id=user.id,
            role=user.role.value,
            session_id=session.id,
            ip_mismatch=verdict.ip_mismatch,
        )

    def _schedule_touch(self, session: Session, now: datetime) -> None:
        interval = timedelta(seconds=max(0, self.settings.session_touch_interval_seconds))
        last = session.last_activity_at
        if last is not None and now - last < interval:
            return
        self._spawn(self._touch(session.id, now))

    async def _touch(self, session_id: str, at: datetime) -> None:
        try:
            await self._store("touch_session", self.store.touch_session, session_id, at)
        except InternalError:
            logger.debug("session_touch_skipped", session_id=session_id)

    # bulk and targeted revocation
    async def revoke_all_except_current(
        self,
        user_id: str,
        current_token: Optional[str] = None,
        *,
        reason: RevokeReason = RevokeReason.PASSWORD_CHANGE,
    ) -> int:
        except_id = None
        if current_token:
            current = await self._store(
                "get_session_by_access_digest",
                self.store.get_session_by_access_digest,
                self.hasher.digest_token(current_token),
            )
            if current is not None and current.user_id == user_id:
                except_id = current.id
        count = await self._store(
            "revoke_user_sessions",
            self.store.revoke_user_sessions,
            user_id,
            except_id,
            reason=RevokeReason(reason).value,
        )
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            kept_session_id=except_id,
            count=count,
            reason=RevokeReason(reason).value,
        )
        return count

    async def list_sessions(self, user_id: str) -> List[Session]:
        """Active sessions of ``user_id``, newest first."""
        sessions = await self._store(
            "list_active_sessions", self.store.list_active_sessions, user_id, utcnow()
        )
        return sorted(sessions, key=lambda s: (s.created_at, s.id), reverse=True)

    async def revoke_session(
        self,
        user_id: str,
        session_id: str,
        *,
        reason: RevokeReason = RevokeReason.USER,
    ) -> bool:
        session = await self._store("get_session", self.store.get_session, session_id)
        if session is None or session.user_id != user_id:
            return False
        revoked = await self._store(
            "revoke_session",
            self.store.revoke_session,
            session_id,
            RevokeReason(reason).value,
        )
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return revoked
