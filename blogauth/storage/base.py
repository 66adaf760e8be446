from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from blogauth.storage.models import (
    OneTimeToken,
    Role,
    Session,
    TokenPurpose,
    User,
)


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.VIEWER,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def set_active(self, user_id: str, active: bool) -> Optional[User]: ...

    def update_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def record_login(self, user_id: str, at: datetime) -> Optional[User]: ...


class SessionRepository(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_access_digest(self, digest: str) -> Optional[Session]: ...

    def get_session_by_refresh_digest(self, digest: str) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        """Active, unexpired sessions ordered by (created_at, id) ascending."""
        ...

    def update_session(
        self, session: Session, *, expected_refresh_digest: Optional[str] = None
    ) -> bool:
        """Persist token/context fields of ``session``.

        With ``expected_refresh_digest`` the write only happens while the stored
        row is active and still carries that digest; returns False otherwise.
        """
        ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def revoke_session(self, session_id: str, reason: str) -> bool: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        reason: str,
    ) -> int: ...


class OneTimeTokenStore(Protocol):
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_one_time_token(
        self, digest: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[OneTimeToken]:
        """Atomically mark a matching unused, unexpired token as used and return it."""
        ...

    def invalidate_one_time_tokens(self, user_id: str, purpose: TokenPurpose) -> int: ...


class AuthStore(UserStore, SessionRepository, OneTimeTokenStore, Protocol):
    """Everything the auth services need from persistence."""


class RevocationCache(Protocol):
    async def revoke_token(self, digest: str, ttl_seconds: int) -> None: ...

    async def is_token_revoked(self, digest: str) -> bool: ...


__all__ = [
    "AuthStore",
    "OneTimeTokenStore",
    "RevocationCache",
    "SessionRepository",
    "UserStore",
]
