from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    AUTHOR = "AUTHOR"
    MODERATOR = "MODERATOR"
    VIEWER = "VIEWER"


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFY = "EMAIL_VERIFY"


class RevokeReason(str, Enum):
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    EVICTED = "evicted"
    HIJACK = "hijack"
    ADMIN = "admin"
    USER = "user"


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str = field(default="", repr=False)
    role: Role = Role.VIEWER
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Session:
    """One login: a token pair bound to a user, an IP and a user agent.

    Token values are never stored; ``access_digest`` and ``refresh_digest`` are
    SHA-256 digests used for lookup.
    """

    id: str
    user_id: str
    access_digest: str
    refresh_digest: str
    created_at: datetime
    expires_at: datetime
    updated_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    active: bool = True
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        access_digest: str,
        refresh_digest: str,
        expires_at: datetime,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_digest=access_digest,
            refresh_digest=refresh_digest,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
            expires_at=expires_at,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.active and self.expires_at > now


@dataclass
class OneTimeToken:
    id: str
    user_id: str
    token_digest: str
    purpose: TokenPurpose
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, user_id: str, token_digest: str, purpose: TokenPurpose, ttl: timedelta
    ) -> "OneTimeToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_digest=token_digest,
            purpose=purpose,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_redeemable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now
