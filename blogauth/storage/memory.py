from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from blogauth.logging import get_logger
from blogauth.storage.errors import ConstraintViolation, StorageUnavailable
from blogauth.storage.models import (
    OneTimeToken,
    Role,
    Session,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for development and tests.

    When ``fs_root`` is given, state is snapshotted to
    ``<fs_root>/state/auth_store.json`` after every write and reloaded on start.
    Returned records are copies so callers cannot mutate stored state in place.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        # RLock so helpers can nest inside a locked section
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: Role = Role.VIEWER,
        is_active: bool = True,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == normalized_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                username=username,
                password_hash=password_hash,
                role=Role(role),
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized_email), None
            )
            return replace(user) if user else None

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    def set_active(self, user_id: str, active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=active)

    def update_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, role=Role(role))

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, email_verified=True)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, last_login_at=at)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_access_digest(self, digest: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.access_digest == digest), None
            )
            return replace(sess) if sess else None

    def get_session_by_refresh_digest(self, digest: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_digest == digest), None
            )
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_usable(now)
            ]
        return sorted(active, key=lambda s: (s.created_at, s.id))

    def update_session(
        self, session: Session, *, expected_refresh_digest: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            stored = self.sessions.get(session.id)
            if not stored:
                return False
            if expected_refresh_digest is not None and (
                not stored.active or stored.refresh_digest != expected_refresh_digest
            ):
                return False
            self.sessions[session.id] = replace(
                stored,
                access_digest=session.access_digest,
                refresh_digest=session.refresh_digest,
                expires_at=session.expires_at,
                ip_addr=session.ip_addr,
                user_agent=session.user_agent,
                last_activity_at=session.last_activity_at,
                updated_at=utcnow(),
            )
            self._persist_state()
            return True

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            stored = self.sessions.get(session_id)
            if not stored:
                return
            self.sessions[session_id] = replace(
                stored, last_activity_at=at, updated_at=at
            )
            self._persist_state()

    def _revoke_locked(self, session_id: str, reason: str, now: datetime) -> bool:
        stored = self.sessions.get(session_id)
        if not stored or not stored.active:
            return False
        self.sessions[session_id] = replace(
            stored, active=False, revoked_at=now, revoke_reason=reason, updated_at=now
        )
        return True

    def revoke_session(self, session_id: str, reason: str) -> bool:
        with self._data_lock:
            revoked = self._revoke_locked(session_id, reason, utcnow())
            if revoked:
                self._persist_state()
            return revoked

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        reason: str,
    ) -> int:
        now = utcnow()
        with self._data_lock:
            targets = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.active and sid != except_session_id
            ]
            count = sum(1 for sid in targets if self._revoke_locked(sid, reason, now))
            if count:
                self._persist_state()
            return count

    # one-time tokens
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": token.user_id}
                )
            self.one_time_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def consume_one_time_token(
        self, digest: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            match = next(
                (
                    t
                    for t in self.one_time_tokens.values()
                    if t.token_digest == digest
                    and t.purpose == purpose
                    and t.is_redeemable(now)
                ),
                None,
            )
            if not match:
                return None
            used = replace(match, used_at=now)
            self.one_time_tokens[used.id] = used
            self._persist_state()
            return replace(used)

    def invalidate_one_time_tokens(self, user_id: str, purpose: TokenPurpose) -> int:
        now = utcnow()
        with self._data_lock:
            pending = [
                t
                for t in self.one_time_tokens.values()
                if t.user_id == user_id and t.purpose == purpose and t.used_at is None
            ]
            for token in pending:
                self.one_time_tokens[token.id] = replace(token, used_at=now)
            if pending:
                self._persist_state()
            return len(pending)

    # snapshot persistence
    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "one_time_tokens": [
                self._serialize_one_time_token(t) for t in self.one_time_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StorageUnavailable(
                "failed to persist in-memory state", {"error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.one_time_tokens = {
            t["id"]: self._deserialize_one_time_token(t)
            for t in data.get("one_time_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            one_time_tokens=len(self.one_time_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "role": user.role.value,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data.get("password_hash", ""),
            role=Role(data.get("role", Role.VIEWER.value)),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_digest": session.access_digest,
            "refresh_digest": session.refresh_digest,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "active": session.active,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoke_reason": session.revoke_reason,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_digest=data["access_digest"],
            refresh_digest=data["refresh_digest"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at")),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            active=data.get("active", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoke_reason=data.get("revoke_reason"),
        )

    def _serialize_one_time_token(self, token: OneTimeToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_digest": token.token_digest,
            "purpose": token.purpose.value,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "used_at": self._serialize_datetime(token.used_at),
        }

    def _deserialize_one_time_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            id=data["id"],
            user_id=data["user_id"],
            token_digest=data["token_digest"],
            purpose=TokenPurpose(data["purpose"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )


class MemoryCache:
    """Process-local revocation cache used when Redis is unavailable.

    Entries expire by monotonic deadline; expired keys are dropped lazily on read.
    Only safe for a single process.
    """

    def __init__(self) -> None:
        self._revoked: Dict[str, float] = {}
        self._lock = threading.Lock()

    async def revoke_token(self, digest: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._revoked[digest] = time.monotonic() + ttl_seconds

    async def is_token_revoked(self, digest: str) -> bool:
        with self._lock:
            deadline = self._revoked.get(digest)
            if deadline is None:
                return False
            if deadline <= time.monotonic():
                self._revoked.pop(digest, None)
                return False
            return True

    async def close(self) -> None:
        with self._lock:
            self._revoked.clear()
