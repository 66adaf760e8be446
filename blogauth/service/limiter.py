from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from blogauth.logging import get_logger
from blogauth.storage.base import SessionRepository
from blogauth.storage.models import RevokeReason, Session, utcnow

logger = get_logger(__name__)


class ConcurrentSessionLimiter:
    """Caps active sessions per user by revoking the oldest ones before a login.

    Blocking: the session manager runs ``enforce`` in a worker thread together
    with the other repository calls of a login.
    """

    def __init__(self, repository: SessionRepository) -> None:
        self.repository = repository

    def enforce(
        self, user_id: str, max_sessions: int, *, now: Optional[datetime] = None
    ) -> List[Session]:
        """Make room for one more session and return the sessions evicted.

        ``max_sessions <= 0`` means unlimited.
        """
        if max_sessions <= 0:
            return []
        now = now or utcnow()
        active = self.repository.list_active_sessions(user_id, now)
        # repositories already order this way; sort again so ties stay deterministic
        active.sort(key=lambda s: (s.created_at, s.id))
        allowed_existing = max_sessions - 1
        excess = len(active) - allowed_existing
        if excess <= 0:
            return []
        evicted: List[Session] = []
        for session in active[:excess]:
            if self.repository.revoke_session(session.id, RevokeReason.EVICTED.value):
                evicted.append(session)
        logger.info(
            "sessions_evicted",
            user_id=user_id,
            evicted=[s.id for s in evicted],
            max_sessions=max_sessions,
        )
        return evicted
