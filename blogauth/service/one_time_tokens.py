from __future__ import annotations

from datetime import timedelta

from blogauth.logging import get_logger
from blogauth.service.calls import call_store
from blogauth.service.errors import InternalError, InvalidOneTimeTokenError
from blogauth.service.passwords import CredentialHasher
from blogauth.storage.base import OneTimeTokenStore
from blogauth.storage.errors import ConstraintViolation
from blogauth.storage.models import OneTimeToken, TokenPurpose, utcnow

logger = get_logger(__name__)


class OneTimeTokenService:
    """Single-use tokens for password reset and email verification.

    The raw value leaves this service exactly once, from ``issue``; only its
    SHA-256 digest is stored.
    """

    def __init__(
        self,
        store: OneTimeTokenStore,
        hasher: CredentialHasher,
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.timeout_seconds = timeout_seconds

    async def issue(self, user_id: str, purpose: TokenPurpose, ttl: timedelta) -> str:
        purpose = TokenPurpose(purpose)
        superseded = await call_store(
            "invalidate_one_time_tokens",
            self.store.invalidate_one_time_tokens,
            user_id,
            purpose,
            timeout=self.timeout_seconds,
        )
        raw = self.hasher.generate_token()
        token = OneTimeToken.new(user_id, self.hasher.digest_token(raw), purpose, ttl)
        try:
            await call_store(
                "create_one_time_token",
                self.store.create_one_time_token,
                token,
                timeout=self.timeout_seconds,
            )
        except ConstraintViolation as exc:
            logger.error("one_time_token_create_failed", user_id=user_id, error=exc.message)
            raise InternalError() from exc
        logger.info(
            "one_time_token_issued",
            user_id=user_id,
            purpose=purpose.value,
            expires_at=token.expires_at.isoformat(),
            superseded=superseded,
        )
        return raw

    async def redeem(self, raw: str, purpose: TokenPurpose) -> str:
        """Consume ``raw`` and return the owning user id.

        Unknown, expired, already used and wrong-purpose tokens are rejected
        alike with ``InvalidOneTimeTokenError``.
        """
        purpose = TokenPurpose(purpose)
        if not raw:
            raise InvalidOneTimeTokenError()
        consumed = await call_store(
            "consume_one_time_token",
            self.store.consume_one_time_token,
            self.hasher.digest_token(raw),
            purpose,
            utcnow(),
            timeout=self.timeout_seconds,
        )
        if consumed is None:
            logger.warning("one_time_token_rejected", purpose=purpose.value)
            raise InvalidOneTimeTokenError()
        logger.info(
            "one_time_token_redeemed", user_id=consumed.user_id, purpose=purpose.value
        )
        return consumed.user_id
