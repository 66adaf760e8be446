from __future__ import annotations

import hashlib
import re
import secrets
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from blogauth.config import Settings
from blogauth.logging import get_logger
from blogauth.service.errors import ValidationError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
STRONG_PASSWORD_LENGTH = 12
_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_COMMON_PATTERNS = (
    "password",
    "123456",
    "qwerty",
    "admin",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "password123",
)


class CredentialHasher:
    """argon2id password hashing plus SHA-256 digests for random tokens.

    Passwords are low-entropy and get the slow, salted hash. Session and
    one-time token values are 256-bit random strings, so a plain SHA-256 digest
    is enough and keeps lookups by digest possible.
    """

    def __init__(self, settings: Settings) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def verify(self, secret: str, digest: str | None) -> bool:
        """Return True only when ``secret`` matches ``digest``.

        A wrong secret and a corrupt or empty digest both yield False.
        """
        if not digest:
            self._burn(secret)
            return False
        try:
            return self._pwd_hasher.verify(digest, secret)
        except InvalidHash:
            logger.warning("password_hash_malformed")
            self._burn(secret)
            return False
        except VerificationError:
            return False

    def verify_dummy(self, secret: str) -> bool:
        self._burn(secret)
        return False

    def _burn(self, secret: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, secret)
        except VerificationError:
            pass

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    @staticmethod
    def digest_token(raw: str) -> str:
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_token() -> str:
        return secrets.token_urlsafe(32)


def password_policy_errors(password: str, *, strong: bool) -> List[str]:
    if not strong:
        if len(password) < MIN_PASSWORD_LENGTH:
            return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"]
        return []
    errors: List[str] = []
    if len(password) < STRONG_PASSWORD_LENGTH:
        errors.append(
            f"Password must be at least {STRONG_PASSWORD_LENGTH} characters long"
        )
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    lowered = password.lower()
    if any(pattern in lowered for pattern in _COMMON_PATTERNS):
        errors.append("Password contains common patterns and is not secure")
    return errors


def validate_password_strength(password: str, *, strong: bool) -> None:
    errors = password_policy_errors(password, strong=strong)
    if errors:
        raise ValidationError("password does not meet policy", detail={"errors": errors})
