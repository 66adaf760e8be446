from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional

from blogauth.config import Settings
from blogauth.logging import get_logger
from blogauth.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    role: str
    typ: TokenKind
    iat: int
    exp: int
    jti: str
    iss: str
    aud: str

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return int(self.exp - current)


class TokenCodec:
    """HS256 JWTs for access and refresh tokens.

    Verification covers structure, algorithm, signature, issuer, audience,
    kind and expiry only. Revocation and session state are checked by the
    session manager.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._leeway = max(0, settings.clock_skew_leeway_seconds)

    def _secret_for(self, kind: TokenKind) -> bytes:
        if kind == TokenKind.REFRESH:
            return self.settings.refresh_signing_secret.encode()
        return self.settings.jwt_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        signature = hmac.new(
            self._secret_for(kind), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _issue(self, kind: TokenKind, claims: Mapping[str, Any], ttl: timedelta) -> str:
        now = int(time.time())
        payload = {
            "sub": str(claims["sub"]),
            "role": str(claims.get("role", "")),
            "typ": kind.value,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def issue_access(self, claims: Mapping[str, Any], ttl: timedelta) -> str:
        return self._issue(TokenKind.ACCESS, claims, ttl)

    def issue_refresh(self, claims: Mapping[str, Any], ttl: timedelta) -> str:
        return self._issue(TokenKind.REFRESH, claims, ttl)

    def verify(
        self, token: str, expected_kind: Optional[TokenKind] = None
    ) -> TokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError()

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        try:
            kind = TokenKind(payload.get("typ"))
        except ValueError:
            raise InvalidTokenError()
        if expected_kind is not None and kind != expected_kind:
            raise InvalidTokenError()

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._sign(signing_input, kind).encode()
        if not hmac.compare_digest(
            expected_sig, sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise InvalidTokenError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError()

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            sub = str(payload["sub"])
            jti = str(payload["jti"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if not sub:
            raise InvalidTokenError()
        if exp <= time.time() - self._leeway:
            raise TokenExpiredError()

        return TokenClaims(
            sub=sub,
            role=str(payload.get("role", "")),
            typ=kind,
            iat=iat,
            exp=exp,
            jti=jti,
            iss=payload["iss"],
            aud=self.settings.jwt_audience,
        )
