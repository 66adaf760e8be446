"""Unit tests for the JWT codec."""

import base64
import json
from datetime import timedelta

import pytest

from blogauth.service.errors import InvalidTokenError, TokenExpiredError
from blogauth.service.tokens import TokenCodec, TokenKind

CLAIMS = {"sub": "user-1", "role": "EDITOR"}
HOUR = timedelta(hours=1)


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


def test_access_round_trip(codec):
    token = codec.issue_access(CLAIMS, HOUR)

    claims = codec.verify(token, TokenKind.ACCESS)

    assert claims.sub == "user-1"
    assert claims.role == "EDITOR"
    assert claims.typ == TokenKind.ACCESS
    assert claims.exp - claims.iat == 3600
    assert 3590 <= claims.remaining_seconds() <= 3600


def test_tokens_minted_together_differ(codec):
    assert codec.issue_access(CLAIMS, HOUR) != codec.issue_access(CLAIMS, HOUR)


def test_kind_mismatch_is_invalid(codec):
    refresh = codec.issue_refresh(CLAIMS, HOUR)
    with pytest.raises(InvalidTokenError):
        codec.verify(refresh, TokenKind.ACCESS)
    assert codec.verify(refresh).typ == TokenKind.REFRESH


def test_expired_token(codec):
    token = codec.issue_access(CLAIMS, timedelta(seconds=-1))
    with pytest.raises(TokenExpiredError):
        codec.verify(token)


def test_leeway_accepts_slightly_expired_token(make_settings):
    codec = TokenCodec(make_settings(clock_skew_leeway_seconds=30))
    token = codec.issue_access(CLAIMS, timedelta(seconds=-5))
    assert codec.verify(token).sub == "user-1"


def test_tampered_payload_is_invalid(codec):
    header, _, signature = codec.issue_access(CLAIMS, HOUR).split(".")
    forged = _segment(
        {
            "sub": "user-1",
            "role": "ADMIN",
            "typ": "access",
            "iat": 0,
            "exp": 4102444800,
            "jti": "x",
            "iss": "blogauth",
            "aud": "blog-admin",
        }
    )
    with pytest.raises(InvalidTokenError):
        codec.verify(f"{header}.{forged}.{signature}")


def test_alg_none_is_rejected(codec):
    _, payload, _ = codec.issue_access(CLAIMS, HOUR).split(".")
    header = _segment({"alg": "none", "typ": "JWT"})
    with pytest.raises(InvalidTokenError):
        codec.verify(f"{header}.{payload}.")


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.@@.##"])
def test_malformed_tokens(codec, token):
    with pytest.raises(InvalidTokenError):
        codec.verify(token)


def test_rotating_the_key_invalidates_tokens(make_settings):
    old = TokenCodec(make_settings(jwt_secret="first-secret-value-that-is-long-enough"))
    new = TokenCodec(make_settings(jwt_secret="second-secret-value-that-is-long-enough"))
    token = old.issue_access(CLAIMS, HOUR)

    with pytest.raises(InvalidTokenError):
        new.verify(token)


def test_refresh_tokens_use_their_own_key(make_settings):
    codec = TokenCodec(make_settings(jwt_refresh_secret="refresh-only-secret-value-0123456789"))
    plain = TokenCodec(make_settings())
    refresh = codec.issue_refresh(CLAIMS, HOUR)
    access = codec.issue_access(CLAIMS, HOUR)

    assert codec.verify(refresh).sub == "user-1"
    # same access key, different refresh key
    assert plain.verify(access).sub == "user-1"
    with pytest.raises(InvalidTokenError):
        plain.verify(refresh)


def test_issuer_and_audience_are_checked(make_settings):
    other = TokenCodec(make_settings(jwt_issuer="someone-else"))
    ours = TokenCodec(make_settings())
    with pytest.raises(InvalidTokenError):
        ours.verify(other.issue_access(CLAIMS, HOUR))

    other_aud = TokenCodec(make_settings(jwt_audience="public-site"))
    with pytest.raises(InvalidTokenError):
        ours.verify(other_aud.issue_access(CLAIMS, HOUR))


@pytest.mark.parametrize("signature", ["é", "éé", "sig\udcff"])
def test_non_ascii_signature_is_invalid(codec, signature):
    header, payload, _ = codec.issue_access(CLAIMS, HOUR).split(".")

    with pytest.raises(InvalidTokenError):
        codec.verify(f"{header}.{payload}.{signature}")
