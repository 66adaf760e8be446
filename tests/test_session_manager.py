"""Session lifecycle tests.

Covers login/authenticate/refresh/logout, concurrent-session eviction, hijack
policy, and the fail-open / fail-closed behaviour of the cache and repository.
"""

import asyncio
import time
from datetime import timedelta

import pytest

from blogauth.service.auth import AuthService
from blogauth.service.errors import (
    AccountInactiveError,
    ErrorKind,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidTokenError,
    NoTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from blogauth.service.hijack import RequestContext
from blogauth.storage.errors import StorageUnavailable
from blogauth.storage.memory import MemoryCache, MemoryStore
from blogauth.storage.models import RevokeReason, utcnow

PASSWORD = "correct horse battery"


async def _register(auth: AuthService, email="alice@example.com", username="alice"):
    return await auth.register(email, username, PASSWORD)


def _active_sessions(store: MemoryStore, user_id: str):
    return store.list_active_sessions(user_id, utcnow())


class BrokenCache:
    """Revocation cache whose every call fails."""

    async def revoke_token(self, digest, ttl_seconds):
        raise ConnectionError("redis down")

    async def is_token_revoked(self, digest):
        raise ConnectionError("redis down")


class SlowCache(MemoryCache):
    async def is_token_revoked(self, digest):
        await asyncio.sleep(1.0)
        return True


class FlakyStore(MemoryStore):
    """Memory store whose session lookups can be made to fail or hang."""

    def __init__(self):
        super().__init__()
        self.mode = None
        self.touches = 0

    def get_session_by_access_digest(self, digest):
        if self.mode == "down":
            raise StorageUnavailable("database unavailable")
        if self.mode == "slow":
            time.sleep(0.5)
        return super().get_session_by_access_digest(digest)

    def touch_session(self, session_id, at):
        self.touches += 1
        return super().touch_session(session_id, at)


class TestLoginAndAuthenticate:
    async def test_login_then_authenticate_yields_same_user(self, auth_service):
        user = await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)

        ctx = await auth_service.authenticate(result.tokens.access_token)

        assert ctx.user_id == user.id
        assert ctx.session_id == result.session.id
        assert ctx.role == "VIEWER"
        assert ctx.ip_mismatch is False

    async def test_login_records_request_context(self, auth_service, memory_store):
        await _register(auth_service)
        result = await auth_service.login(
            "alice@example.com",
            PASSWORD,
            RequestContext(ip_addr="1.1.1.1", user_agent="pytest"),
        )

        stored = memory_store.get_session(result.session.id)
        assert stored.ip_addr == "1.1.1.1"
        assert stored.user_agent == "pytest"
        assert stored.access_digest != result.tokens.access_token
        assert stored.expires_at == result.tokens.refresh_expires_at

    async def test_login_stamps_last_login(self, auth_service, memory_store):
        user = await _register(auth_service)
        assert user.last_login_at is None

        first = await auth_service.login("alice@example.com", PASSWORD)
        second = await auth_service.login("alice@example.com", PASSWORD)

        assert first.user.last_login_at == first.session.created_at
        assert memory_store.get_user(user.id).last_login_at == second.session.created_at
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", "not the password")
        assert memory_store.get_user(user.id).last_login_at == second.session.created_at

    async def test_login_is_case_insensitive_on_email(self, auth_service):
        await _register(auth_service)
        result = await auth_service.login("Alice@Example.com", PASSWORD)
        assert result.user.email == "alice@example.com"

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth_service):
        await _register(auth_service)

        with pytest.raises(InvalidCredentialsError) as wrong_pw:
            await auth_service.login("alice@example.com", "not the password")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)

        assert wrong_pw.value.message == unknown.value.message
        assert wrong_pw.value.kind == ErrorKind.INVALID_CREDENTIALS

    async def test_inactive_user_cannot_log_in(self, auth_service, memory_store):
        user = await _register(auth_service)
        memory_store.set_active(user.id, False)

        with pytest.raises(AccountInactiveError):
            await auth_service.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", "wrong password!")

    async def test_missing_token(self, auth_service):
        with pytest.raises(NoTokenError):
            await auth_service.authenticate(None)
        with pytest.raises(NoTokenError):
            await auth_service.authenticate("")

    async def test_garbage_token(self, auth_service):
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate("not.a.jwt")

    async def test_non_ascii_signature_is_invalid_everywhere(self, auth_service):
        await _register(auth_service)
        login = await auth_service.login("alice@example.com", PASSWORD)
        header, payload, _ = login.tokens.access_token.split(".")
        forged = f"{header}.{payload}.éé"
        r_header, r_payload, _ = login.tokens.refresh_token.split(".")

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(forged)
        with pytest.raises(InvalidTokenError):
            await auth_service.logout(forged)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(f"{r_header}.{r_payload}.é")

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(result.tokens.refresh_token)

    async def test_expired_access_token(self, make_settings, memory_store, memory_cache):
        auth = AuthService(
            memory_store, memory_cache, make_settings(access_token_ttl_minutes=-1)
        )
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        with pytest.raises(TokenExpiredError):
            await auth.authenticate(result.tokens.access_token)

    async def test_expired_session_rejects_valid_token(self, auth_service, memory_store):
        await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)
        stored = memory_store.sessions[result.session.id]
        stored.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(TokenExpiredError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_deactivated_user_is_rejected(self, auth_service, memory_store):
        user = await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)
        memory_store.set_active(user.id, False)

        with pytest.raises(AccountInactiveError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_role_comes_from_current_user_record(self, auth_service, memory_store):
        user = await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)
        memory_store.update_role(user.id, "EDITOR")

        ctx = await auth_service.authenticate(result.tokens.access_token)
        assert ctx.role == "EDITOR"


class TestLogout:
    async def test_logout_then_authenticate_is_revoked(self, auth_service, memory_store):
        await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)

        assert await auth_service.logout(result.tokens.access_token) is True

        with pytest.raises(TokenRevokedError):
            await auth_service.authenticate(result.tokens.access_token)
        stored = memory_store.get_session(result.session.id)
        assert stored.active is False
        assert stored.revoke_reason == RevokeReason.LOGOUT.value

    async def test_logout_without_cache_still_revokes(self, settings, memory_store):
        auth = AuthService(memory_store, None, settings)
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        await auth.logout(result.tokens.access_token)

        with pytest.raises(TokenRevokedError):
            await auth.authenticate(result.tokens.access_token)

    async def test_logout_blacklists_token_digest(self, auth_service, memory_cache):
        await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.logout(result.tokens.access_token)

        digest = auth_service.hasher.digest_token(result.tokens.access_token)
        assert await memory_cache.is_token_revoked(digest) is True

    async def test_logout_is_idempotent(self, auth_service):
        await _register(auth_service)
        result = await auth_service.login("alice@example.com", PASSWORD)

        assert await auth_service.logout(result.tokens.access_token) is True
        assert await auth_service.logout(result.tokens.access_token) is False

    async def test_logout_with_expired_token_ends_session(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(access_token_ttl_minutes=-1)
        )
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        assert await auth.logout(result.tokens.access_token) is True
        digest = auth.hasher.digest_token(result.tokens.access_token)
        assert await memory_cache.is_token_revoked(digest) is False

    async def test_logout_cache_failure_is_not_raised(self, settings):
        store = MemoryStore()
        auth = AuthService(store, BrokenCache(), settings)
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        assert await auth.logout(result.tokens.access_token) is True
        # session state still rejects the token
        with pytest.raises(TokenRevokedError):
            await auth.authenticate(result.tokens.access_token)


class TestRefresh:
    async def test_refresh_rotates_pair_in_place(self, auth_service, memory_store):
        user = await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)

        second = await auth_service.refresh(first.tokens.refresh_token)

        assert second.session.id == first.session.id
        assert second.tokens.access_token != first.tokens.access_token
        assert second.tokens.refresh_token != first.tokens.refresh_token
        assert len(_active_sessions(memory_store, user.id)) == 1
        ctx = await auth_service.authenticate(second.tokens.access_token)
        assert ctx.session_id == first.session.id

    async def test_superseded_refresh_token_is_invalid(self, auth_service):
        await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.refresh(first.tokens.refresh_token)

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(first.tokens.refresh_token)

    async def test_old_access_token_stops_working_after_refresh(self, auth_service):
        await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.refresh(first.tokens.refresh_token)

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(first.tokens.access_token)

    async def test_access_token_cannot_refresh(self, auth_service):
        await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(first.tokens.access_token)

    async def test_refresh_after_logout_is_invalid(self, auth_service):
        await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.logout(first.tokens.access_token)

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(first.tokens.refresh_token)

    async def test_expired_refresh_token_is_invalid(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(refresh_token_ttl_minutes=-1)
        )
        await _register(auth)
        first = await auth.login("alice@example.com", PASSWORD)

        with pytest.raises(InvalidTokenError):
            await auth.refresh(first.tokens.refresh_token)

    async def test_refresh_for_inactive_user_is_invalid(self, auth_service, memory_store):
        user = await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)
        memory_store.set_active(user.id, False)

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(first.tokens.refresh_token)

    async def test_concurrent_refresh_has_single_winner(self, auth_service):
        await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)

        outcomes = await asyncio.gather(
            *[auth_service.refresh(first.tokens.refresh_token) for _ in range(4)],
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert all(isinstance(exc, InvalidTokenError) for exc in losers)
        ctx = await auth_service.authenticate(winners[0].tokens.access_token)
        assert ctx.session_id == first.session.id


class TestConcurrentSessionLimit:
    async def test_n_plus_one_logins_evict_the_oldest(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(max_concurrent_sessions=3)
        )
        user = await _register(auth)
        results = [await auth.login("alice@example.com", PASSWORD) for _ in range(4)]

        active = _active_sessions(memory_store, user.id)
        assert len(active) == 3
        assert results[0].session.id not in {s.id for s in active}
        evicted = memory_store.get_session(results[0].session.id)
        assert evicted.revoke_reason == RevokeReason.EVICTED.value
        with pytest.raises(TokenRevokedError):
            await auth.authenticate(results[0].tokens.access_token)

    async def test_max_two_sessions_scenario(self, make_settings, memory_store, memory_cache):
        auth = AuthService(
            memory_store, memory_cache, make_settings(max_concurrent_sessions=2)
        )
        user = await _register(auth)
        a = await auth.login("alice@example.com", PASSWORD)
        b = await auth.login("alice@example.com", PASSWORD)
        c = await auth.login("alice@example.com", PASSWORD)

        assert memory_store.get_session(a.session.id).active is False
        assert memory_store.get_session(b.session.id).active is True
        assert memory_store.get_session(c.session.id).active is True
        assert len(_active_sessions(memory_store, user.id)) == 2

    async def test_refresh_does_not_count_as_a_session(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(max_concurrent_sessions=2)
        )
        user = await _register(auth)
        a = await auth.login("alice@example.com", PASSWORD)
        b = await auth.login("alice@example.com", PASSWORD)
        await auth.refresh(a.tokens.refresh_token)
        await auth.refresh(b.tokens.refresh_token)

        assert len(_active_sessions(memory_store, user.id)) == 2

    async def test_zero_disables_the_limit(self, make_settings, memory_store, memory_cache):
        auth = AuthService(
            memory_store, memory_cache, make_settings(max_concurrent_sessions=0)
        )
        user = await _register(auth)
        for _ in range(4):
            await auth.login("alice@example.com", PASSWORD)

        assert len(_active_sessions(memory_store, user.id)) == 4

    async def test_login_storm_converges_on_next_serial_login(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(max_concurrent_sessions=2)
        )
        user = await _register(auth)

        await asyncio.gather(
            *[auth.login("alice@example.com", PASSWORD) for _ in range(6)]
        )
        after_storm = _active_sessions(memory_store, user.id)
        assert 1 <= len(after_storm) <= 6

        await auth.login("alice@example.com", PASSWORD)
        assert len(_active_sessions(memory_store, user.id)) == 2

    async def test_limit_is_per_user(self, make_settings, memory_store, memory_cache):
        auth = AuthService(
            memory_store, memory_cache, make_settings(max_concurrent_sessions=1)
        )
        alice = await _register(auth)
        bob = await _register(auth, "bob@example.com", "bob")
        await auth.login("alice@example.com", PASSWORD)
        await auth.login("bob@example.com", PASSWORD)

        assert len(_active_sessions(memory_store, alice.id)) == 1
        assert len(_active_sessions(memory_store, bob.id)) == 1


class TestHijackPolicy:
    async def test_strict_mode_revokes_on_ip_change(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(memory_store, memory_cache, make_settings(hijack_mode="strict"))
        await _register(auth)
        result = await auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip_addr="1.1.1.1")
        )

        with pytest.raises(ForbiddenError):
            await auth.authenticate(
                result.tokens.access_token, RequestContext(ip_addr="2.2.2.2")
            )

        stored = memory_store.get_session(result.session.id)
        assert stored.active is False
        assert stored.revoke_reason == RevokeReason.HIJACK.value
        with pytest.raises(TokenRevokedError):
            await auth.authenticate(
                result.tokens.access_token, RequestContext(ip_addr="1.1.1.1")
            )

    async def test_permissive_mode_flags_and_allows(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(hijack_mode="permissive")
        )
        user = await _register(auth)
        result = await auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip_addr="1.1.1.1")
        )

        ctx = await auth.authenticate(
            result.tokens.access_token, RequestContext(ip_addr="2.2.2.2")
        )

        assert ctx.user_id == user.id
        assert ctx.ip_mismatch is True
        assert memory_store.get_session(result.session.id).active is True

    async def test_strict_mode_same_ip_passes(self, make_settings, memory_store, memory_cache):
        auth = AuthService(memory_store, memory_cache, make_settings(hijack_mode="strict"))
        await _register(auth)
        result = await auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip_addr="1.1.1.1")
        )

        ctx = await auth.authenticate(
            result.tokens.access_token, RequestContext(ip_addr="::ffff:1.1.1.1")
        )
        assert ctx.ip_mismatch is False

    async def test_allowlist_rejects_without_revoking(
        self, make_settings, memory_store, memory_cache
    ):
        auth = AuthService(
            memory_store, memory_cache, make_settings(ip_allowlist="10.0.0.1,10.0.0.2")
        )
        await _register(auth)
        result = await auth.login(
            "alice@example.com", PASSWORD, RequestContext(ip_addr="10.0.0.1")
        )

        with pytest.raises(ForbiddenError):
            await auth.authenticate(
                result.tokens.access_token, RequestContext(ip_addr="10.0.0.9")
            )
        assert memory_store.get_session(result.session.id).active is True
        ctx = await auth.authenticate(
            result.tokens.access_token, RequestContext(ip_addr="10.0.0.2")
        )
        assert ctx.ip_mismatch is True


class TestCollaboratorFailures:
    async def test_cache_outage_fails_open(self, settings):
        store = MemoryStore()
        auth = AuthService(store, BrokenCache(), settings)
        user = await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        ctx = await auth.authenticate(result.tokens.access_token)
        assert ctx.user_id == user.id

    async def test_cache_timeout_fails_open(self, make_settings):
        store = MemoryStore()
        auth = AuthService(store, SlowCache(), make_settings(cache_timeout_seconds=0.05))
        user = await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        ctx = await auth.authenticate(result.tokens.access_token)
        assert ctx.user_id == user.id

    async def test_repository_outage_fails_closed(self, settings, memory_cache):
        store = FlakyStore()
        auth = AuthService(store, memory_cache, settings)
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)
        store.mode = "down"

        with pytest.raises(InternalError) as exc_info:
            await auth.authenticate(result.tokens.access_token)
        assert exc_info.value.kind == ErrorKind.INTERNAL
        assert exc_info.value.status_code == 500

    async def test_repository_timeout_fails_closed(self, make_settings, memory_cache):
        store = FlakyStore()
        auth = AuthService(
            store, memory_cache, make_settings(repository_timeout_seconds=0.1)
        )
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)
        store.mode = "slow"

        with pytest.raises(InternalError):
            await auth.authenticate(result.tokens.access_token)


class TestActivityTouch:
    async def test_touch_is_throttled(self, settings, memory_cache):
        store = FlakyStore()
        auth = AuthService(store, memory_cache, settings)
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)

        await auth.authenticate(result.tokens.access_token)
        await auth.drain()

        assert store.touches == 0

    async def test_touch_runs_in_background(self, make_settings, memory_cache):
        store = FlakyStore()
        auth = AuthService(
            store, memory_cache, make_settings(session_touch_interval_seconds=0)
        )
        await _register(auth)
        result = await auth.login("alice@example.com", PASSWORD)
        before = store.get_session(result.session.id).last_activity_at

        await auth.authenticate(result.tokens.access_token)
        await auth.drain()

        assert store.touches == 1
        assert store.get_session(result.session.id).last_activity_at >= before


class TestSessionListing:
    async def test_list_sessions_newest_first(self, auth_service):
        user = await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)
        second = await auth_service.login("alice@example.com", PASSWORD)

        sessions = await auth_service.list_sessions(user.id)

        assert [s.id for s in sessions] == [second.session.id, first.session.id]

    async def test_revoke_own_session(self, auth_service):
        user = await _register(auth_service)
        first = await auth_service.login("alice@example.com", PASSWORD)

        assert await auth_service.revoke_session(user.id, first.session.id) is True
        with pytest.raises(TokenRevokedError):
            await auth_service.authenticate(first.tokens.access_token)

    async def test_cannot_revoke_another_users_session(self, auth_service):
        await _register(auth_service)
        bob = await _register(auth_service, "bob@example.com", "bob")
        alice_login = await auth_service.login("alice@example.com", PASSWORD)

        assert await auth_service.revoke_session(bob.id, alice_login.session.id) is False
        ctx = await auth_service.authenticate(alice_login.tokens.access_token)
        assert ctx.session_id == alice_login.session.id

    async def test_revoke_all_except_current(self, auth_service, memory_store):
        user = await _register(auth_service)
        keep = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.login("alice@example.com", PASSWORD)

        count = await auth_service.sessions.revoke_all_except_current(
            user.id, keep.tokens.access_token
        )

        assert count == 2
        active = _active_sessions(memory_store, user.id)
        assert [s.id for s in active] == [keep.session.id]
