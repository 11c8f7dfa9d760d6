"""Tests for SessionTokenManager.

Uses the in-memory CredentialStore and a fixed clock, so expiry maths
is deterministic.
"""

import asyncio

import pytest

from src.cli.protocol import KbChatClientError, TokenPair
from src.services.credential_store import (
    ACCESS_TOKEN_KEY,
    EXPIRES_AT_KEY,
    REFRESH_TOKEN_KEY,
    CredentialStore,
)
from src.services.session_manager import SessionTokenManager
from tests.helpers import FakeNavigator, client_error

NOW = 1_700_000_000.0
NOW_MS = int(NOW * 1000)


def _manager(transport, navigator, store=None, **kwargs) -> SessionTokenManager:
    return SessionTokenManager(
        store or CredentialStore(),
        transport,
        navigator,
        clock=lambda: NOW,
        **kwargs,
    )


def _store_expiring_in(ms: int) -> CredentialStore:
    store = CredentialStore()
    store.set_tokens("acc-0", "ref-0", NOW_MS + ms)
    return store


class TestScheduleRenewal:
    """Tests for the renewal timer delay."""

    @pytest.mark.asyncio
    async def test_inside_lead_window_fires_immediately(self, transport, navigator):
        """Expiry 2s away with a 5 minute lead window schedules delay 0."""
        manager = _manager(transport, navigator, _store_expiring_in(2000))
        delay = manager.schedule_renewal()
        assert delay == 0
        await manager.close()

    @pytest.mark.asyncio
    async def test_delay_is_expiry_minus_lead(self, transport, navigator):
        manager = _manager(transport, navigator, _store_expiring_in(3_600_000))
        assert manager.schedule_renewal() == pytest.approx(3300)
        await manager.close()

    @pytest.mark.asyncio
    async def test_force_immediate(self, transport, navigator):
        manager = _manager(transport, navigator, _store_expiring_in(3_600_000))
        assert manager.schedule_renewal(force_immediate=True) == 0
        await manager.close()

    @pytest.mark.asyncio
    async def test_no_expiry_no_timer(self, transport, navigator):
        manager = _manager(transport, navigator)
        assert manager.schedule_renewal() is None
        assert manager.next_renewal_delay is None

    @pytest.mark.asyncio
    async def test_rescheduling_cancels_previous_timer(self, transport, navigator):
        """At most one renewal timer exists at a time."""
        manager = _manager(transport, navigator, _store_expiring_in(3_600_000))
        manager.schedule_renewal()
        first = manager._timer
        manager.schedule_renewal()

        assert first.cancelled()
        assert manager._timer is not first
        await manager.close()


class TestRenewal:
    """Tests for renewal success, failure and deduplication."""

    @pytest.mark.asyncio
    async def test_concurrent_triggers_share_one_call(self, transport, navigator):
        """Two overlapping renewals call the endpoint once."""
        release = asyncio.Event()

        async def hold():
            await release.wait()

        transport.renew_hook = hold
        manager = _manager(transport, navigator, _store_expiring_in(1000))

        pending = asyncio.gather(manager.refresh_now(), manager.refresh_now())
        await asyncio.sleep(0)
        release.set()
        results = await pending

        assert results == [True, True]
        assert transport.count("renew") == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_success_stores_tokens_and_rearms(self, transport, navigator):
        store = _store_expiring_in(1000)
        manager = _manager(transport, navigator, store)

        assert await manager.refresh_now() is True

        assert store.get(ACCESS_TOKEN_KEY) == "acc-2"
        assert store.get(REFRESH_TOKEN_KEY) == "ref-2"
        assert store.get_expires_at_ms() == NOW_MS + 3_600_000
        assert manager.is_authenticated is True
        assert manager.next_renewal_delay == pytest.approx(3300)
        await manager.close()

    @pytest.mark.asyncio
    async def test_missing_expires_in_uses_default_lifetime(self, transport, navigator):
        transport.renew_result = TokenPair("acc-2", "ref-2", None)
        store = _store_expiring_in(1000)
        manager = _manager(
            transport, navigator, store, default_token_lifetime_seconds=600, lead_window_seconds=60
        )

        await manager.refresh_now()

        assert store.get_expires_at_ms() == NOW_MS + 600_000
        await manager.close()

    @pytest.mark.asyncio
    async def test_uses_latest_stored_refresh_token(self, transport, navigator):
        store = _store_expiring_in(1000)
        manager = _manager(transport, navigator, store)
        store.set_tokens("acc-x", "ref-rotated", NOW_MS + 1000)

        await manager.refresh_now()

        assert transport.calls[0] == ("renew", ("ref-rotated",))
        await manager.close()

    @pytest.mark.asyncio
    async def test_failure_clears_and_redirects(self, transport, navigator):
        """Rejected renewal empties the store and redirects once."""
        transport.renew_result = client_error(401, "expired")
        store = _store_expiring_in(1000)
        manager = _manager(transport, navigator, store)

        assert await manager.refresh_now() is False

        assert store.read_record() is None
        assert store.get(ACCESS_TOKEN_KEY) is None
        assert manager.is_authenticated is False
        assert manager.next_renewal_delay is None
        assert navigator.redirects == 1
        assert transport.count("renew") == 1

    @pytest.mark.asyncio
    async def test_failure_on_entry_surface_does_not_redirect(self, transport):
        transport.renew_result = client_error(401)
        navigator = FakeNavigator(at_entry=True)
        manager = _manager(transport, navigator, _store_expiring_in(1000))

        await manager.refresh_now()

        assert navigator.redirects == 0

    @pytest.mark.asyncio
    async def test_timer_fires_renewal(self, transport, navigator):
        manager = _manager(transport, navigator, _store_expiring_in(1000))
        manager.schedule_renewal()

        for _ in range(10):
            await asyncio.sleep(0)

        assert transport.count("renew") == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_unreadable_renewal_answer_ends_session(self, transport, navigator):
        """A renewal that fails with a non-client error still signs out."""
        transport.renew_result = ValueError("Expecting value: line 1 column 1 (char 0)")
        store = _store_expiring_in(3_600_000)
        manager = _manager(transport, navigator, store)
        manager.schedule_renewal()
        armed = manager._timer

        assert await manager.refresh_now() is False

        assert store.read_record() is None
        assert manager.is_authenticated is False
        assert manager.next_renewal_delay is None
        assert armed.cancelled()
        assert manager._timer is None
        assert navigator.redirects == 1


class TestHandleUnauthorized:
    """Tests for renewal triggered by a rejected request."""

    @pytest.mark.asyncio
    async def test_rejected_requests_share_one_renewal(self, transport, navigator):
        release = asyncio.Event()

        async def hold():
            await release.wait()

        transport.renew_hook = hold
        store = _store_expiring_in(3_600_000)
        manager = _manager(transport, navigator, store)

        pending = asyncio.gather(
            manager.handle_unauthorized(),
            manager.handle_unauthorized(),
            manager.refresh_now(),
        )
        await asyncio.sleep(0)
        release.set()
        results = await pending

        assert results == [True, True, True]
        assert transport.count("renew") == 1
        assert store.get(ACCESS_TOKEN_KEY) == "acc-2"
        await manager.close()

    @pytest.mark.asyncio
    async def test_without_credentials_does_nothing(self, transport, navigator):
        manager = _manager(transport, navigator)

        assert await manager.handle_unauthorized() is False

        assert transport.count("renew") == 0
        assert navigator.redirects == 0

    @pytest.mark.asyncio
    async def test_refused_renewal_signs_out(self, transport, navigator):
        transport.renew_result = client_error(401, "revoked")
        store = _store_expiring_in(3_600_000)
        manager = _manager(transport, navigator, store)

        assert await manager.handle_unauthorized() is False

        assert store.get(ACCESS_TOKEN_KEY) is None
        assert navigator.redirects == 1


class TestCheckAuthenticated:
    """Tests for check_authenticated."""

    @pytest.mark.asyncio
    async def test_missing_tokens(self, transport, navigator):
        manager = _manager(transport, navigator)
        assert await manager.check_authenticated() is False
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_valid_tokens(self, transport, navigator):
        manager = _manager(transport, navigator, _store_expiring_in(60_000))
        assert await manager.check_authenticated() is True
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_malformed_expiry_clears_store(self, transport, navigator):
        store = CredentialStore()
        store._data = {ACCESS_TOKEN_KEY: "a", REFRESH_TOKEN_KEY: "r", EXPIRES_AT_KEY: "soon"}
        manager = _manager(transport, navigator, store)

        assert await manager.check_authenticated() is False
        assert store.get(ACCESS_TOKEN_KEY) is None

    @pytest.mark.asyncio
    async def test_expired_on_entry_surface_does_not_renew(self, transport):
        manager = _manager(transport, FakeNavigator(at_entry=True), _store_expiring_in(-1000))
        assert await manager.check_authenticated() is False
        assert transport.count("renew") == 0

    @pytest.mark.asyncio
    async def test_expired_elsewhere_renews(self, transport, navigator):
        manager = _manager(transport, navigator, _store_expiring_in(-1000))
        assert await manager.check_authenticated() is True
        assert transport.count("renew") == 1
        await manager.close()


class TestLoginLogout:
    """Tests for login and logout."""

    @pytest.mark.asyncio
    async def test_login_stores_and_arms(self, transport, navigator):
        store = CredentialStore()
        manager = _manager(transport, navigator, store)

        await manager.login("ada@example.com", "pw")

        assert store.read_record().access_token == "acc-1"
        assert manager.is_authenticated is True
        assert manager.next_renewal_delay == pytest.approx(3300)
        await manager.close()

    @pytest.mark.asyncio
    async def test_login_rejected_propagates(self, transport, navigator):
        transport.login_result = client_error(401, "bad credentials")
        manager = _manager(transport, navigator)

        with pytest.raises(KbChatClientError) as exc:
            await manager.login("ada@example.com", "wrong")

        assert exc.value.status_code == 401
        assert manager.is_authenticated is False

    @pytest.mark.asyncio
    async def test_logout_clears_and_redirects(self, transport, navigator):
        store = _store_expiring_in(60_000)
        manager = _manager(transport, navigator, store)
        await manager.start()

        manager.logout()

        assert store.read_record() is None
        assert manager.next_renewal_delay is None
        assert navigator.redirects == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_auth_change_callback(self, transport, navigator):
        changes = []
        manager = _manager(transport, navigator, on_auth_change=changes.append)
        await manager.login("ada@example.com", "pw")
        manager.logout()
        assert changes == [True, False]
        await manager.close()


class TestExternalTriggers:
    """Tests for cross-process changes and visibility resumes."""

    @pytest.mark.asyncio
    async def test_external_sign_in_arms_timer(self, transport, navigator):
        store = CredentialStore()
        manager = _manager(transport, navigator, store)
        await manager.start()
        assert manager.next_renewal_delay is None

        store._apply_external({
            ACCESS_TOKEN_KEY: "acc-ext",
            REFRESH_TOKEN_KEY: "ref-ext",
            EXPIRES_AT_KEY: str(NOW_MS + 3_600_000),
        })
        for _ in range(3):
            await asyncio.sleep(0)

        assert manager.is_authenticated is True
        assert manager.next_renewal_delay == pytest.approx(3300)
        await manager.close()

    @pytest.mark.asyncio
    async def test_external_sign_out_cancels_timer(self, transport, navigator):
        store = _store_expiring_in(3_600_000)
        manager = _manager(transport, navigator, store)
        await manager.start()
        assert manager.next_renewal_delay is not None

        store._apply_external({})
        for _ in range(3):
            await asyncio.sleep(0)

        assert manager.is_authenticated is False
        assert manager.next_renewal_delay is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_expiry_only_change_ignored(self, transport, navigator):
        store = _store_expiring_in(3_600_000)
        manager = _manager(transport, navigator, store)
        await manager.start()
        timer = manager._timer

        store._apply_external({
            ACCESS_TOKEN_KEY: "acc-0",
            REFRESH_TOKEN_KEY: "ref-0",
            EXPIRES_AT_KEY: str(NOW_MS + 10),
        })
        await asyncio.sleep(0)

        assert manager._timer is timer
        await manager.close()

    @pytest.mark.asyncio
    async def test_resume_rechecks(self, transport, navigator):
        manager = _manager(transport, navigator, _store_expiring_in(-1000))

        assert manager.handle_visibility_change(False) is None
        task = manager.handle_visibility_change(True)
        assert task is not None
        assert await task is True
        assert transport.count("renew") == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_visible_to_visible_is_noop(self, transport, navigator):
        manager = _manager(transport, navigator)
        assert manager.handle_visibility_change(True) is None
