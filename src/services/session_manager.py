"""Session token lifecycle for the kbchat client.

Owns the credential record in the CredentialStore and keeps it fresh:

- At most one renewal timer exists at a time. Every scheduling call
  cancels the previous asyncio.TimerHandle before arming a new one.
- Renewal is a chain of one-shot timers rather than a fixed interval,
  because each cycle's delay depends on the expiry the server issued.
- Concurrent renewal triggers (timer, visibility resume, external
  change) share a single in-flight asyncio.Task, so the renewal
  endpoint is called at most once per cycle.
- A failed renewal clears the store and sends the user back to the
  entry surface. It is never retried automatically.

Example:
    manager = SessionTokenManager(store, transport, navigator)
    await manager.start()
    await manager.login("ada@example.com", "secret")
"""

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

from src.cli.protocol import KbChatClientError, KbChatTransport, TokenPair
from src.services.credential_store import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    CredentialStore,
    StorageChange,
)
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_LEAD_WINDOW_SECONDS = 5 * 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 60 * 60


class Navigator(Protocol):
    """Where the user is, and how to send them to sign in."""

    def at_entry_surface(self) -> bool:
        """True when the user is already on the sign-in surface."""
        ...

    def to_entry_surface(self) -> None:
        """Send the user to the sign-in surface."""
        ...


class SessionTokenManager:
    """Schedules credential renewal and answers 'am I signed in'.

    Attributes:
        is_authenticated: Result of the most recent check or renewal.
        next_renewal_delay: Seconds until the armed renewal timer fires,
            or None when no timer is armed.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport: KbChatTransport,
        navigator: Navigator,
        *,
        lead_window_seconds: float = DEFAULT_LEAD_WINDOW_SECONDS,
        default_token_lifetime_seconds: float = DEFAULT_TOKEN_LIFETIME_SECONDS,
        clock: Callable[[], float] = time.time,
        on_auth_change: Callable[[bool], None] | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._navigator = navigator
        self._lead_window_ms = int(lead_window_seconds * 1000)
        self._default_lifetime_ms = int(default_token_lifetime_seconds * 1000)
        self._clock = clock
        self._on_auth_change = on_auth_change

        self.is_authenticated = False
        self.next_renewal_delay: float | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._renewal_task: asyncio.Task[bool] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._visible = True
        self._unsubscribe: Callable[[], None] | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def expires_at_ms(self) -> int | None:
        """Stored access-token expiry (epoch ms), if any."""
        return self._store.get_expires_at_ms()

    def _set_authenticated(self, value: bool) -> None:
        changed = value != self.is_authenticated
        self.is_authenticated = value
        if changed and self._on_auth_change is not None:
            self._on_auth_change(value)

    # --- lifecycle ---

    async def start(self) -> bool:
        """Subscribe to external changes, check credentials, arm renewal.

        Returns:
            Whether a usable session exists.
        """
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_storage_change)
        await self._store.start()
        authenticated = await self.check_authenticated()
        if authenticated and self._timer is None:
            self.schedule_renewal()
        return authenticated

    async def close(self) -> None:
        """Cancel timers and background work; stop observing the store."""
        self._cancel_timer()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        pending = list(self._background)
        if self._renewal_task is not None and not self._renewal_task.done():
            pending.append(self._renewal_task)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error while cancelling session task: %s", e)
        await self._store.stop()

    # --- checks ---

    async def check_authenticated(self) -> bool:
        """Report whether a usable session exists, renewing once if expired.

        Declines to renew while on the entry surface so the sign-in
        screen cannot trigger a renewal loop of its own.
        """
        access = self._store.get(ACCESS_TOKEN_KEY)
        refresh = self._store.get(REFRESH_TOKEN_KEY)
        if not access or not refresh:
            self._set_authenticated(False)
            return False

        expires_at = self._store.get_expires_at_ms()
        if expires_at is None:
            logger.warning("Credential expiry is missing or malformed; clearing session")
            self._store.clear()
            self._set_authenticated(False)
            return False

        if self._now_ms() >= expires_at:
            if self._navigator.at_entry_surface():
                self._set_authenticated(False)
                return False
            logger.info("Access token expired; renewing")
            return await self._renew()

        self._set_authenticated(True)
        return True

    # --- renewal scheduling ---

    def schedule_renewal(self, force_immediate: bool = False) -> float | None:
        """Arm the single renewal timer, replacing any existing one.

        Args:
            force_immediate: Fire on the next loop iteration regardless
                of the stored expiry.

        Returns:
            The delay in seconds, or None when there is no expiry to
            schedule against.
        """
        self._cancel_timer()
        expires_at = self._store.get_expires_at_ms()
        if force_immediate:
            delay_ms = 0
        elif expires_at is None:
            return None
        else:
            delay_ms = max(0, expires_at - self._now_ms() - self._lead_window_ms)

        loop = asyncio.get_running_loop()
        delay = delay_ms / 1000
        self._timer = loop.call_later(delay, self._on_renewal_timer)
        self.next_renewal_delay = delay
        logger.debug("Token renewal scheduled in %.1fs", delay)
        return delay

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.next_renewal_delay = None

    def _on_renewal_timer(self) -> None:
        self._timer = None
        self.next_renewal_delay = None
        self._spawn(self._renew())

    async def refresh_now(self) -> bool:
        """Force a renewal now; the next cycle is armed on success."""
        return await self._renew()

    async def handle_unauthorized(self) -> bool:
        """Recover after the server rejected the access token.

        Joins the shared in-flight renewal, so a burst of rejected
        requests produces a single renewal call. A failed renewal ends
        the session like any other.

        Returns:
            True when a fresh access token is stored.
        """
        if not self.is_authenticated and not self._store.get(REFRESH_TOKEN_KEY):
            return False
        return await self._renew()

    async def _renew(self) -> bool:
        """Join the in-flight renewal or start one."""
        if self._renewal_task is None or self._renewal_task.done():
            self._renewal_task = asyncio.ensure_future(self._perform_renewal())
        return await asyncio.shield(self._renewal_task)

    async def _perform_renewal(self) -> bool:
        # Re-read at fire time: another process may have rotated it.
        refresh = self._store.get(REFRESH_TOKEN_KEY)
        if not refresh:
            logger.warning("No renewal credential available; signing out")
            self._end_session()
            return False
        try:
            pair = await self._transport.renew(refresh)
        except KbChatClientError as exc:
            logger.warning(
                "Session renewal failed (HTTP %s: %s); signing out",
                exc.status_code, sanitize_error_message(exc.message),
            )
            self._end_session()
            return False
        except Exception:
            logger.warning("Session renewal failed unexpectedly; signing out", exc_info=True)
            self._end_session()
            return False

        self._store_tokens(pair)
        self._set_authenticated(True)
        logger.info("Session renewed")
        self.schedule_renewal()
        return True

    def _store_tokens(self, pair: TokenPair) -> None:
        lifetime_ms = (
            pair.expires_in * 1000 if pair.expires_in else self._default_lifetime_ms
        )
        self._store.set_tokens(
            pair.access_token, pair.refresh_token, self._now_ms() + lifetime_ms
        )

    def _end_session(self) -> None:
        self._cancel_timer()
        self._store.clear()
        self._set_authenticated(False)
        if not self._navigator.at_entry_surface():
            self._navigator.to_entry_surface()

    # --- sign in / out ---

    async def login(self, identifier: str, secret: str) -> None:
        """Authenticate, store the credential record and arm renewal.

        Raises:
            KbChatClientError: If the server rejects the credentials.
        """
        try:
            pair = await self._transport.login(identifier, secret)
        except KbChatClientError:
            self._set_authenticated(False)
            raise
        self._store_tokens(pair)
        await self.check_authenticated()
        self.schedule_renewal()
        logger.info("Signed in as %s", identifier)

    def logout(self) -> None:
        """Cancel renewal, clear credentials and go to the entry surface."""
        if self._renewal_task is not None and not self._renewal_task.done():
            self._renewal_task.cancel()
        self._end_session()
        logger.info("Signed out")

    # --- external triggers ---

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key == ACCESS_TOKEN_KEY and change.new_value != change.old_value:
            self._spawn(self._resync_after_external_change())

    async def _resync_after_external_change(self) -> None:
        if await self.check_authenticated():
            self.schedule_renewal()
        else:
            self._cancel_timer()

    def handle_visibility_change(self, visible: bool) -> asyncio.Task[Any] | None:
        """Re-check credentials when the client resumes from hidden.

        Covers suspension across an expiry boundary, where the renewal
        timer could not fire.

        Returns:
            The spawned check task on a hidden-to-visible transition.
        """
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible:
            logger.debug("Client resumed; re-checking session")
            return self._spawn(self.check_authenticated())
        return None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session background task failed", exc_info=exc)
