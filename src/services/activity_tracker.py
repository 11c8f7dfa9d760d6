"""Recent-activity signal used to pick the conversation polling cadence.

The REPL reports every keystroke-level interaction via record(). The
signal counts as active until decay_window seconds pass without input.
is_active is recomputed from the clock on every read; the decay-check
timer only exists to notify listeners when the signal flips to idle.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivitySignal:
    """Point-in-time view of user activity."""

    last_interaction_at_ms: int
    is_active: bool


class ActivityTracker:
    """Observes user input and exposes a decaying 'recently active' flag."""

    def __init__(
        self,
        decay_window_seconds: float = 60.0,
        check_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
        on_change: Callable[[ActivitySignal], None] | None = None,
    ) -> None:
        self._decay_window_ms = int(decay_window_seconds * 1000)
        self._check_interval = check_interval_seconds
        self._clock = clock
        self._on_change = on_change
        self._last_interaction_ms = 0
        self._last_reported: bool = False
        self._timer: asyncio.TimerHandle | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def is_active(self) -> bool:
        """True when input was seen within the decay window."""
        if not self._last_interaction_ms:
            return False
        return self._now_ms() - self._last_interaction_ms < self._decay_window_ms

    def snapshot(self) -> ActivitySignal:
        """Return the current signal."""
        return ActivitySignal(self._last_interaction_ms, self.is_active)

    def record(self, kind: str = "key") -> None:
        """Register a user interaction (pointer, key, click, ...)."""
        self._last_interaction_ms = self._now_ms()
        logger.debug("Activity: %s", kind)
        self._report()

    def start(self) -> None:
        """Arm the periodic decay check."""
        if self._timer is None:
            self._arm()

    def stop(self) -> None:
        """Cancel the decay check."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._check_interval, self._on_check)

    def _on_check(self) -> None:
        self._report()
        self._arm()

    def _report(self) -> None:
        current = self.is_active
        if current != self._last_reported:
            self._last_reported = current
            if self._on_change is not None:
                self._on_change(self.snapshot())
