"""Role-based gating of CLI surfaces.

The signed-in user's role is fetched once per session and cached.
reset() drops the cache on sign-out so the next session fetches again.
"""

import logging

from src.cli.protocol import KbChatTransport, UserProfile

logger = logging.getLogger(__name__)


class RoleGate:
    """Answers whether the current user holds one of a set of roles."""

    def __init__(self, transport: KbChatTransport) -> None:
        self._transport = transport
        self._profile: UserProfile | None = None

    @property
    def profile(self) -> UserProfile | None:
        """Cached profile, or None before the first fetch."""
        return self._profile

    async def current_user(self) -> UserProfile:
        """Return the signed-in user's profile, fetching it once.

        Raises:
            KbChatClientError: If the profile cannot be fetched.
        """
        if self._profile is None:
            self._profile = await self._transport.get_current_user()
            logger.debug("Fetched profile for %s (%s)", self._profile.email, self._profile.role)
        return self._profile

    async def has_role(self, *roles: str) -> bool:
        """True when the user's role is one of roles (case-insensitive)."""
        profile = await self.current_user()
        wanted = {r.upper() for r in roles}
        return (profile.role or "").upper() in wanted

    def reset(self) -> None:
        """Forget the cached profile."""
        self._profile = None
