"""Generic poll-until-terminal loop for server-side ingestion work.

Used for documents and curated questions alike. Each resource id has
at most one polling cycle; starting a new cycle for the same id (for
example after a retry) cancels the old one first. A cycle stops on the
first terminal snapshot, and on the first fetch error it stops as well
rather than retrying, so a failing resource costs a bounded number of
requests.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from src.cli.protocol import KbChatClientError
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

R = TypeVar("R")


class ResourcePoller(Generic[R]):
    """Owns the polling tasks for one kind of resource.

    Attributes:
        name: Resource kind used in log messages ("document", "question").
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._active: dict[str, asyncio.Task[R | None]] = {}

    def poll_until_terminal(
        self,
        resource_id: str,
        fetch_status: Callable[[str], Awaitable[R]],
        is_terminal: Callable[[R], bool],
        interval: float,
        on_update: Callable[[R], None],
        on_error: Callable[[str, Exception], None] | None = None,
    ) -> asyncio.Task[R | None]:
        """Start a fresh polling cycle for resource_id.

        Every tick waits interval seconds, fetches the current snapshot
        and hands it to on_update before checking for a terminal state.

        Args:
            resource_id: Id passed to fetch_status.
            fetch_status: Coroutine function returning the latest snapshot.
            is_terminal: Predicate that ends the cycle.
            interval: Seconds between fetches.
            on_update: Receives every fetched snapshot.
            on_error: Receives the id and error when a fetch fails.

        Returns:
            The polling task; its result is the terminal snapshot, or None
            when the cycle was abandoned after an error.
        """
        self.cancel(resource_id)
        task = asyncio.ensure_future(
            self._run(resource_id, fetch_status, is_terminal, interval, on_update, on_error)
        )
        self._active[resource_id] = task
        task.add_done_callback(lambda t, rid=resource_id: self._forget(rid, t))
        logger.debug("Polling %s %s every %.1fs", self.name, resource_id, interval)
        return task

    async def _run(
        self,
        resource_id: str,
        fetch_status: Callable[[str], Awaitable[R]],
        is_terminal: Callable[[R], bool],
        interval: float,
        on_update: Callable[[R], None],
        on_error: Callable[[str, Exception], None] | None,
    ) -> R | None:
        while True:
            await asyncio.sleep(interval)
            try:
                snapshot = await fetch_status(resource_id)
            except Exception as exc:
                is_client_error = isinstance(exc, KbChatClientError)
                reason = exc.message if is_client_error else str(exc) or type(exc).__name__
                logger.warning(
                    "Stopped polling %s %s after fetch error: %s",
                    self.name, resource_id, sanitize_error_message(reason),
                    exc_info=not is_client_error,
                )
                if on_error is not None:
                    on_error(resource_id, exc)
                return None
            on_update(snapshot)
            if is_terminal(snapshot):
                logger.debug("%s %s reached a terminal state", self.name, resource_id)
                return snapshot

    def _forget(self, resource_id: str, task: asyncio.Task[R | None]) -> None:
        if self._active.get(resource_id) is task:
            del self._active[resource_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Polling %s %s crashed", self.name, resource_id, exc_info=task.exception()
            )

    def task_for(self, resource_id: str) -> asyncio.Task[R | None] | None:
        """Return the running cycle for resource_id, if any."""
        task = self._active.get(resource_id)
        if task is None or task.done():
            return None
        return task

    def is_polling(self, resource_id: str) -> bool:
        """True while a cycle for resource_id is running."""
        return self.task_for(resource_id) is not None

    @property
    def active_ids(self) -> list[str]:
        """Ids with a running polling cycle."""
        return [rid for rid, task in self._active.items() if not task.done()]

    def cancel(self, resource_id: str) -> None:
        """Cancel the cycle for resource_id, if any."""
        task = self._active.pop(resource_id, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all(self) -> None:
        """Cancel every running cycle."""
        for resource_id in list(self._active):
            self.cancel(resource_id)
