"""Keeps one conversation's local message list in step with the server.

The engine polls the message list on a self-rescheduling timer. The
next poll is armed only after the previous fetch has completed, so two
fetches for the same conversation never overlap. The delay is chosen
per cycle:

- waiting interval while an assistant reply is pending,
- active interval while the user has interacted recently,
- idle interval otherwise.

Sends are gated: blank input and input while a reply is pending are
rejected before any network call. A successful send is inserted into
local state immediately (by id, so the next fetch cannot duplicate it).

The engine also models the viewport: a renderer reports the scroll
distance from the bottom, and new data is only pulled into view while
that distance is under the threshold. Otherwise a "jump to latest"
affordance is raised instead.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from src.cli.protocol import (
    KbChatClientError,
    KbChatTransport,
    Message,
    MessageKind,
    MessageStatus,
)
from src.errors import SendRejectedError, ValidationError
from src.services.activity_tracker import ActivityTracker
from src.services.message_merge import merge_messages
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

PENDING_ASSISTANT_STATUSES = frozenset({MessageStatus.RECEIVED, MessageStatus.PROCESSING})


@dataclass(frozen=True)
class ConversationView:
    """Everything a renderer needs to draw the conversation."""

    conversation_id: str | None
    messages: list[Message]
    waiting_for_assistant: bool
    show_jump_to_latest: bool
    last_error: str | None


class ConversationSyncEngine:
    """Polling, send gating and viewport state for a single conversation.

    Attributes:
        knowledge_base_id: Knowledge base the conversation belongs to.
        conversation_id: Server id of the open conversation, or None.
        show_jump_to_latest: True when unseen data arrived while the
            viewport was scrolled away from the bottom.
        last_error: Latest send or provisioning error, for display.
    """

    def __init__(
        self,
        transport: KbChatTransport,
        activity: ActivityTracker | None = None,
        *,
        waiting_interval: float = 2.0,
        active_interval: float = 5.0,
        idle_interval: float = 15.0,
        bottom_threshold_px: float = 100.0,
        ordering_bucket_seconds: float = 1.0,
        reply_grace_seconds: float = 30.0,
        on_change: Callable[[ConversationView], None] | None = None,
        on_scroll_to_latest: Callable[[], None] | None = None,
    ) -> None:
        self._transport = transport
        self._activity = activity
        self._waiting_interval = waiting_interval
        self._active_interval = active_interval
        self._idle_interval = idle_interval
        self._bottom_threshold = bottom_threshold_px
        self._reply_tolerance = ordering_bucket_seconds
        self._reply_grace = reply_grace_seconds
        self._on_change = on_change
        self._on_scroll_to_latest = on_scroll_to_latest

        self.knowledge_base_id: str | None = None
        self.conversation_id: str | None = None
        self.title = ""
        self.show_jump_to_latest = False
        self.last_error: str | None = None

        self._messages: list[Message] = []
        # Bumped whenever the conversation changes; fetches started under
        # an older generation are discarded.
        self._generation = 0
        self._send_in_flight = False
        self._awaiting_reply_to: str | None = None
        self._awaiting_since = 0.0
        self._distance_from_bottom = 0.0

        self._running = False
        self._timer: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # --- state ---

    @property
    def messages(self) -> list[Message]:
        """Local messages in display order."""
        return list(self._messages)

    def is_waiting_for_assistant(self) -> bool:
        """True while an assistant message is received or processing."""
        return any(
            m.kind == MessageKind.ASSISTANT and m.status in PENDING_ASSISTANT_STATUSES
            for m in self._messages
        )

    @property
    def input_locked(self) -> bool:
        """True while new input must be refused.

        Covers the window between a successful send and the first fetch
        that shows the assistant's reply, in addition to a pending reply.
        """
        return (
            self._send_in_flight
            or self._awaiting_reply_to is not None
            or self.is_waiting_for_assistant()
        )

    @property
    def is_near_bottom(self) -> bool:
        """True while the viewport is within the bottom threshold."""
        return self._distance_from_bottom < self._bottom_threshold

    def view(self) -> ConversationView:
        """Snapshot for renderers."""
        return ConversationView(
            conversation_id=self.conversation_id,
            messages=self.messages,
            waiting_for_assistant=self.input_locked,
            show_jump_to_latest=self.show_jump_to_latest,
            last_error=self.last_error,
        )

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.view())

    def _set_conversation(self, conversation_id: str | None) -> None:
        self._generation += 1
        self.conversation_id = conversation_id
        self._messages = []
        self._awaiting_reply_to = None
        self.show_jump_to_latest = False

    # --- lifecycle ---

    async def open(self, knowledge_base_id: str, title: str = "") -> str:
        """Attach to the knowledge base's conversation, creating one if needed.

        Performs the initial fetch and starts the polling loop.

        Args:
            knowledge_base_id: Knowledge base to chat with.
            title: Title used when a conversation has to be created.

        Returns:
            The conversation id.

        Raises:
            KbChatClientError: If conversations cannot be listed or created.
        """
        self.stop()
        self.knowledge_base_id = knowledge_base_id
        self.title = title or f"Chat about {knowledge_base_id}"
        conversations = await self._transport.list_conversations()
        existing = next(
            (c for c in conversations if c.knowledge_base_id == knowledge_base_id), None
        )
        if existing is not None:
            conversation = existing
            logger.info("Reusing conversation %s", conversation.id)
        else:
            conversation = await self._transport.create_conversation(self.title, knowledge_base_id)
            logger.info("Created conversation %s", conversation.id)
        self.title = conversation.title or self.title
        self._set_conversation(conversation.id)
        await self.sync()
        self._request_scroll_to_latest()
        self.start()
        return conversation.id

    def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return
        self._running = True
        self._arm(self.next_poll_delay())

    def stop(self) -> None:
        """Stop polling; in-flight fetches finish but are not re-armed."""
        self._running = False
        self._cancel_timer()

    async def close(self) -> None:
        """Stop polling and cancel background work."""
        self.stop()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error while cancelling sync task: %s", e)

    # --- polling ---

    def next_poll_delay(self) -> float:
        """Seconds until the next fetch, given the current state."""
        if self.input_locked:
            return self._waiting_interval
        if self._activity is not None and self._activity.is_active:
            return self._active_interval
        return self._idle_interval

    def _arm(self, delay: float) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_poll_timer)
        logger.debug("Next message sync in %.1fs", delay)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_poll_timer(self) -> None:
        self._timer = None
        self._spawn(self._poll_cycle())

    async def _poll_cycle(self) -> None:
        try:
            await self.sync()
        finally:
            if self._running and self._timer is None:
                self._arm(self.next_poll_delay())

    def _reschedule(self) -> None:
        # Only re-arm an idle timer; a cycle in progress re-arms itself.
        if self._running and self._timer is not None:
            self._arm(self.next_poll_delay())

    async def sync(self) -> bool:
        """Fetch the message list once and merge it into local state.

        Transient fetch errors are logged and the cycle is skipped;
        local state is left untouched. An unauthorized response stops
        the polling loop.

        Returns:
            True when local state changed.
        """
        conversation_id = self.conversation_id
        if conversation_id is None:
            return False
        generation = self._generation
        try:
            fetched = await self._transport.list_messages(conversation_id)
        except KbChatClientError as exc:
            if exc.status_code == 401:
                # Renewal was already attempted by the transport.
                logger.warning(
                    "Message sync for %s was refused; polling stops until sign-in",
                    conversation_id,
                )
                self.stop()
                return False
            logger.warning(
                "Message sync for %s failed: %s",
                conversation_id, sanitize_error_message(exc.message),
            )
            return False
        if generation != self._generation:
            logger.debug("Discarding messages fetched for a replaced conversation")
            return False

        was_locked = self.input_locked
        result = merge_messages(self._messages, fetched, self._reply_tolerance)
        self._messages = result.messages
        self._settle_awaiting_reply()

        if result.changed:
            if self.is_near_bottom:
                self.show_jump_to_latest = False
                self._request_scroll_to_latest()
            else:
                self.show_jump_to_latest = True
        if result.changed or was_locked != self.input_locked:
            self._notify()
        return result.changed

    def _settle_awaiting_reply(self) -> None:
        sent_id = self._awaiting_reply_to
        if sent_id is None:
            return
        index = next((i for i, m in enumerate(self._messages) if m.id == sent_id), None)
        if index is None or self._messages[index].status == MessageStatus.FAILED:
            self._awaiting_reply_to = None
            return
        # Display order already places a reply after its prompt.
        if any(m.kind == MessageKind.ASSISTANT for m in self._messages[index + 1:]):
            self._awaiting_reply_to = None
            return
        loop = asyncio.get_running_loop()
        if loop.time() - self._awaiting_since >= self._reply_grace:
            logger.info("No reply to message %s yet; unlocking input", sent_id)
            self._awaiting_reply_to = None

    # --- sending ---

    async def send(self, text: str) -> Message | None:
        """Send a user message.

        Args:
            text: Message text.

        Returns:
            The created message, or None when the transport failed (the
            failure is recorded in last_error and input is unlocked).

        Raises:
            SendRejectedError: If the text is blank (E-2001), a reply is
                pending (E-2002), or no knowledge base is open (E-2003).
        """
        if not text or not text.strip():
            raise SendRejectedError("E-2001", "Message is empty")
        if self.input_locked:
            raise SendRejectedError("E-2002", "The assistant is still answering")
        if self.conversation_id is None and self.knowledge_base_id is None:
            raise SendRejectedError("E-2003", "No conversation is open")

        self._send_in_flight = True
        self._notify()
        try:
            if self.conversation_id is None:
                await self._provision_conversation()
            generation = self._generation
            message = await self._transport.send_message(self.conversation_id, text)
        except KbChatClientError as exc:
            self.last_error = sanitize_error_message(exc.message)
            logger.warning("Send failed: %s", self.last_error)
            return None
        finally:
            self._send_in_flight = False
            self._notify()

        if generation != self._generation:
            return message
        self.last_error = None
        result = merge_messages(self._messages, [message], self._reply_tolerance)
        self._messages = result.messages
        self._awaiting_reply_to = message.id
        self._awaiting_since = asyncio.get_running_loop().time()
        self._distance_from_bottom = 0.0
        self.show_jump_to_latest = False
        self._request_scroll_to_latest()
        self._notify()
        self._reschedule()
        return message

    async def _provision_conversation(self) -> None:
        conversation = await self._transport.create_conversation(
            self.title, self.knowledge_base_id
        )
        logger.info("Created conversation %s", conversation.id)
        self._set_conversation(conversation.id)

    async def delete_conversation(self) -> bool:
        """Delete the open conversation and start a fresh one.

        Returns:
            True when the conversation was deleted. If creating the
            replacement fails, the next send provisions one lazily.
        """
        conversation_id = self.conversation_id
        if conversation_id is None:
            return False
        try:
            await self._transport.delete_conversation(conversation_id)
        except KbChatClientError as exc:
            self.last_error = sanitize_error_message(exc.message)
            logger.warning("Could not delete conversation %s: %s", conversation_id, self.last_error)
            self._notify()
            return False

        self._set_conversation(None)
        self.last_error = None
        try:
            await self._provision_conversation()
        except KbChatClientError as exc:
            self.last_error = sanitize_error_message(exc.message)
            logger.warning("Could not create a replacement conversation: %s", self.last_error)
        self._notify()
        self._reschedule()
        return True

    async def rename_conversation(self, title: str) -> bool:
        """Change the open conversation's title.

        Returns:
            True when the server accepted the new title.

        Raises:
            ValidationError: If the title is blank.
        """
        if not title.strip():
            raise ValidationError("E-2005", "Conversation title is empty")
        if self.conversation_id is None:
            return False
        try:
            conversation = await self._transport.update_conversation(
                self.conversation_id, title.strip()
            )
        except KbChatClientError as exc:
            self.last_error = sanitize_error_message(exc.message)
            logger.warning("Could not rename conversation: %s", self.last_error)
            self._notify()
            return False
        self.title = conversation.title or title.strip()
        return True

    # --- viewport ---

    def update_viewport(self, distance_from_bottom: float) -> asyncio.Task[Any] | None:
        """Record the scroll distance from the bottom of the message list.

        Returns:
            The catch-up fetch task when the viewport just reached the
            bottom, else None.
        """
        was_near = self.is_near_bottom
        self._distance_from_bottom = max(0.0, distance_from_bottom)
        if not self.is_near_bottom:
            return None
        task = None
        if self.show_jump_to_latest:
            self.show_jump_to_latest = False
            self._notify()
        if not was_near:
            task = self._spawn(self.sync())
        return task

    def jump_to_latest(self) -> asyncio.Task[Any]:
        """Scroll to the bottom and fetch once."""
        self._distance_from_bottom = 0.0
        self.show_jump_to_latest = False
        self._request_scroll_to_latest()
        self._notify()
        return self._spawn(self.sync())

    def _request_scroll_to_latest(self) -> None:
        self._distance_from_bottom = 0.0
        if self._on_scroll_to_latest is not None:
            self._on_scroll_to_latest()

    # --- plumbing ---

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
            logger.error("Conversation sync task failed", exc_info=exc)
