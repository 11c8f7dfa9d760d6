"""Local view of a knowledge base's documents and curated questions.

A tracker owns the in-memory collection for one resource kind in one
knowledge base and drives a ResourcePoller for every entry that is not
yet terminal. Entries are replaced wholesale by each fetched snapshot,
so the view always shows the newest state the client has seen.

A FAILED entry is a normal state with a retry affordance: retry()
re-submits it and starts a fresh polling cycle. An entry whose polling
was abandoned after a fetch error is marked UNKNOWN.
"""

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Generic, TypeVar

from src.cli.protocol import (
    TERMINAL_RESOURCE_STATUSES,
    Document,
    KbChatClientError,
    KbChatTransport,
    Question,
    ResourceStatus,
)
from src.errors import NotFoundError, ValidationError
from src.services.resource_poller import ResourcePoller
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

R = TypeVar("R", Document, Question)


def is_terminal(resource: Document | Question) -> bool:
    """True when no further status change is expected without a retry."""
    return resource.status in TERMINAL_RESOURCE_STATUSES


class ResourceTracker(ABC, Generic[R]):
    """Shared bookkeeping for DocumentTracker and QuestionTracker."""

    kind = "resource"

    def __init__(
        self,
        transport: KbChatTransport,
        knowledge_base_id: str,
        *,
        poll_interval: float = 2.0,
        on_change: Callable[[list[R]], None] | None = None,
    ) -> None:
        self._transport = transport
        self.knowledge_base_id = knowledge_base_id
        self._poll_interval = poll_interval
        self._on_change = on_change
        self._items: dict[str, R] = {}
        self._poller: ResourcePoller[R] = ResourcePoller(self.kind)

    # --- transport hooks ---

    @abstractmethod
    async def _fetch(self, resource_id: str) -> R:
        """Fetch one resource's current snapshot."""

    @abstractmethod
    async def _list(self) -> list[R]:
        """List every resource of this kind in the knowledge base."""

    @abstractmethod
    async def _retry(self, resource_id: str) -> R:
        """Re-submit a resource for processing."""

    @abstractmethod
    async def _delete(self, resource_id: str) -> None:
        """Delete a resource server-side."""

    # --- queries ---

    @property
    def items(self) -> list[R]:
        """Tracked resources in insertion order."""
        return list(self._items.values())

    def get(self, resource_id: str) -> R:
        """Return a tracked resource.

        Raises:
            NotFoundError: If the id is not tracked.
        """
        try:
            return self._items[resource_id]
        except KeyError:
            raise NotFoundError(self.kind.capitalize(), resource_id) from None

    def count(self, status: ResourceStatus) -> int:
        """Number of tracked resources in the given status."""
        return sum(1 for r in self._items.values() if r.status == status)

    def pending_count(self) -> int:
        return self.count(ResourceStatus.PENDING)

    def processing_count(self) -> int:
        return self.count(ResourceStatus.PROCESSING)

    def failed_count(self) -> int:
        return self.count(ResourceStatus.FAILED)

    def has_processing(self) -> bool:
        """True while any resource is pending or processing."""
        return bool(self.count(ResourceStatus.PENDING) or self.count(ResourceStatus.PROCESSING))

    def is_polling(self, resource_id: str) -> bool:
        """True while a polling cycle runs for resource_id."""
        return self._poller.is_polling(resource_id)

    # --- mutations ---

    async def refresh(self) -> list[R]:
        """Reload the collection and resume polling non-terminal entries.

        Raises:
            KbChatClientError: If the list request fails.
        """
        fetched = await self._list()
        fetched_ids = {r.id for r in fetched}
        for stale_id in set(self._items) - fetched_ids:
            self._poller.cancel(stale_id)
        self._items = {r.id: r for r in fetched}
        for resource in fetched:
            if not is_terminal(resource) and not self._poller.is_polling(resource.id):
                self._start_polling(resource.id)
        self._notify()
        return self.items

    def track(self, resource: R) -> None:
        """Add or replace an entry and poll it until terminal."""
        self._items[resource.id] = resource
        self._notify()
        if not is_terminal(resource):
            self._start_polling(resource.id)

    async def retry(self, resource_id: str) -> R:
        """Re-submit a resource and start a fresh polling cycle.

        Raises:
            KbChatClientError: If the retry request fails.
        """
        resource = await self._retry(resource_id)
        self._items[resource_id] = resource
        self._notify()
        self._start_polling(resource_id)
        logger.info("Retrying %s %s", self.kind, resource_id)
        return resource

    async def delete(self, resource_id: str) -> None:
        """Delete a resource server-side and stop tracking it.

        Raises:
            KbChatClientError: If the delete request fails.
        """
        await self._delete(resource_id)
        self._poller.cancel(resource_id)
        self._items.pop(resource_id, None)
        self._notify()

    async def wait_for(self, resource_id: str) -> R:
        """Wait for the current polling cycle of resource_id to end.

        Returns:
            The latest known state (terminal, or UNKNOWN after an error).
        """
        task = self._poller.task_for(resource_id)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.get(resource_id)

    def close(self) -> None:
        """Cancel every polling cycle."""
        self._poller.cancel_all()

    # --- polling plumbing ---

    def _start_polling(self, resource_id: str) -> None:
        self._poller.poll_until_terminal(
            resource_id,
            self._fetch,
            is_terminal,
            self._poll_interval,
            self._on_update,
            self._on_error,
        )

    def _on_update(self, snapshot: R) -> None:
        if snapshot.id not in self._items:
            return
        self._items[snapshot.id] = snapshot
        self._notify()

    def _on_error(self, resource_id: str, exc: Exception) -> None:
        current = self._items.get(resource_id)
        if current is None:
            return
        message = exc.message if isinstance(exc, KbChatClientError) else str(exc) or type(exc).__name__
        self._items[resource_id] = dataclasses.replace(
            current,
            status=ResourceStatus.UNKNOWN,
            error_message=sanitize_error_message(message),
        )
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.items)


class DocumentTracker(ResourceTracker[Document]):
    """Tracks uploaded documents through ingestion."""

    kind = "document"

    async def _fetch(self, resource_id: str) -> Document:
        return await self._transport.get_document(self.knowledge_base_id, resource_id)

    async def _list(self) -> list[Document]:
        return await self._transport.list_documents(self.knowledge_base_id)

    async def _retry(self, resource_id: str) -> Document:
        return await self._transport.retry_document(self.knowledge_base_id, resource_id)

    async def _delete(self, resource_id: str) -> None:
        await self._transport.delete_document(self.knowledge_base_id, resource_id)

    async def upload(self, file_path: str) -> Document:
        """Upload a file and poll its ingestion.

        Raises:
            KbChatClientError: If the upload is rejected.
        """
        document = await self._transport.upload_document(self.knowledge_base_id, file_path)
        logger.info("Uploaded %s as document %s", file_path, document.id)
        self.track(document)
        return document


class QuestionTracker(ResourceTracker[Question]):
    """Tracks curated question/answer pairs through ingestion."""

    kind = "question"

    async def _fetch(self, resource_id: str) -> Question:
        return await self._transport.get_question(self.knowledge_base_id, resource_id)

    async def _list(self) -> list[Question]:
        return await self._transport.list_questions(self.knowledge_base_id)

    async def _retry(self, resource_id: str) -> Question:
        return await self._transport.retry_question(self.knowledge_base_id, resource_id)

    async def _delete(self, resource_id: str) -> None:
        await self._transport.delete_question(self.knowledge_base_id, resource_id)

    async def create(self, question: str, answer: str, answer_type: str = "DIRECT") -> Question:
        """Create a question/answer pair and poll its ingestion.

        Raises:
            ValidationError: If question or answer is blank.
            KbChatClientError: If the server rejects the question.
        """
        if not question.strip() or not answer.strip():
            raise ValidationError("E-2004", "Question and answer are required")
        created = await self._transport.create_question(
            self.knowledge_base_id, question.strip(), answer.strip(), answer_type
        )
        self.track(created)
        return created
