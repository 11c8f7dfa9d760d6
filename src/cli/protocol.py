"""KbChatTransport protocol and client data models.

Defines the interface the synchronization core consumes and the
JSON-shaped records it exchanges with the knowledge base API. The core
is written against this abstraction and never imports httpx directly.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def parse_timestamp(value: str | None) -> datetime:
    """Parse an API timestamp into a timezone-aware datetime.

    Naive timestamps are treated as UTC. Missing or malformed values
    sort first (Unix epoch).

    Args:
        value: ISO-8601 string from the API, or None.

    Returns:
        Timezone-aware datetime.
    """
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageKind(str, Enum):
    """Author of a conversation message."""

    USER = "USER"
    ASSISTANT = "ASSISTANT"


class MessageStatus(str, Enum):
    """Processing state of a message.

    SENT and FAILED are terminal. RECEIVED is also a valid resting
    state for a USER message that has not triggered assistant work.
    """

    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


# Forward-only ordering used to reject status regressions.
MESSAGE_STATUS_RANK = {
    MessageStatus.RECEIVED: 0,
    MessageStatus.PROCESSING: 1,
    MessageStatus.SENT: 2,
    MessageStatus.FAILED: 2,
}


class ResourceStatus(str, Enum):
    """Ingestion state of a document or curated question.

    UNKNOWN never comes from the server: it marks a resource whose
    polling cycle was abandoned after a fetch error.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_api(cls, value: str | None) -> "ResourceStatus":
        """Map a server status string, accepting the COMPLETED alias."""
        if value == "COMPLETED":
            return cls.PROCESSED
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


TERMINAL_RESOURCE_STATUSES = frozenset({ResourceStatus.PROCESSED, ResourceStatus.FAILED})


@dataclass
class TokenPair:
    """Credentials returned by login and renewal."""

    access_token: str
    refresh_token: str
    expires_in: int | None = None

    @classmethod
    def from_api(cls, data: dict) -> "TokenPair":
        """Construct from API JSON, tolerating extra fields."""
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=int(expires_in) if expires_in is not None else None,
        )


@dataclass
class UserProfile:
    """The signed-in user as reported by /users/me."""

    id: str
    email: str
    role: str
    full_name: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "UserProfile":
        """Construct from API JSON, tolerating extra fields."""
        return cls(
            id=data["id"],
            email=data.get("email", ""),
            role=data.get("role", "user"),
            full_name=data.get("full_name", ""),
        )


@dataclass
class Source:
    """A retrieved passage cited by an assistant message."""

    score: float
    document_id: str
    title: str
    content: str
    chunk_index: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "Source":
        """Construct from API JSON, tolerating extra fields."""
        return cls(
            score=float(data.get("score", 0.0)),
            document_id=data.get("document_id", ""),
            title=data.get("title", ""),
            content=data.get("content", ""),
            chunk_index=data.get("chunk_index", 0),
        )


@dataclass
class Message:
    """A single conversation message.

    Aligned with the /conversations/{id}/messages response shape.
    """

    id: str
    conversation_id: str
    kind: MessageKind
    content: str
    status: MessageStatus
    created_at: datetime
    updated_at: datetime
    sources: list[Source] | None = None
    content_type: str = "TEXT"

    @classmethod
    def from_api(cls, data: dict) -> "Message":
        """Construct from API JSON, tolerating extra fields."""
        sources = data.get("sources")
        return cls(
            id=str(data["id"]),
            conversation_id=data.get("conversation_id", ""),
            kind=MessageKind(data.get("kind", "USER")),
            content=data.get("content", ""),
            status=MessageStatus(data.get("status", "RECEIVED")),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            sources=[Source.from_api(s) for s in sources] if sources else None,
            content_type=data.get("content_type", "TEXT"),
        )


@dataclass
class Conversation:
    """A conversation bound to a knowledge base."""

    id: str
    title: str
    knowledge_base_id: str
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "Conversation":
        """Construct from API JSON, tolerating extra fields."""
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            knowledge_base_id=data.get("knowledge_base_id", ""),
            is_active=data.get("is_active", True),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class KnowledgeBase:
    """A collection of documents and curated questions."""

    id: str
    name: str
    description: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "KnowledgeBase":
        """Construct from API JSON, tolerating extra fields."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description") or "",
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class Document:
    """An uploaded document and its ingestion status."""

    id: str
    title: str
    status: ResourceStatus
    error_message: str | None = None
    knowledge_base_id: str = ""
    file_type: str = ""
    size_bytes: int = 0
    processed_chunks: int | None = None
    summary: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "Document":
        """Construct from API JSON, tolerating extra fields."""
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            status=ResourceStatus.from_api(data.get("status")),
            error_message=data.get("error_message"),
            knowledge_base_id=data.get("knowledge_base_id", ""),
            file_type=data.get("file_type", ""),
            size_bytes=data.get("size_bytes", 0),
            processed_chunks=data.get("processed_chunks"),
            summary=data.get("summary"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class Question:
    """A curated question/answer pair and its ingestion status."""

    id: str
    question: str
    answer: str
    status: ResourceStatus
    answer_type: str = "DIRECT"
    error_message: str | None = None
    knowledge_base_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "Question":
        """Construct from API JSON, tolerating extra fields."""
        return cls(
            id=data["id"],
            question=data.get("question", ""),
            answer=data.get("answer", ""),
            status=ResourceStatus.from_api(data.get("status")),
            answer_type=data.get("answer_type", "DIRECT"),
            error_message=data.get("error_message"),
            knowledge_base_id=data.get("knowledge_base_id", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class HealthStatus:
    """API reachability report."""

    healthy: bool
    detail: str = ""
    extra: dict = field(default_factory=dict)


class KbChatClientError(Exception):
    """Transport-neutral error raised by KbChatTransport implementations.

    The synchronization core catches this at the boundary where it
    occurs; CLI commands convert it into a rich error message and
    typer.Exit(1).

    Attributes:
        message: Server detail or a description of the failure.
        status_code: HTTP status, or None when no usable response arrived.
        unreachable: True when the server could not be contacted at all,
            as opposed to answering with something unusable.
    """

    def __init__(
        self, message: str, status_code: int | None = None, unreachable: bool = False
    ):
        self.message = message
        self.status_code = status_code
        self.unreachable = unreachable
        super().__init__(message)

    @property
    def is_auth_failure(self) -> bool:
        """True when the server rejected the credentials."""
        return self.status_code in (401, 403)


class KbChatTransport(Protocol):
    """Protocol defining the API surface the synchronization core needs."""

    async def login(self, identifier: str, secret: str) -> TokenPair:
        """Exchange user credentials for a token pair."""
        ...

    async def renew(self, refresh_token: str) -> TokenPair:
        """Exchange a renewal credential for a fresh token pair."""
        ...

    async def get_current_user(self) -> UserProfile:
        """Fetch the signed-in user's profile."""
        ...

    async def list_conversations(self) -> list[Conversation]:
        """List the user's conversations."""
        ...

    async def create_conversation(self, title: str, knowledge_base_id: str) -> Conversation:
        """Create a conversation for a knowledge base."""
        ...

    async def update_conversation(self, conversation_id: str, title: str) -> Conversation:
        """Change a conversation's title."""
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and its messages."""
        ...

    async def list_messages(self, conversation_id: str) -> list[Message]:
        """Fetch the canonical message list for a conversation."""
        ...

    async def send_message(self, conversation_id: str, text: str) -> Message:
        """Post a USER message; returns the stored message."""
        ...

    async def get_document(self, knowledge_base_id: str, document_id: str) -> Document:
        """Fetch a single document's current status."""
        ...

    async def list_documents(self, knowledge_base_id: str) -> list[Document]:
        """List documents of a knowledge base."""
        ...

    async def upload_document(self, knowledge_base_id: str, file_path: str) -> Document:
        """Upload a file as a new document."""
        ...

    async def retry_document(self, knowledge_base_id: str, document_id: str) -> Document:
        """Re-submit a failed document for processing."""
        ...

    async def delete_document(self, knowledge_base_id: str, document_id: str) -> None:
        """Delete a document."""
        ...

    async def get_question(self, knowledge_base_id: str, question_id: str) -> Question:
        """Fetch a single question's current status."""
        ...

    async def list_questions(self, knowledge_base_id: str) -> list[Question]:
        """List curated questions of a knowledge base."""
        ...

    async def create_question(
        self, knowledge_base_id: str, question: str, answer: str, answer_type: str
    ) -> Question:
        """Create a curated question/answer pair."""
        ...

    async def retry_question(self, knowledge_base_id: str, question_id: str) -> Question:
        """Re-submit a failed question for processing."""
        ...

    async def delete_question(self, knowledge_base_id: str, question_id: str) -> None:
        """Delete a curated question."""
        ...

