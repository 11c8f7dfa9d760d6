"""HTTP client implementation of KbChatTransport.

Thin wrapper around httpx that talks to the knowledge base API. All
methods map to REST endpoints. Error responses raise KbChatClientError,
never typer.Exit, so the client is reusable from scripts, tests and the
synchronization services.

The bearer credential is read from the CredentialStore on every request
(via an httpx request event hook), so a renewal or a sign-in from
another process takes effect on the very next call. A 401 answer is
handed to the on_unauthorized hook once; when it reports fresh
credentials the request is sent again, otherwise the 401 is raised.
"""

import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from src.cli.protocol import (
    Conversation,
    Document,
    HealthStatus,
    KbChatClientError,
    KnowledgeBase,
    Message,
    Question,
    TokenPair,
    UserProfile,
)
from src.services.credential_store import ACCESS_TOKEN_KEY, CredentialStore

logger = logging.getLogger(__name__)

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class HttpClient:
    """KbChatTransport implementation that talks to the API over HTTP."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        store: CredentialStore | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        on_unauthorized: Callable[[], Awaitable[bool]] | None = None,
    ):
        """Initialize with the API base URL.

        Args:
            base_url: The API's HTTP base URL.
            store: Credential store the bearer token is read from.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests inject a fake).
            on_unauthorized: Coroutine function called once when a request
                is answered 401. It returns True when fresh credentials are
                stored, and the request is then sent again.
        """
        self._base_url = base_url
        self._store = store
        self._timeout = timeout
        self._transport = transport
        self.on_unauthorized = on_unauthorized
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        """Open httpx async client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            event_hooks={"request": [self._attach_credentials]},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close httpx async client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _attach_credentials(self, request: httpx.Request) -> None:
        if self._store is None or request.url.path.startswith("/auth/"):
            return
        token = self._store.get(ACCESS_TOKEN_KEY)
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

    def _raise_for_status(self, resp: httpx.Response) -> None:
        """Raise KbChatClientError on non-2xx responses.

        Args:
            resp: httpx.Response to check.

        Raises:
            KbChatClientError: On non-2xx status codes.
        """
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text)
            except Exception:
                detail = resp.text
            raise KbChatClientError(
                message=str(detail) or f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise KbChatClientError("HTTP client is not open")
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise KbChatClientError(
                f"Cannot reach {self._base_url}: {exc}", unreachable=True
            ) from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, renewing once and retrying if it is unauthorized.

        Raises:
            KbChatClientError: On connection errors and non-2xx responses.
        """
        resp = await self._send(method, path, **kwargs)
        if resp.status_code == 401 and await self._recover_from_401(path, resp):
            resp = await self._send(method, path, **kwargs)
        self._raise_for_status(resp)
        return resp

    async def _recover_from_401(self, path: str, resp: httpx.Response) -> bool:
        if self.on_unauthorized is None or path.startswith("/auth/"):
            return False
        current = self._store.get(ACCESS_TOKEN_KEY) if self._store is not None else None
        if current and resp.request.headers.get("Authorization") != f"Bearer {current}":
            # Renewed while this request was in flight.
            return True
        logger.info("Request to %s was unauthorized; renewing session", path)
        return await self.on_unauthorized()

    @staticmethod
    def _decode(resp: httpx.Response, factory):
        """Build a record from a response body.

        Raises:
            KbChatClientError: If the body is not JSON or lacks fields.
        """
        try:
            return factory(resp.json())
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise KbChatClientError(f"Unexpected response shape: {exc}") from exc

    @classmethod
    def _decode_list(cls, resp: httpx.Response, factory) -> list:
        return cls._decode(resp, lambda data: [factory(item) for item in data])

    async def _get(self, path: str, factory):
        return self._decode(await self._request("GET", path), factory)

    async def _get_list(self, path: str, factory) -> list:
        return self._decode_list(await self._request("GET", path), factory)

    # --- auth ---

    async def _token_request(self, path: str, form: dict[str, str]) -> TokenPair:
        resp = await self._request("POST", path, data=form, headers=_FORM_HEADERS)
        return self._decode(resp, TokenPair.from_api)

    async def login(self, identifier: str, secret: str) -> TokenPair:
        """Exchange email and password for tokens via POST /auth/token.

        Args:
            identifier: Account email (sent as the OAuth2 'username').
            secret: Account password.

        Returns:
            TokenPair issued by the server.
        """
        return await self._token_request(
            "/auth/token", {"username": identifier, "password": secret}
        )

    async def renew(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token via POST /auth/refresh."""
        return await self._token_request("/auth/refresh", {"refresh_token": refresh_token})

    async def get_current_user(self) -> UserProfile:
        """Get the signed-in user via GET /users/me."""
        return await self._get("/users/me", UserProfile.from_api)

    # --- knowledge bases ---

    async def list_knowledge_bases(self) -> list[KnowledgeBase]:
        """List knowledge bases via GET /knowledge-bases."""
        return await self._get_list("/knowledge-bases", KnowledgeBase.from_api)

    async def get_knowledge_base(self, knowledge_base_id: str) -> KnowledgeBase:
        """Get one knowledge base via GET /knowledge-bases/{id}."""
        return await self._get(f"/knowledge-bases/{knowledge_base_id}", KnowledgeBase.from_api)

    async def create_knowledge_base(self, name: str, description: str = "") -> KnowledgeBase:
        """Create a knowledge base via POST /knowledge-bases.

        Args:
            name: Display name.
            description: Optional description.

        Returns:
            The created KnowledgeBase.
        """
        resp = await self._request(
            "POST", "/knowledge-bases", json={"name": name, "description": description or None}
        )
        return self._decode(resp, KnowledgeBase.from_api)

    async def update_knowledge_base(
        self, knowledge_base_id: str, name: str, description: str = ""
    ) -> KnowledgeBase:
        """Rename a knowledge base via PUT /knowledge-bases/{id}."""
        resp = await self._request(
            "PUT",
            f"/knowledge-bases/{knowledge_base_id}",
            json={"name": name, "description": description or None},
        )
        return self._decode(resp, KnowledgeBase.from_api)

    async def delete_knowledge_base(self, knowledge_base_id: str) -> None:
        """Delete a knowledge base via DELETE /knowledge-bases/{id}."""
        await self._request("DELETE", f"/knowledge-bases/{knowledge_base_id}")

    # --- documents ---

    def _documents_path(self, knowledge_base_id: str) -> str:
        return f"/knowledge-bases/{knowledge_base_id}/documents"

    async def list_documents(self, knowledge_base_id: str) -> list[Document]:
        """List documents via GET /knowledge-bases/{kb}/documents."""
        return await self._get_list(self._documents_path(knowledge_base_id), Document.from_api)

    async def get_document(self, knowledge_base_id: str, document_id: str) -> Document:
        """Get one document's current status."""
        return await self._get(
            f"{self._documents_path(knowledge_base_id)}/{document_id}", Document.from_api
        )

    async def upload_document(self, knowledge_base_id: str, file_path: str) -> Document:
        """Upload a file via multipart POST /knowledge-bases/{kb}/documents.

        Args:
            knowledge_base_id: Target knowledge base.
            file_path: Local path of the file to upload.

        Returns:
            The created Document (usually PENDING).
        """
        filename = os.path.basename(file_path)
        # Read up front so a retried request sends the same bytes.
        with open(file_path, "rb") as f:
            content = f.read()
        resp = await self._request(
            "POST",
            self._documents_path(knowledge_base_id),
            files={"file": (filename, content)},
        )
        return self._decode(resp, Document.from_api)

    async def update_document(self, knowledge_base_id: str, document_id: str, title: str) -> Document:
        """Rename a document via PUT .../documents/{id}."""
        resp = await self._request(
            "PUT",
            f"{self._documents_path(knowledge_base_id)}/{document_id}",
            json={"title": title},
        )
        return self._decode(resp, Document.from_api)

    async def retry_document(self, knowledge_base_id: str, document_id: str) -> Document:
        """Re-submit a failed document via POST .../documents/{id}/retry."""
        resp = await self._request(
            "POST", f"{self._documents_path(knowledge_base_id)}/{document_id}/retry"
        )
        return self._decode(resp, Document.from_api)

    async def delete_document(self, knowledge_base_id: str, document_id: str) -> None:
        """Delete a document via DELETE .../documents/{id}."""
        await self._request("DELETE", f"{self._documents_path(knowledge_base_id)}/{document_id}")

    # --- curated questions ---

    def _questions_path(self, knowledge_base_id: str) -> str:
        return f"/knowledge-bases/{knowledge_base_id}/questions"

    async def list_questions(self, knowledge_base_id: str) -> list[Question]:
        """List curated questions via GET /knowledge-bases/{kb}/questions."""
        return await self._get_list(self._questions_path(knowledge_base_id), Question.from_api)

    async def get_question(self, knowledge_base_id: str, question_id: str) -> Question:
        """Get one question's current status."""
        return await self._get(
            f"{self._questions_path(knowledge_base_id)}/{question_id}", Question.from_api
        )

    async def create_question(
        self, knowledge_base_id: str, question: str, answer: str, answer_type: str = "DIRECT"
    ) -> Question:
        """Create a question/answer pair via POST .../questions."""
        resp = await self._request(
            "POST",
            self._questions_path(knowledge_base_id),
            json={"question": question, "answer": answer, "answer_type": answer_type},
        )
        return self._decode(resp, Question.from_api)

    async def retry_question(self, knowledge_base_id: str, question_id: str) -> Question:
        """Re-submit a failed question via POST .../questions/{id}/retry."""
        resp = await self._request(
            "POST", f"{self._questions_path(knowledge_base_id)}/{question_id}/retry"
        )
        return self._decode(resp, Question.from_api)

    async def delete_question(self, knowledge_base_id: str, question_id: str) -> None:
        """Delete a question via DELETE .../questions/{id}."""
        await self._request("DELETE", f"{self._questions_path(knowledge_base_id)}/{question_id}")

    # --- conversations ---

    async def list_conversations(self) -> list[Conversation]:
        """List the user's conversations via GET /conversations."""
        return await self._get_list("/conversations", Conversation.from_api)

    async def create_conversation(self, title: str, knowledge_base_id: str) -> Conversation:
        """Create a conversation via POST /conversations."""
        resp = await self._request(
            "POST",
            "/conversations",
            json={"title": title, "knowledge_base_id": knowledge_base_id},
        )
        return self._decode(resp, Conversation.from_api)

    async def update_conversation(self, conversation_id: str, title: str) -> Conversation:
        """Rename a conversation via PUT /conversations/{id}."""
        resp = await self._request(
            "PUT", f"/conversations/{conversation_id}", json={"title": title}
        )
        return self._decode(resp, Conversation.from_api)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation via DELETE /conversations/{id}."""
        await self._request("DELETE", f"/conversations/{conversation_id}")

    async def list_messages(self, conversation_id: str) -> list[Message]:
        """List messages via GET /conversations/{id}/messages."""
        return await self._get_list(
            f"/conversations/{conversation_id}/messages", Message.from_api
        )

    async def send_message(self, conversation_id: str, text: str) -> Message:
        """Post a user message via POST /conversations/{id}/messages.

        Args:
            conversation_id: Target conversation.
            text: Message text.

        Returns:
            The created Message as stored by the server.
        """
        resp = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={"content": text, "content_type": "TEXT"},
        )
        return self._decode(resp, Message.from_api)

    # --- diagnostics ---

    async def health(self) -> HealthStatus:
        """Check API reachability via GET /health.

        Returns:
            HealthStatus; never raises.
        """
        if self._client is None:
            return HealthStatus(healthy=False, detail="client not open")
        try:
            resp = await self._client.get("/health")
            if resp.status_code == 200:
                try:
                    data = resp.json()
                except ValueError:
                    data = {}
                return HealthStatus(
                    healthy=True,
                    detail=str(data.get("status", "ok")) if isinstance(data, dict) else "ok",
                    extra=data if isinstance(data, dict) else {},
                )
            logger.debug("Health check returned HTTP %s", resp.status_code)
            return HealthStatus(healthy=False, detail=f"HTTP {resp.status_code}")
        except httpx.HTTPError as exc:
            logger.debug("Health check connection failed: %s", exc)
            return HealthStatus(healthy=False, detail=str(exc))
