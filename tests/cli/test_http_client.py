"""Tests for HttpClient — mocked HTTP responses."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from src.cli.http_client import HttpClient
from src.cli.protocol import KbChatClientError, MessageKind, MessageStatus, ResourceStatus
from src.services.credential_store import CredentialStore

BASE = "http://127.0.0.1:8000"


class FakeTransport(httpx.AsyncBaseTransport):
    """Mock transport that returns canned responses and records requests.

    Responses are keyed by "METHOD /path"; the first exact match wins.
    """

    def __init__(self, responses: dict[str, tuple[int, object]]):
        self._responses = responses
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request):
        await request.aread()
        self.requests.append(request)
        key = f"{request.method} {request.url.path}"
        if key in self._responses:
            status, body = self._responses[key]
            if isinstance(body, str):
                return httpx.Response(status, text=body, request=request)
            return httpx.Response(status, json=body, request=request)
        return httpx.Response(404, json={"detail": "Not Found"}, request=request)


class ExplodingTransport(httpx.AsyncBaseTransport):
    """Transport whose every request fails at the connection level."""

    async def handle_async_request(self, request):
        raise httpx.ConnectError("connection refused", request=request)


def _client(responses: dict, store: CredentialStore | None = None):
    transport = FakeTransport(responses)
    return HttpClient(base_url=BASE, store=store, transport=transport), transport


def _message(**overrides) -> dict:
    data = {
        "id": "m1",
        "conversation_id": "c1",
        "kind": "USER",
        "content": "hello",
        "content_type": "TEXT",
        "status": "RECEIVED",
        "created_at": "2026-03-01T12:00:00Z",
        "updated_at": "2026-03-01T12:00:00Z",
    }
    data.update(overrides)
    return data


class TestCredentials:
    """Tests for the bearer header hook."""

    @pytest.mark.asyncio
    async def test_bearer_read_from_store_per_request(self):
        """A token written between two calls is used by the second."""
        store = CredentialStore()
        store.set_tokens("acc-1", "ref-1", 1)
        client, transport = _client({"GET /conversations": (200, [])}, store)

        async with client:
            await client.list_conversations()
            store.set_tokens("acc-2", "ref-2", 1)
            await client.list_conversations()

        assert transport.requests[0].headers["Authorization"] == "Bearer acc-1"
        assert transport.requests[1].headers["Authorization"] == "Bearer acc-2"

    @pytest.mark.asyncio
    async def test_no_header_without_token(self):
        client, transport = _client({"GET /conversations": (200, [])}, CredentialStore())
        async with client:
            await client.list_conversations()
        assert "Authorization" not in transport.requests[0].headers

    @pytest.mark.asyncio
    async def test_auth_endpoints_skip_bearer(self):
        store = CredentialStore()
        store.set_tokens("stale", "ref-1", 1)
        client, transport = _client(
            {"POST /auth/refresh": (200, {"access_token": "a", "refresh_token": "r"})}, store
        )
        async with client:
            await client.renew("ref-1")
        assert "Authorization" not in transport.requests[0].headers


class TestAuth:
    """Tests for login, renewal and profile."""

    @pytest.mark.asyncio
    async def test_login_posts_form(self):
        client, transport = _client({
            "POST /auth/token": (200, {
                "access_token": "acc", "refresh_token": "ref",
                "token_type": "bearer", "expires_in": 1800,
            })
        })
        async with client:
            pair = await client.login("ada@example.com", "pw")

        assert pair.access_token == "acc"
        assert pair.expires_in == 1800
        request = transport.requests[0]
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        form = parse_qs(request.content.decode())
        assert form == {"username": ["ada@example.com"], "password": ["pw"]}

    @pytest.mark.asyncio
    async def test_renew_without_expires_in(self):
        client, transport = _client(
            {"POST /auth/refresh": (200, {"access_token": "a2", "refresh_token": "r2"})}
        )
        async with client:
            pair = await client.renew("r1")

        assert pair.expires_in is None
        assert parse_qs(transport.requests[0].content.decode()) == {"refresh_token": ["r1"]}

    @pytest.mark.asyncio
    async def test_rejected_login_carries_status(self):
        client, _ = _client({"POST /auth/token": (401, {"detail": "Incorrect email or password"})})
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.login("ada@example.com", "bad")

        assert exc.value.status_code == 401
        assert exc.value.message == "Incorrect email or password"
        assert exc.value.is_auth_failure is True

    @pytest.mark.asyncio
    async def test_current_user(self):
        client, _ = _client({
            "GET /users/me": (200, {"id": "u1", "email": "ada@example.com", "role": "admin"})
        })
        async with client:
            user = await client.get_current_user()
        assert user.role == "admin"


class TestConversations:
    """Tests for conversation and message endpoints."""

    @pytest.mark.asyncio
    async def test_create_conversation_body(self):
        client, transport = _client({
            "POST /conversations": (200, {"id": "c1", "title": "Chat", "knowledge_base_id": "kb1"})
        })
        async with client:
            conversation = await client.create_conversation("Chat", "kb1")

        assert conversation.id == "c1"
        assert json.loads(transport.requests[0].content) == {
            "title": "Chat", "knowledge_base_id": "kb1",
        }

    @pytest.mark.asyncio
    async def test_list_messages_parses_records(self):
        client, _ = _client({
            "GET /conversations/c1/messages": (200, [
                _message(),
                _message(
                    id="m2", kind="ASSISTANT", status="SENT", content="answer",
                    sources=[{"score": 0.9, "document_id": "d1", "title": "doc", "content": "x"}],
                ),
            ])
        })
        async with client:
            messages = await client.list_messages("c1")

        assert [m.kind for m in messages] == [MessageKind.USER, MessageKind.ASSISTANT]
        assert messages[1].status == MessageStatus.SENT
        assert messages[1].sources[0].document_id == "d1"
        assert messages[0].created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_send_message_body(self):
        client, transport = _client({"POST /conversations/c1/messages": (200, _message())})
        async with client:
            message = await client.send_message("c1", "hello")

        assert message.status == MessageStatus.RECEIVED
        assert json.loads(transport.requests[0].content) == {
            "content": "hello", "content_type": "TEXT",
        }

    @pytest.mark.asyncio
    async def test_delete_conversation(self):
        client, transport = _client({"DELETE /conversations/c1": (204, "")})
        async with client:
            await client.delete_conversation("c1")
        assert transport.requests[0].method == "DELETE"


class TestResources:
    """Tests for knowledge base, document and question endpoints."""

    @pytest.mark.asyncio
    async def test_document_completed_alias(self):
        client, _ = _client({
            "GET /knowledge-bases/kb1/documents/d1": (200, {
                "id": "d1", "title": "a.pdf", "status": "COMPLETED", "processed_chunks": 4,
            })
        })
        async with client:
            document = await client.get_document("kb1", "d1")
        assert document.status == ResourceStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_upload_is_multipart(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("some notes")
        client, transport = _client({
            "POST /knowledge-bases/kb1/documents": (200, {
                "id": "d9", "title": "notes.txt", "status": "PENDING",
            })
        })
        async with client:
            document = await client.upload_document("kb1", str(path))

        assert document.id == "d9"
        request = transport.requests[0]
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert b'filename="notes.txt"' in request.content

    @pytest.mark.asyncio
    async def test_create_question_body(self):
        client, transport = _client({
            "POST /knowledge-bases/kb1/questions": (200, {
                "id": "q1", "question": "Q?", "answer": "A.", "status": "PENDING",
            })
        })
        async with client:
            await client.create_question("kb1", "Q?", "A.")

        assert json.loads(transport.requests[0].content) == {
            "question": "Q?", "answer": "A.", "answer_type": "DIRECT",
        }

    @pytest.mark.asyncio
    async def test_retry_question(self):
        client, transport = _client({
            "POST /knowledge-bases/kb1/questions/q1/retry": (200, {
                "id": "q1", "question": "Q?", "answer": "A.", "status": "PENDING",
            })
        })
        async with client:
            question = await client.retry_question("kb1", "q1")
        assert question.status == ResourceStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_knowledge_bases(self):
        client, _ = _client({
            "GET /knowledge-bases": (200, [{"id": "kb1", "name": "Docs", "description": None}])
        })
        async with client:
            bases = await client.list_knowledge_bases()
        assert bases[0].name == "Docs"
        assert bases[0].description == ""


class TestErrors:
    """Tests for error mapping."""

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        client, _ = _client({"GET /conversations": (502, "Bad Gateway")})
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.list_conversations()
        assert exc.value.status_code == 502
        assert exc.value.message == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_connection_error_has_no_status(self):
        client = HttpClient(base_url=BASE, transport=ExplodingTransport())
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.list_conversations()
        assert exc.value.status_code is None
        assert "Cannot reach" in exc.value.message
        assert exc.value.unreachable is True

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        client, _ = _client({"GET /users/me": (200, {"email": "no-id@example.com"})})
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.get_current_user()
        assert "Unexpected response shape" in exc.value.message
        assert exc.value.unreachable is False

    @pytest.mark.asyncio
    async def test_non_json_success_body(self):
        """A 200 whose body is not JSON is a shape error, not a crash."""
        client, _ = _client({"POST /auth/refresh": (200, "<html>maintenance</html>")})
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.renew("ref-1")
        assert exc.value.status_code is None
        assert exc.value.unreachable is False
        assert "Unexpected response shape" in exc.value.message

    @pytest.mark.asyncio
    async def test_request_before_open(self):
        with pytest.raises(KbChatClientError):
            await HttpClient(base_url=BASE).list_conversations()


class ScriptedTransport(httpx.AsyncBaseTransport):
    """Transport that answers each "METHOD /path" from a queue.

    The last queued answer repeats. ``on_request`` runs before each
    answer is produced.
    """

    def __init__(self, responses: dict[str, list[tuple[int, object]]], on_request=None):
        self._responses = responses
        self._on_request = on_request
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request):
        await request.aread()
        self.requests.append(request)
        if self._on_request is not None:
            self._on_request(request)
        queue = self._responses[f"{request.method} {request.url.path}"]
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json=body, request=request)


class TestUnauthorizedRecovery:
    """Tests for renewing and retrying after a 401."""

    def _setup(self, responses, on_request=None):
        store = CredentialStore()
        store.set_tokens("acc-1", "ref-1", 1)
        transport = ScriptedTransport(responses, on_request)
        renewals = []

        async def renew() -> bool:
            renewals.append(True)
            store.set_tokens("acc-2", "ref-2", 1)
            return True

        client = HttpClient(
            base_url=BASE, store=store, transport=transport, on_unauthorized=renew
        )
        return client, transport, store, renewals

    @pytest.mark.asyncio
    async def test_retries_once_with_renewed_token(self):
        client, transport, _, renewals = self._setup({
            "GET /conversations": [(401, {"detail": "Token expired"}), (200, [])],
        })
        async with client:
            assert await client.list_conversations() == []

        assert len(renewals) == 1
        assert len(transport.requests) == 2
        assert transport.requests[0].headers["Authorization"] == "Bearer acc-1"
        assert transport.requests[1].headers["Authorization"] == "Bearer acc-2"

    @pytest.mark.asyncio
    async def test_second_401_is_raised(self):
        client, transport, _, renewals = self._setup({
            "GET /conversations": [(401, {"detail": "Token expired"})],
        })
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.list_conversations()

        assert exc.value.status_code == 401
        assert len(renewals) == 1
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_failed_renewal_raises_original_401(self):
        store = CredentialStore()
        store.set_tokens("acc-1", "ref-1", 1)
        transport = ScriptedTransport({"GET /conversations": [(401, {"detail": "Token expired"})]})

        async def refuse() -> bool:
            return False

        client = HttpClient(base_url=BASE, store=store, transport=transport, on_unauthorized=refuse)
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.list_conversations()

        assert exc.value.is_auth_failure is True
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_auth_endpoints_do_not_renew(self):
        client, transport, _, renewals = self._setup({
            "POST /auth/refresh": [(401, {"detail": "Invalid refresh token"})],
        })
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.renew("ref-1")

        assert exc.value.status_code == 401
        assert renewals == []
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_token_rotated_in_flight_retries_without_renewing(self):
        """A 401 for a token already replaced is retried with the new one."""
        store = CredentialStore()
        store.set_tokens("acc-1", "ref-1", 1)

        def rotate(request):
            if request.headers.get("Authorization") == "Bearer acc-1":
                store.set_tokens("acc-2", "ref-2", 1)

        transport = ScriptedTransport(
            {"GET /conversations": [(401, {"detail": "Token expired"}), (200, [])]}, rotate
        )
        renewals = []

        async def renew() -> bool:
            renewals.append(True)
            return True

        client = HttpClient(base_url=BASE, store=store, transport=transport, on_unauthorized=renew)
        async with client:
            await client.list_conversations()

        assert renewals == []
        assert transport.requests[1].headers["Authorization"] == "Bearer acc-2"

    @pytest.mark.asyncio
    async def test_no_hook_raises_401(self):
        transport = ScriptedTransport({"GET /conversations": [(401, {"detail": "Not authenticated"})]})
        client = HttpClient(base_url=BASE, transport=transport)
        async with client:
            with pytest.raises(KbChatClientError) as exc:
                await client.list_conversations()
        assert exc.value.status_code == 401
        assert len(transport.requests) == 1


class TestHealth:
    """Tests for HttpClient.health."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        """Health check parses response."""
        client, _ = _client({"GET /health": (200, {"status": "healthy"})})
        async with client:
            status = await client.health()
        assert status.healthy is True
        assert status.detail == "healthy"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client, _ = _client({"GET /health": (503, {"detail": "db down"})})
        async with client:
            status = await client.health()
        assert status.healthy is False
        assert status.detail == "HTTP 503"

    @pytest.mark.asyncio
    async def test_unreachable(self):
        """Connection failure reports unhealthy."""
        async with HttpClient(base_url=BASE, transport=ExplodingTransport()) as client:
            status = await client.health()
        assert status.healthy is False
