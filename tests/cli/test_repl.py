"""Tests for the chat REPL renderer and slash commands."""

import io

import pytest
from rich.console import Console

from src.cli import repl
from src.cli.protocol import Conversation, MessageKind, MessageStatus
from src.cli.repl import ChatRenderer, _handle_command, _send
from src.services.conversation_sync import ConversationSyncEngine, ConversationView
from tests.helpers import client_error, make_message


def _console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, width=100), buffer


def _view(messages, waiting=False, jump=False) -> ConversationView:
    return ConversationView("c1", messages, waiting, jump, None)


@pytest.fixture
def captured(monkeypatch):
    out, buffer = _console()
    monkeypatch.setattr(repl, "console", out)
    return buffer


class TestChatRenderer:
    """Tests for incremental printing."""

    def test_prints_each_message_once(self):
        out, buffer = _console()
        renderer = ChatRenderer(out)
        first = make_message("m1", content="first question")

        renderer.on_change(_view([first]))
        renderer.on_change(_view([first]))

        assert buffer.getvalue().count("first question") == 1

    def test_pending_assistant_held_back(self):
        out, buffer = _console()
        renderer = ChatRenderer(out)
        pending = make_message("a1", MessageKind.ASSISTANT, MessageStatus.PROCESSING, "partial")

        renderer.on_change(_view([pending], waiting=True))
        assert "partial" not in buffer.getvalue()
        assert "Waiting for the assistant" in buffer.getvalue()

        done = make_message("a1", MessageKind.ASSISTANT, MessageStatus.SENT, "final answer")
        renderer.on_change(_view([done]))
        assert "final answer" in buffer.getvalue()

    def test_waiting_line_printed_once(self):
        out, buffer = _console()
        renderer = ChatRenderer(out)

        renderer.on_change(_view([], waiting=True))
        renderer.on_change(_view([], waiting=True))

        assert buffer.getvalue().count("Waiting for the assistant") == 1

    def test_jump_hint_instead_of_messages(self):
        out, buffer = _console()
        renderer = ChatRenderer(out)

        renderer.on_change(_view([make_message("m1", content="unseen")], jump=True))

        assert "unseen" not in buffer.getvalue()
        assert "/latest" in buffer.getvalue()

    def test_mark_shown_and_reset(self):
        out, buffer = _console()
        renderer = ChatRenderer(out)
        message = make_message("m1", content="echoed")

        renderer.mark_shown("m1")
        renderer.on_change(_view([message]))
        assert "echoed" not in buffer.getvalue()

        renderer.reset()
        renderer.on_change(_view([message]))
        assert "echoed" in buffer.getvalue()


class TestCommands:
    """Tests for slash commands."""

    @pytest.mark.asyncio
    async def test_quit(self, transport, captured):
        engine = ConversationSyncEngine(transport)
        assert await _handle_command("/quit", engine, ChatRenderer()) is False

    @pytest.mark.asyncio
    async def test_unknown_command_keeps_running(self, transport, captured):
        engine = ConversationSyncEngine(transport)
        assert await _handle_command("/dance", engine, ChatRenderer()) is True
        assert "Unknown command" in captured.getvalue()

    @pytest.mark.asyncio
    async def test_hold_moves_viewport_away(self, transport, captured):
        engine = ConversationSyncEngine(transport)
        await _handle_command("/hold", engine, ChatRenderer())
        assert engine.is_near_bottom is False

    @pytest.mark.asyncio
    async def test_reset_starts_new_conversation(self, transport, captured):
        transport.conversations = [Conversation("c1", "Chat", "kb-1")]
        engine = ConversationSyncEngine(transport)
        await engine.open("kb-1")
        engine.stop()

        await _handle_command("/reset", engine, ChatRenderer())

        assert engine.conversation_id == "conv-new-1"
        assert "Started a new conversation" in captured.getvalue()
        await engine.close()

    @pytest.mark.asyncio
    async def test_history_reprints(self, transport, captured):
        transport.conversations = [Conversation("c1", "Chat", "kb-1")]
        transport.messages["c1"] = [make_message("m1", content="old question", conversation_id="c1")]
        engine = ConversationSyncEngine(transport)
        await engine.open("kb-1")
        engine.stop()

        await _handle_command("/history", engine, ChatRenderer())

        assert "old question" in captured.getvalue()
        await engine.close()

    @pytest.mark.asyncio
    async def test_title_renames_conversation(self, transport, captured):
        transport.conversations = [Conversation("c1", "Chat", "kb-1")]
        engine = ConversationSyncEngine(transport)
        await engine.open("kb-1")
        engine.stop()

        assert await _handle_command("/title", engine, ChatRenderer(), "Quarterly report") is True

        assert "Conversation renamed to Quarterly report" in captured.getvalue()
        assert ("update_conversation", ("c1", "Quarterly report")) in transport.calls
        await engine.close()

    @pytest.mark.asyncio
    async def test_title_without_text_is_reported(self, transport, captured):
        engine = ConversationSyncEngine(transport)
        assert await _handle_command("/title", engine, ChatRenderer()) is True
        assert "E-2005" in captured.getvalue()
        assert transport.count("update_conversation") == 0


class TestSend:
    """Tests for send error reporting."""

    @pytest.mark.asyncio
    async def test_blank_is_reported_not_raised(self, transport, captured):
        engine = ConversationSyncEngine(transport)
        await _send("   ", engine, ChatRenderer())
        assert "E-2001" in captured.getvalue()

    @pytest.mark.asyncio
    async def test_transport_failure_reported(self, transport, captured):
        transport.conversations = [Conversation("c1", "Chat", "kb-1")]
        transport.send_result = client_error(500, "server exploded")
        engine = ConversationSyncEngine(transport)
        await engine.open("kb-1")
        engine.stop()

        await _send("hello", engine, ChatRenderer())

        assert "E-4002" in captured.getvalue()
        assert "server exploded" in captured.getvalue()
        await engine.close()
