"""Interactive chat REPL for one knowledge base.

Input is read on a worker thread so the event loop keeps polling while
the prompt is open. Messages are printed as the sync engine reports
them; assistant replies appear once they are final.

Commands:
    /reset   delete the conversation and start a fresh one
    /history reprint the whole conversation
    /title T rename the conversation to T
    /hold    stop pulling new messages into view
    /latest  jump to the latest messages (releases /hold)
    /quit    leave the REPL (Ctrl+D works too)
"""

import asyncio
import logging
import os
import signal

from rich.console import Console

from src.cli.output import format_conversation, format_message
from src.cli.protocol import KbChatTransport, MessageKind
from src.errors import KbChatError, SendRejectedError, ValidationError, format_error
from src.services.activity_tracker import ActivityTracker
from src.services.conversation_sync import (
    PENDING_ASSISTANT_STATUSES,
    ConversationSyncEngine,
    ConversationView,
)
from src.services.session_manager import SessionTokenManager

logger = logging.getLogger(__name__)

console = Console()

HOLD_DISTANCE_PX = 10_000


class ChatRenderer:
    """Prints each message once, when it is ready to be read."""

    def __init__(self, out: Console = console) -> None:
        self._out = out
        self._shown: set[str] = set()
        self._hint_shown = False
        self._waiting_shown = False

    def mark_shown(self, message_id: str) -> None:
        self._shown.add(message_id)

    def reset(self) -> None:
        self._shown.clear()
        self._hint_shown = False
        self._waiting_shown = False

    def on_change(self, view: ConversationView) -> None:
        if view.show_jump_to_latest:
            if not self._hint_shown:
                self._out.print("[yellow]New messages below. Type /latest to show them.[/yellow]")
                self._hint_shown = True
            return
        self._hint_shown = False
        for message in view.messages:
            if message.id in self._shown:
                continue
            if message.kind == MessageKind.ASSISTANT and message.status in PENDING_ASSISTANT_STATUSES:
                continue
            self._shown.add(message.id)
            self._out.print(format_message(message), end="")
        if view.waiting_for_assistant and not self._waiting_shown:
            self._out.print("[dim]Waiting for the assistant…[/dim]")
        self._waiting_shown = view.waiting_for_assistant


def _install_visibility_handlers(session: SessionTokenManager) -> list[int]:
    """Map job-control suspend/resume onto session visibility changes."""
    if not hasattr(signal, "SIGTSTP"):
        return []
    loop = asyncio.get_running_loop()

    def _suspend() -> None:
        session.handle_visibility_change(False)
        os.kill(os.getpid(), signal.SIGSTOP)

    def _resume() -> None:
        session.handle_visibility_change(True)

    installed = []
    for sig, handler in ((signal.SIGTSTP, _suspend), (signal.SIGCONT, _resume)):
        try:
            loop.add_signal_handler(sig, handler)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


async def _handle_command(
    command: str, engine: ConversationSyncEngine, renderer: ChatRenderer, argument: str = ""
) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    if command in ("/quit", "/exit"):
        return False
    if command == "/reset":
        if await engine.delete_conversation():
            renderer.reset()
            console.print("[dim]Started a new conversation.[/dim]")
        elif engine.last_error:
            console.print(f"[red]{engine.last_error}[/red]")
    elif command == "/latest":
        await engine.jump_to_latest()
    elif command == "/history":
        view = engine.view()
        for message in view.messages:
            renderer.mark_shown(message.id)
        console.print(format_conversation(view), end="")
    elif command == "/title":
        try:
            renamed = await engine.rename_conversation(argument)
        except ValidationError as e:
            error = KbChatError.from_code(e.code, field="conversation title")
            console.print(f"[yellow]{format_error(error, include_remediation=False)}[/yellow]")
            return True
        if renamed:
            console.print(f"[dim]Conversation renamed to {engine.title}.[/dim]")
        elif engine.last_error:
            console.print(f"[red]{engine.last_error}[/red]")
    elif command == "/hold":
        engine.update_viewport(HOLD_DISTANCE_PX)
        console.print("[dim]Holding the view. Type /latest to catch up.[/dim]")
    else:
        console.print(f"[yellow]Unknown command {command}.[/yellow] Try /reset, /history, /title, /hold, /latest or /quit.")
    return True


async def _send(text: str, engine: ConversationSyncEngine, renderer: ChatRenderer) -> None:
    try:
        message = await engine.send(text)
    except SendRejectedError as e:
        error = KbChatError.from_code(e.code, knowledge_base_id=engine.knowledge_base_id)
        console.print(f"[yellow]{format_error(error, include_remediation=False)}[/yellow]")
        return
    if message is None:
        error = KbChatError.from_code("E-4002", reason=engine.last_error or "unknown error")
        console.print(f"[red]{format_error(error)}[/red]")
        return
    # The prompt line already echoed it.
    renderer.mark_shown(message.id)


async def run_chat(
    transport: KbChatTransport,
    session: SessionTokenManager,
    activity: ActivityTracker,
    engine_factory,
    knowledge_base_id: str,
    title: str = "",
) -> None:
    """Run the chat REPL until /quit, EOF or sign-out.

    Args:
        transport: Open transport used by the engine.
        session: Started session manager.
        activity: Activity tracker fed by every input line.
        engine_factory: Callable taking (transport, activity, **callbacks)
            and returning a ConversationSyncEngine.
        knowledge_base_id: Knowledge base to chat with.
        title: Title for a newly created conversation.
    """
    renderer = ChatRenderer()
    engine = engine_factory(transport, activity, on_change=renderer.on_change)
    installed = _install_visibility_handlers(session)
    activity.start()
    try:
        conversation_id = await engine.open(knowledge_base_id, title)
        console.print(f"[dim]Conversation {conversation_id}. Ctrl+D or /quit to leave.[/dim]")
        while session.is_authenticated:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]> [/bold green]")
            except EOFError:
                break
            activity.record("key")
            text = line.strip()
            if not text:
                continue
            if text.startswith("/"):
                command, _, argument = text.partition(" ")
                if not await _handle_command(command.lower(), engine, renderer, argument.strip()):
                    break
                continue
            await _send(text, engine, renderer)
    finally:
        await engine.close()
        activity.stop()
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    console.print("\n[dim]Chat ended.[/dim]")
