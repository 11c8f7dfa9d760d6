"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import dataclasses
import json
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.cli.protocol import (
    Document,
    HealthStatus,
    KnowledgeBase,
    Message,
    MessageKind,
    Question,
    UserProfile,
)
from src.services.conversation_sync import ConversationView

console = Console()

# Status color map shared by documents, questions and messages
STATUS_COLORS = {
    "PENDING": "yellow",
    "PROCESSING": "blue",
    "PROCESSED": "green",
    "FAILED": "red",
    "UNKNOWN": "magenta",
    "RECEIVED": "yellow",
    "SENT": "green",
}


def _status(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _dumps(items) -> str:
    return json.dumps(items, indent=2, default=str)


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_size(size_bytes: int | None) -> str:
    """Format a byte count as "12.3 KB" style text.

    Args:
        size_bytes: Size in bytes, or None.

    Returns:
        Formatted string, or "—" for None.
    """
    if size_bytes is None:
        return "—"
    size = float(size_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def format_knowledge_bases(kbs: list[KnowledgeBase], as_json: bool = False) -> str:
    """Format knowledge bases as a Rich table or JSON.

    Args:
        kbs: Knowledge bases to display.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return _dumps([dataclasses.asdict(kb) for kb in kbs])

    if not kbs:
        return "No knowledge bases found."

    table = Table(title="Knowledge Bases")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Description")
    table.add_column("Created")
    for kb in kbs:
        table.add_row(
            kb.id,
            kb.name,
            kb.description or "—",
            kb.created_at[:19] if kb.created_at else "—",
        )
    return _render(table)


def format_documents(documents: list[Document], as_json: bool = False) -> str:
    """Format documents with their ingestion status.

    Args:
        documents: Documents to display.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return _dumps([dataclasses.asdict(d) for d in documents])

    if not documents:
        return "No documents found."

    table = Table(title="Documents", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Error")
    for doc in documents:
        table.add_row(
            doc.id,
            doc.title or "—",
            _status(doc.status.value),
            doc.file_type or "—",
            format_size(doc.size_bytes),
            str(doc.processed_chunks) if doc.processed_chunks is not None else "—",
            doc.error_message[:60] if doc.error_message else "—",
        )
    return _render(table)


def format_questions(questions: list[Question], as_json: bool = False) -> str:
    """Format curated questions with their ingestion status."""
    if as_json:
        return _dumps([dataclasses.asdict(q) for q in questions])

    if not questions:
        return "No questions found."

    table = Table(title="Questions", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Question", style="white")
    table.add_column("Answer")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Error")
    for q in questions:
        table.add_row(
            q.id,
            q.question,
            q.answer[:60],
            q.answer_type,
            _status(q.status.value),
            q.error_message[:60] if q.error_message else "—",
        )
    return _render(table)


def format_message(message: Message) -> str:
    """Format one chat message, with cited sources for assistant replies."""
    when = message.created_at.astimezone().strftime("%H:%M:%S")
    if message.kind == MessageKind.USER:
        header = f"[bold green]you[/bold green] [dim]{when}[/dim]"
    else:
        header = f"[bold cyan]assistant[/bold cyan] [dim]{when}[/dim]"
    if message.status.value != "SENT":
        header += f" {_status(message.status.value)}"

    lines = [header, message.content or "[dim]…[/dim]"]
    if message.sources:
        lines.append("[dim]Sources:[/dim]")
        for source in message.sources:
            lines.append(f"[dim]  - {source.title} ({source.score:.2f})[/dim]")
    return _render("\n".join(lines))


def format_conversation(view: ConversationView) -> str:
    """Render the whole conversation view for the chat REPL."""
    parts = [format_message(m) for m in view.messages]
    if view.waiting_for_assistant:
        parts.append(_render("[dim]Waiting for the assistant…[/dim]"))
    if view.show_jump_to_latest:
        parts.append(_render("[yellow]New messages below. Type /latest to jump.[/yellow]"))
    if view.last_error:
        parts.append(_render(f"[red]{view.last_error}[/red]"))
    return "".join(parts)


def format_session_status(
    authenticated: bool,
    expires_at: datetime | None,
    next_renewal_in: float | None,
    health: HealthStatus | None,
    base_url: str,
) -> str:
    """Format session and API status as a Rich panel.

    Args:
        authenticated: Whether a usable session exists.
        expires_at: Local time the access token expires, if known.
        next_renewal_in: Seconds until the next renewal, if armed.
        health: API health report, if checked.
        base_url: Configured API URL.

    Returns:
        Formatted string output.
    """
    table = Table(show_header=False, box=None)
    table.add_row("API:", base_url)
    if health is not None:
        state = "[green]reachable[/green]" if health.healthy else f"[red]unreachable[/red] ({health.detail})"
        table.add_row("Health:", state)
    table.add_row(
        "Session:", "[green]signed in[/green]" if authenticated else "[dim]signed out[/dim]"
    )
    if expires_at is not None:
        table.add_row("Expires:", expires_at.strftime("%Y-%m-%d %H:%M:%S"))
    if next_renewal_in is not None:
        table.add_row("Renews in:", f"{next_renewal_in:.0f}s")
    border = "green" if authenticated else "dim"
    return _render(Panel(table, title="[bold]kbchat[/bold]", border_style=border))


def format_profile(profile: UserProfile, as_json: bool = False) -> str:
    """Format the signed-in user."""
    if as_json:
        return _dumps(dataclasses.asdict(profile))
    table = Table(show_header=False, box=None)
    table.add_row("Email:", profile.email)
    table.add_row("Name:", profile.full_name or "—")
    table.add_row("Role:", profile.role)
    table.add_row("ID:", profile.id)
    return _render(Panel(table, title="[bold]Signed in as[/bold]", border_style="cyan"))


def format_knowledge_base(kb: KnowledgeBase, as_json: bool = False) -> str:
    """Format a single knowledge base."""
    if as_json:
        return _dumps(dataclasses.asdict(kb))
    table = Table(show_header=False, box=None)
    table.add_row("Name:", kb.name)
    table.add_row("Description:", kb.description or "—")
    table.add_row("Created:", kb.created_at[:19] if kb.created_at else "—")
    table.add_row("Updated:", kb.updated_at[:19] if kb.updated_at else "—")
    return _render(Panel(table, title=f"[bold]{kb.id}[/bold]", border_style="cyan"))
