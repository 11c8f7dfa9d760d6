"""kbchat CLI: terminal client for a knowledge base chat service.

Usage:
    kbchat login                   Sign in and store credentials
    kbchat kb list                 List knowledge bases
    kbchat docs upload KB FILE     Upload a document and watch ingestion
    kbchat chat KB                 Chat with a knowledge base
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from src.cli.config import KbChatConfig, load_config
from src.cli.factory import (
    get_activity_tracker,
    get_client,
    get_session_manager,
    get_store,
    get_sync_engine,
)
from src.cli.http_client import HttpClient
from src.cli.output import (
    format_documents,
    format_knowledge_base,
    format_knowledge_bases,
    format_profile,
    format_questions,
    format_session_status,
)
from src.cli.protocol import KbChatClientError, ResourceStatus
from src.cli.repl import run_chat
from src.errors import KbChatError, NotAuthenticatedError, ValidationError, format_error
from src.services.resource_tracker import DocumentTracker, QuestionTracker, ResourceTracker
from src.services.role_gate import RoleGate
from src.utils.paths import ensure_dirs_exist, get_log_dir

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="kbchat",
    help="Chat with your knowledge bases from the terminal",
    no_args_is_help=True,
)
kb_app = typer.Typer(help="Manage knowledge bases")
docs_app = typer.Typer(help="Manage documents of a knowledge base")
questions_app = typer.Typer(help="Manage curated questions of a knowledge base")
config_app = typer.Typer(help="Configuration management")

app.add_typer(kb_app, name="kb")
app.add_typer(docs_app, name="docs")
app.add_typer(questions_app, name="questions")
app.add_typer(config_app, name="config")

console = Console()

# Roles allowed to change knowledge bases and their content
MANAGE_ROLES = ("owner", "admin")

# --- Global state ---
_config_path: str | None = None
_config: KbChatConfig | None = None
_verbose: bool = False


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to kbchat.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
):
    """kbchat: knowledge base chat client."""
    global _config_path, _config, _verbose
    _config_path = config
    _config = None
    _verbose = verbose


def _configure_logging(cfg: KbChatConfig) -> None:
    level_name = "DEBUG" if _verbose else cfg.logging.level.upper()
    filename = None
    if cfg.logging.file:
        filename = Path(cfg.logging.file).expanduser()
        if not filename.is_absolute():
            # Bare names go to the per-user log directory
            ensure_dirs_exist()
            filename = get_log_dir() / filename
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        filename=filename,
    )


def _load() -> KbChatConfig:
    """Load config once per invocation and set up logging from it."""
    global _config
    if _config is not None:
        return _config
    try:
        _config = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    _configure_logging(_config)
    return _config


def _print_error(error: KbChatError) -> None:
    console.print(f"[red]{format_error(error)}[/red]")


def _client_error(e: KbChatClientError, cfg: KbChatConfig, what: str) -> None:
    """Render a transport error and exit 1."""
    if e.unreachable:
        _print_error(KbChatError.from_code("E-4003", base_url=cfg.api.base_url))
    elif e.is_auth_failure:
        _print_error(KbChatError.from_code("E-5001"))
    elif e.status_code is None:
        _print_error(KbChatError.from_code("E-4004", what=what, reason=e.message))
    else:
        _print_error(KbChatError.from_code("E-4001", what=what, reason=e.message))
    raise typer.Exit(1)


class ConsoleNavigator:
    """Navigator for a terminal: the entry surface is `kbchat login`."""

    def __init__(self, at_entry: bool = False) -> None:
        self.at_entry = at_entry
        self.redirected = False

    def at_entry_surface(self) -> bool:
        return self.at_entry

    def to_entry_surface(self) -> None:
        self.at_entry = True
        self.redirected = True
        _print_error(KbChatError.from_code("E-5002", reason="the server refused the renewal"))


@asynccontextmanager
async def _session(cfg: KbChatConfig, require_auth: bool = True, at_entry: bool = False):
    """Open the transport and a started session manager.

    Yields:
        (client, session, navigator)
    """
    store = get_store(cfg)
    navigator = ConsoleNavigator(at_entry=at_entry)
    async with get_client(cfg, store=store) as client:
        session = get_session_manager(cfg, store, client, navigator)
        try:
            authenticated = await session.start()
            if require_auth and not authenticated:
                raise NotAuthenticatedError(renewal_refused=navigator.redirected)
            yield client, session, navigator
        finally:
            await session.close()


async def _require_role(client: HttpClient, action: str) -> None:
    gate = RoleGate(client)
    if not await gate.has_role(*MANAGE_ROLES):
        _print_error(KbChatError.from_code("E-5004", role=gate.profile.role, action=action))
        raise typer.Exit(1)


def _run(cfg: KbChatConfig, what: str, coro_fn) -> None:
    """Run an async command body, rendering transport errors."""
    try:
        asyncio.run(coro_fn())
    except KbChatClientError as e:
        _client_error(e, cfg, what)
    except NotAuthenticatedError as e:
        if not e.renewal_refused:
            _print_error(KbChatError.from_code("E-5001"))
        raise typer.Exit(1)


# --- Version ---


@app.command()
def version():
    """Show kbchat version."""
    from importlib.metadata import version as pkg_version
    try:
        v = pkg_version("kbchat")
    except Exception:
        v = "unknown"
    console.print(f"[bold]kbchat[/bold] v{v}")


# --- Session commands ---


@app.command()
def login(
    email: str = typer.Option(..., "--email", "-e", prompt=True, help="Account email"),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, help="Account password"
    ),
):
    """Sign in and store credentials for later commands."""
    cfg = _load()

    async def _body():
        async with _session(cfg, require_auth=False, at_entry=True) as (_, session, _nav):
            try:
                await session.login(email, password)
            except KbChatClientError as e:
                if e.status_code is None:
                    raise
                _print_error(KbChatError.from_code("E-5003", reason=e.message))
                raise typer.Exit(1)
            console.print(f"[green]Signed in as {email}.[/green]")

    _run(cfg, "login", _body)


@app.command()
def logout():
    """Forget stored credentials."""
    cfg = _load()
    store = get_store(cfg)
    session = get_session_manager(cfg, store, get_client(cfg, store=store), ConsoleNavigator(at_entry=True))
    session.logout()
    console.print("[dim]Signed out.[/dim]")


@app.command()
def status():
    """Show API reachability and session state (renews if due)."""
    cfg = _load()

    async def _body():
        async with _session(cfg, require_auth=False) as (client, session, _nav):
            health = await client.health()
            expires_ms = session.expires_at_ms if session.is_authenticated else None
            expires_at = datetime.fromtimestamp(expires_ms / 1000) if expires_ms else None
            console.print(
                format_session_status(
                    session.is_authenticated,
                    expires_at,
                    session.next_renewal_delay,
                    health,
                    cfg.api.base_url,
                )
            )

    _run(cfg, "session status", _body)


@app.command()
def whoami(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the signed-in user and role."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _session_mgr, _nav):
            profile = await RoleGate(client).current_user()
            console.print(format_profile(profile, as_json=json_output))

    _run(cfg, "your profile", _body)


# --- Knowledge base commands ---


@kb_app.command("list")
def kb_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List knowledge bases you can access."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            kbs = await client.list_knowledge_bases()
            console.print(format_knowledge_bases(kbs, as_json=json_output))

    _run(cfg, "knowledge bases", _body)


@kb_app.command("create")
def kb_create(
    name: str = typer.Argument(help="Knowledge base name"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
):
    """Create a knowledge base."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "create knowledge bases")
            kb = await client.create_knowledge_base(name, description)
            console.print(f"[green]Created knowledge base {kb.name} ({kb.id}).[/green]")

    _run(cfg, "knowledge base", _body)


@kb_app.command("show")
def kb_show(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show one knowledge base."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            kb = await client.get_knowledge_base(knowledge_base_id)
            console.print(format_knowledge_base(kb, as_json=json_output))

    _run(cfg, "knowledge base", _body)


@kb_app.command("rename")
def kb_rename(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    name: str = typer.Argument(help="New name"),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", help="New description (kept when omitted)"
    ),
):
    """Rename a knowledge base."""
    cfg = _load()
    if not name.strip():
        _print_error(KbChatError.from_code("E-2005", field="knowledge base name"))
        raise typer.Exit(1)

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "rename knowledge bases")
            current = description
            if current is None:
                current = (await client.get_knowledge_base(knowledge_base_id)).description
            kb = await client.update_knowledge_base(knowledge_base_id, name.strip(), current)
            console.print(f"[green]Knowledge base {kb.id} is now {kb.name}.[/green]")

    _run(cfg, "knowledge base", _body)


@kb_app.command("delete")
def kb_delete(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a knowledge base and everything in it."""
    cfg = _load()
    if not yes:
        typer.confirm(f"Delete knowledge base {knowledge_base_id}?", abort=True)

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "delete knowledge bases")
            await client.delete_knowledge_base(knowledge_base_id)
            console.print(f"[yellow]Knowledge base {knowledge_base_id} deleted.[/yellow]")

    _run(cfg, "knowledge base", _body)


# --- Document and question commands ---


def _report_outcome(tracker: ResourceTracker, resource_id: str) -> None:
    resource = tracker.get(resource_id)
    title = getattr(resource, "title", None) or getattr(resource, "question", resource_id)
    if resource.status == ResourceStatus.PROCESSED:
        console.print(f"[green]{title}: processed.[/green]")
        return
    if resource.status == ResourceStatus.FAILED:
        code = "E-3001" if isinstance(tracker, DocumentTracker) else "E-3002"
        _print_error(
            KbChatError.from_code(code, title=title, reason=resource.error_message or "unknown")
        )
    else:
        _print_error(KbChatError.from_code("E-3003", title=title))


async def _watch(tracker: ResourceTracker, resource_ids: list[str]) -> None:
    """Wait for the polling cycles of resource_ids and report outcomes."""
    for resource_id in resource_ids:
        await tracker.wait_for(resource_id)
        _report_outcome(tracker, resource_id)


def _status_printer(kind: str):
    last: dict[str, ResourceStatus] = {}

    def _on_change(items) -> None:
        for item in items:
            if last.get(item.id) != item.status:
                last[item.id] = item.status
                _log.debug("%s %s is %s", kind, item.id, item.status.value)
                console.print(f"[dim]{kind} {item.id}: {item.status.value}[/dim]")

    return _on_change


def _document_tracker(cfg, client, knowledge_base_id, watch=False) -> DocumentTracker:
    return DocumentTracker(
        client,
        knowledge_base_id,
        poll_interval=cfg.polling.resource_interval_seconds,
        on_change=_status_printer("document") if watch else None,
    )


def _question_tracker(cfg, client, knowledge_base_id, watch=False) -> QuestionTracker:
    return QuestionTracker(
        client,
        knowledge_base_id,
        poll_interval=cfg.polling.resource_interval_seconds,
        on_change=_status_printer("question") if watch else None,
    )


@docs_app.command("list")
def docs_list(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Wait for processing to finish"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List documents and their processing status."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            tracker = _document_tracker(cfg, client, knowledge_base_id)
            try:
                documents = await tracker.refresh()
                console.print(format_documents(documents, as_json=json_output))
                if watch and tracker.has_processing():
                    console.print(f"[dim]Waiting for {tracker.pending_count() + tracker.processing_count()} document(s)…[/dim]")
                    await _watch(tracker, [d.id for d in documents if tracker.is_polling(d.id)])
            finally:
                tracker.close()

    _run(cfg, "documents", _body)


@docs_app.command("upload")
def docs_upload(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    file_path: str = typer.Argument(help="File to upload"),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Wait for processing to finish"),
):
    """Upload a document and (by default) wait for it to be processed."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "upload documents")
            tracker = _document_tracker(cfg, client, knowledge_base_id, watch=watch)
            try:
                document = await tracker.upload(file_path)
                console.print(f"[green]Uploaded {document.title or file_path} ({document.id}).[/green]")
                if watch:
                    await _watch(tracker, [document.id])
            finally:
                tracker.close()

    try:
        _run(cfg, "document upload", _body)
    except OSError as e:
        console.print(f"[red]Cannot read {file_path}:[/red] {e}")
        raise typer.Exit(1)


@docs_app.command("retry")
def docs_retry(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    document_id: str = typer.Argument(help="Document ID"),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Wait for processing to finish"),
):
    """Re-submit a failed document."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "retry documents")
            tracker = _document_tracker(cfg, client, knowledge_base_id, watch=watch)
            try:
                await tracker.retry(document_id)
                console.print(f"[dim]Document {document_id} re-submitted.[/dim]")
                if watch:
                    await _watch(tracker, [document_id])
            finally:
                tracker.close()

    _run(cfg, "document retry", _body)


@docs_app.command("rename")
def docs_rename(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    document_id: str = typer.Argument(help="Document ID"),
    title: str = typer.Argument(help="New title"),
):
    """Change a document's title."""
    cfg = _load()
    if not title.strip():
        _print_error(KbChatError.from_code("E-2005", field="document title"))
        raise typer.Exit(1)

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "rename documents")
            document = await client.update_document(knowledge_base_id, document_id, title.strip())
            console.print(f"[green]Document {document.id} is now {document.title}.[/green]")

    _run(cfg, "document", _body)


@docs_app.command("delete")
def docs_delete(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    document_id: str = typer.Argument(help="Document ID"),
):
    """Delete a document."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "delete documents")
            tracker = _document_tracker(cfg, client, knowledge_base_id)
            await tracker.delete(document_id)
            console.print(f"[yellow]Document {document_id} deleted.[/yellow]")

    _run(cfg, "document", _body)


@questions_app.command("list")
def questions_list(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Wait for processing to finish"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List curated questions and their processing status."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            tracker = _question_tracker(cfg, client, knowledge_base_id)
            try:
                questions = await tracker.refresh()
                console.print(format_questions(questions, as_json=json_output))
                if watch and tracker.has_processing():
                    await _watch(tracker, [q.id for q in questions if tracker.is_polling(q.id)])
            finally:
                tracker.close()

    _run(cfg, "questions", _body)


@questions_app.command("add")
def questions_add(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    question: str = typer.Option(..., "--question", "-q", prompt=True, help="Question text"),
    answer: str = typer.Option(..., "--answer", "-a", prompt=True, help="Answer text"),
    answer_type: str = typer.Option("DIRECT", "--type", help="DIRECT or SQL_QUERY"),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Wait for processing to finish"),
):
    """Add a curated question/answer pair."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "add questions")
            tracker = _question_tracker(cfg, client, knowledge_base_id, watch=watch)
            try:
                try:
                    created = await tracker.create(question, answer, answer_type.upper())
                except ValidationError as e:
                    _print_error(KbChatError.from_code(e.code))
                    raise typer.Exit(1)
                console.print(f"[green]Question added ({created.id}).[/green]")
                if watch:
                    await _watch(tracker, [created.id])
            finally:
                tracker.close()

    _run(cfg, "question", _body)


@questions_app.command("retry")
def questions_retry(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    question_id: str = typer.Argument(help="Question ID"),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Wait for processing to finish"),
):
    """Re-submit a failed question."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "retry questions")
            tracker = _question_tracker(cfg, client, knowledge_base_id, watch=watch)
            try:
                await tracker.retry(question_id)
                console.print(f"[dim]Question {question_id} re-submitted.[/dim]")
                if watch:
                    await _watch(tracker, [question_id])
            finally:
                tracker.close()

    _run(cfg, "question retry", _body)


@questions_app.command("delete")
def questions_delete(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    question_id: str = typer.Argument(help="Question ID"),
):
    """Delete a curated question."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, _s, _n):
            await _require_role(client, "delete questions")
            tracker = _question_tracker(cfg, client, knowledge_base_id)
            await tracker.delete(question_id)
            console.print(f"[yellow]Question {question_id} deleted.[/yellow]")

    _run(cfg, "question", _body)


# --- Chat ---


@app.command()
def chat(
    knowledge_base_id: str = typer.Argument(help="Knowledge base ID"),
    title: str = typer.Option("", "--title", "-t", help="Title for a new conversation"),
):
    """Chat with a knowledge base (interactive)."""
    cfg = _load()

    async def _body():
        async with _session(cfg) as (client, session, _nav):
            await run_chat(
                client,
                session,
                get_activity_tracker(cfg),
                partial(get_sync_engine, cfg),
                knowledge_base_id,
                title,
            )

    try:
        _run(cfg, "conversation", _body)
    except KeyboardInterrupt:
        console.print("\n[dim]Chat ended.[/dim]")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration."""
    cfg = _load()
    for section, values in cfg.model_dump().items():
        console.print(f"[bold]{section}:[/bold]")
        for key, value in values.items():
            console.print(f"  {key}: {value if value is not None else '—'}")
    console.print(f"\n[dim]credentials: {cfg.session.resolved_credentials_path()}[/dim]")


@config_app.command("validate")
def config_validate(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate a config file."""
    path = config or _config_path
    try:
        cfg = load_config(config_path=path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    console.print("[green]Config is valid.[/green]")
    console.print(f"  API: {cfg.api.base_url}")
    console.print(
        f"  Polling: {cfg.polling.waiting_interval_seconds:g}s waiting / "
        f"{cfg.polling.active_interval_seconds:g}s active / "
        f"{cfg.polling.idle_interval_seconds:g}s idle"
    )
