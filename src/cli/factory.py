"""Wiring of the transport and synchronization services from config.

CLI commands never construct concrete implementations themselves; they
go through these helpers so every command shares one credential file
and the same tuning values.
"""

from src.cli.config import KbChatConfig
from src.cli.http_client import HttpClient
from src.services.activity_tracker import ActivityTracker
from src.services.conversation_sync import ConversationSyncEngine
from src.services.credential_store import FileCredentialStore
from src.services.session_manager import Navigator, SessionTokenManager


def get_store(config: KbChatConfig) -> FileCredentialStore:
    """Credential store at the configured path."""
    return FileCredentialStore(config.session.resolved_credentials_path())


def get_client(
    config: KbChatConfig,
    store: FileCredentialStore | None = None,
    base_url: str | None = None,
) -> HttpClient:
    """Create the HTTP transport.

    Args:
        config: Loaded configuration.
        store: Credential store the bearer token is read from.
        base_url: Overrides config.api.base_url.

    Returns:
        An unopened HttpClient (use it as an async context manager).
    """
    return HttpClient(
        base_url=base_url or config.api.base_url,
        store=store,
        timeout=config.api.timeout_seconds,
    )


def get_session_manager(
    config: KbChatConfig,
    store: FileCredentialStore,
    transport: HttpClient,
    navigator: Navigator,
) -> SessionTokenManager:
    """Session manager tuned from config.session.

    The transport is pointed at the manager, so a request answered 401
    renews through the same serialized path as the renewal timer.
    """
    manager = SessionTokenManager(
        store,
        transport,
        navigator,
        lead_window_seconds=config.session.lead_window_seconds,
        default_token_lifetime_seconds=config.session.default_token_lifetime_seconds,
    )
    transport.on_unauthorized = manager.handle_unauthorized
    return manager


def get_activity_tracker(config: KbChatConfig) -> ActivityTracker:
    return ActivityTracker(
        decay_window_seconds=config.activity.decay_window_seconds,
        check_interval_seconds=config.activity.check_interval_seconds,
    )


def get_sync_engine(
    config: KbChatConfig,
    transport: HttpClient,
    activity: ActivityTracker,
    **callbacks,
) -> ConversationSyncEngine:
    """Conversation engine using the configured cadence and thresholds."""
    return ConversationSyncEngine(
        transport,
        activity,
        waiting_interval=config.polling.waiting_interval_seconds,
        active_interval=config.polling.active_interval_seconds,
        idle_interval=config.polling.idle_interval_seconds,
        bottom_threshold_px=config.viewport.bottom_threshold_px,
        ordering_bucket_seconds=config.conversation.ordering_bucket_seconds,
        reply_grace_seconds=config.conversation.reply_grace_seconds,
        **callbacks,
    )
