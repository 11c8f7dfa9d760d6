"""Client-side synchronization services for kbchat.

Session renewal, activity tracking, conversation polling and
resource-ingestion tracking. Nothing here imports httpx; every network
call goes through a KbChatTransport.
"""

from src.services.activity_tracker import ActivitySignal, ActivityTracker
from src.services.conversation_sync import ConversationSyncEngine, ConversationView
from src.services.credential_store import (
    CredentialStore,
    FileCredentialStore,
    StorageChange,
)
from src.services.message_merge import merge_messages, sort_messages
from src.services.resource_poller import ResourcePoller
from src.services.resource_tracker import DocumentTracker, QuestionTracker
from src.services.role_gate import RoleGate
from src.services.session_manager import Navigator, SessionTokenManager

__all__ = [
    "ActivitySignal",
    "ActivityTracker",
    "ConversationSyncEngine",
    "ConversationView",
    "CredentialStore",
    "FileCredentialStore",
    "StorageChange",
    "merge_messages",
    "sort_messages",
    "ResourcePoller",
    "DocumentTracker",
    "QuestionTracker",
    "RoleGate",
    "Navigator",
    "SessionTokenManager",
]
