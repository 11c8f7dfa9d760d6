"""Error code registry with E-XXXX format codes.

This module defines the error code system for kbchat, organizing errors
into categories:
- E-2xxx: Validation errors (rejected user input)
- E-3xxx: Resource processing errors (document/question ingestion)
- E-4xxx: Transport errors (transient fetch and send failures)
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-2xxx
    RESOURCE = "resource"  # E-3xxx
    TRANSPORT = "transport"  # E-4xxx
    AUTH = "auth"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Empty Message",
        message_template="Message text is empty.",
        remediation="Type a question before sending.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Assistant Busy",
        message_template="The assistant is still answering the previous message.",
        remediation="Wait for the current reply to finish, then send again.",
        is_retryable=True,
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="No Conversation",
        message_template="No conversation is available for knowledge base '{knowledge_base_id}'.",
        remediation="Re-open the knowledge base to provision a conversation.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.VALIDATION,
        title="Missing Question Fields",
        message_template="Question and answer are required.",
        remediation="Provide both a question and an answer.",
    ),
    "E-2005": ErrorCode(
        code="E-2005",
        category=ErrorCategory.VALIDATION,
        title="Empty Name",
        message_template="A non-blank {field} is required.",
        remediation="Pass a name or title with at least one visible character.",
    ),
    # Resource processing errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.RESOURCE,
        title="Document Processing Failed",
        message_template="Document '{title}' failed to process: {reason}",
        remediation="Retry the document, or upload a different file.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.RESOURCE,
        title="Question Processing Failed",
        message_template="Question '{title}' failed to process: {reason}",
        remediation="Retry the question, or edit and re-create it.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.RESOURCE,
        title="Status Unknown",
        message_template="Status of '{title}' could not be refreshed.",
        remediation="Refresh the list to resume tracking.",
        is_retryable=True,
    ),
    # Transport errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.TRANSPORT,
        title="Fetch Failed",
        message_template="Could not refresh {what}: {reason}",
        remediation="The next refresh will try again automatically.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.TRANSPORT,
        title="Send Failed",
        message_template="Message could not be sent: {reason}",
        remediation="Check your connection and send the message again.",
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.TRANSPORT,
        title="API Unreachable",
        message_template="The knowledge base API at {base_url} is not reachable.",
        remediation="Check api.base_url in kbchat.yaml and that the server is running.",
        is_retryable=True,
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.TRANSPORT,
        title="Unexpected Response",
        message_template="The server answered {what} with something kbchat cannot read: {reason}",
        remediation="Check that api.base_url points at the knowledge base API and not a proxy page.",
    ),
    # Authentication errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Not Signed In",
        message_template="You are not signed in.",
        remediation="Run 'kbchat login'.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Session Renewal Failed",
        message_template="Your session could not be renewed: {reason}",
        remediation="Run 'kbchat login' to sign in again.",
    ),
    "E-5003": ErrorCode(
        code="E-5003",
        category=ErrorCategory.AUTH,
        title="Login Failed",
        message_template="Login was rejected: {reason}",
        remediation="Check your email and password.",
    ),
    "E-5004": ErrorCode(
        code="E-5004",
        category=ErrorCategory.AUTH,
        title="Not Permitted",
        message_template="Your role ({role}) cannot {action}.",
        remediation="Ask a knowledge base owner or an administrator.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Look up error code definition.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
