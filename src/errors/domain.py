"""Typed domain exceptions raised by the synchronization core.

These exceptions give callers stronger guarantees than matching on
error strings. The CLI catches specific types to choose the message
and exit code.

Usage:
    # In the core
    raise SendRejectedError("E-2002")

    # In a CLI command
    try:
        await engine.send(text)
    except SendRejectedError as e:
        console.print(format_error(KbChatError.from_code(e.code)))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found locally."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class NotAuthenticatedError(DomainError):
    """No usable credentials are available.

    Attributes:
        renewal_refused: True when credentials existed but the server
            refused to renew them (the user has already been sent to
            sign in).
    """

    def __init__(self, message: str = "Not signed in", renewal_refused: bool = False) -> None:
        super().__init__(message)
        self.renewal_refused = renewal_refused


class ValidationError(DomainError):
    """Input was refused before any network call was made.

    Attributes:
        code: Registry code describing why (E-2xxx).
        reason: Human-readable explanation.
    """

    def __init__(self, code: str, reason: str = "") -> None:
        super().__init__(reason or code)
        self.code = code
        self.reason = reason


class SendRejectedError(ValidationError):
    """A message send was refused (empty text, assistant busy, no conversation)."""
