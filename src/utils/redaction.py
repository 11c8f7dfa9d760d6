"""Secret redaction for log lines and displayed error messages.

Server and transport errors can echo request bodies or headers back.
Anything that looks like a token, password or bearer header is masked
before the message reaches a log handler or the terminal.
"""

import re

_REDACTED = "***REDACTED***"

_SENSITIVE_KEYWORDS = (
    r"secret|token|password|refresh_token|access_token|authorization|credential"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    # Authorization: Bearer <token>
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # JSON-style "key": "value"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    # key=value (unquoted, consumes until whitespace/end)
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)


def sanitize_error_message(msg: str | None, max_length: int = 500) -> str | None:
    """Sanitize a server or transport error message for display and logs.

    Redacts sensitive-looking key=value pairs and truncates to max_length.

    Args:
        msg: Error message to sanitize (None passes through).
        max_length: Maximum length of the sanitized message.

    Returns:
        Sanitized and truncated message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
