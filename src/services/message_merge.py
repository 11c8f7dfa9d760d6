"""Reconciliation of fetched message lists with local state.

Merging is keyed by message id and never drops a local entry, so an
optimistic insert survives a fetch that does not include it yet.
Applying the same server list any number of times yields the same
result, and a snapshot older than the local copy (by updated_at) is
ignored, so a slow fetch that lands after a faster one cannot regress
state.

Ordering is by creation time, except that a USER message is placed
ahead of an ASSISTANT message stamped less than the tolerance before
it: a prompt and its reply are often stamped within the same instant,
and the reply must never render first. The tolerance is a distance
between the two timestamps, not a fixed time grid, so a pair that
straddles a whole second is handled like any other pair. An assistant
message stays put when it is closer to the prompt before it than to
the later one.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from src.cli.protocol import MESSAGE_STATUS_RANK, Message, MessageKind

KIND_RANK = {MessageKind.USER: 0, MessageKind.ASSISTANT: 1}


def ordering_key(message: Message) -> tuple:
    """Chronological sort key: (exact time, author kind, id)."""
    return (message.created_at.timestamp(), KIND_RANK[message.kind], message.id)


def _answers_later_prompt(
    placed: list[Message], index: int, prompt_ts: float, tolerance: float
) -> bool:
    reply = placed[index]
    if reply.kind != MessageKind.ASSISTANT:
        return False
    reply_ts = reply.created_at.timestamp()
    gap = prompt_ts - reply_ts
    if gap >= tolerance:
        return False
    earlier_prompt = next(
        (m for m in reversed(placed[:index]) if m.kind == MessageKind.USER), None
    )
    if earlier_prompt is None:
        return True
    return reply_ts - earlier_prompt.created_at.timestamp() > gap


def sort_messages(messages: Iterable[Message], tolerance_seconds: float = 1.0) -> list[Message]:
    """Return messages in causal display order.

    Args:
        messages: Messages in any order.
        tolerance_seconds: How far an assistant message may be stamped
            before a user message and still count as its reply.
    """
    placed: list[Message] = []
    for message in sorted(messages, key=ordering_key):
        position = len(placed)
        if message.kind == MessageKind.USER and tolerance_seconds > 0:
            prompt_ts = message.created_at.timestamp()
            while position > 0 and _answers_later_prompt(
                placed, position - 1, prompt_ts, tolerance_seconds
            ):
                position -= 1
        placed.insert(position, message)
    return placed


def should_replace(local: Message, incoming: Message) -> bool:
    """Decide whether a fetched copy supersedes the local one.

    Only a copy at least as new as the local one, whose status does not
    move backwards, and whose status or content actually differs wins.
    """
    if incoming.updated_at < local.updated_at:
        return False
    if MESSAGE_STATUS_RANK[incoming.status] < MESSAGE_STATUS_RANK[local.status]:
        return False
    return incoming.status != local.status or incoming.content != local.content


@dataclass
class MergeResult:
    """Outcome of one reconciliation."""

    messages: list[Message]
    inserted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True when anything was inserted or updated."""
        return bool(self.inserted or self.updated)


def merge_messages(
    local: Iterable[Message],
    incoming: Iterable[Message],
    tolerance_seconds: float = 1.0,
) -> MergeResult:
    """Reconcile incoming messages into local state.

    Args:
        local: Current local messages (not mutated).
        incoming: Messages from the server or a send response.
        tolerance_seconds: Reply tolerance passed to sort_messages.

    Returns:
        MergeResult with the merged, ordered list and the ids touched.
    """
    by_id = {m.id: m for m in local}
    result = MergeResult(messages=[])
    for message in incoming:
        existing = by_id.get(message.id)
        if existing is None:
            by_id[message.id] = message
            result.inserted.append(message.id)
        elif should_replace(existing, message):
            by_id[message.id] = message
            result.updated.append(message.id)
    result.messages = sort_messages(by_id.values(), tolerance_seconds)
    return result
