"""
Message delivery state machine.

Created -> Queued -> Processing -> one terminal status. The stored values are
the display strings the query API and UI already understand.
"""

from enum import Enum
from typing import Optional

from outbound.exceptions import InvalidTransitionError


class MessageStatus(str, Enum):
    CREATED = "Pending"
    QUEUED = "Queued"
    PROCESSING = "Processing"
    SUCCESSFULLY_SENT = "Successfully Sent"
    NOT_SENT_INVALID_ADDRESS = "Not Sent - Not a valid phone"
    NOT_SENT_OUT_OF_WINDOW = "Not Sent - Not valid by Time zone"
    FAILED_PROVIDER_ERROR = "Failed - API Error"
    FAILED_RETRIES_EXHAUSTED = "Failed - Retries Exhausted"


TERMINAL_STATUSES = frozenset({
    MessageStatus.SUCCESSFULLY_SENT,
    MessageStatus.NOT_SENT_INVALID_ADDRESS,
    MessageStatus.NOT_SENT_OUT_OF_WINDOW,
    MessageStatus.FAILED_PROVIDER_ERROR,
    MessageStatus.FAILED_RETRIES_EXHAUSTED,
})

# Created -> Processing covers a task orphaned by a poller crash between
# enqueue and mark-queued. Processing -> Processing is a redelivered attempt.
_TRANSITIONS = {
    MessageStatus.CREATED: frozenset({MessageStatus.QUEUED, MessageStatus.PROCESSING}),
    MessageStatus.QUEUED: frozenset({MessageStatus.PROCESSING}),
    MessageStatus.PROCESSING: frozenset({MessageStatus.PROCESSING}) | TERMINAL_STATUSES,
}


def is_terminal(status) -> bool:
    return MessageStatus(status) in TERMINAL_STATUSES


def can_transition(current, requested) -> bool:
    """Check whether `current -> requested` is an edge of the state machine."""
    current = MessageStatus(current)
    requested = MessageStatus(requested)
    return requested in _TRANSITIONS.get(current, frozenset())


def ensure_transition(current, requested, message_id: Optional[int] = None) -> None:
    """Raise InvalidTransitionError unless `current -> requested` is allowed."""
    if not can_transition(current, requested):
        raise InvalidTransitionError(
            message_id,
            MessageStatus(current).value,
            MessageStatus(requested).value,
        )
