"""
Exception types for the delivery pipeline.

Provides:
- ErrorCategory enum used by the worker to decide between redelivery
  and dead-lettering
- Typed exception hierarchy for store, queue and provider failures
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of pipeline errors.

    Categories:
        TRANSIENT: Temporary failures; the task is released for redelivery
        PERMANENT: Will never succeed on retry; the task is dead-lettered
        CONFLICT: Another invocation changed the record first
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFLICT = "conflict"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether redelivering the task could succeed."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Task / Record Errors (Permanent)
# =============================================================================


class PermanentTaskError(PipelineError):
    """Base class for errors that redelivery cannot fix."""

    category = ErrorCategory.PERMANENT


class TaskDecodeError(PermanentTaskError):
    """Queue payload could not be deserialized into a DeliveryTask."""


class MessageNotFoundError(PermanentTaskError):
    """Task references a message record that does not exist."""

    def __init__(self, message_id: int):
        super().__init__(
            f"Message {message_id} not found",
            context={"message_id": message_id},
        )
        self.message_id = message_id


class InvalidTransitionError(PermanentTaskError):
    """Requested status change is not an edge of the state machine."""

    def __init__(self, message_id: Optional[int], current: str, requested: str):
        super().__init__(
            f"Invalid transition for message {message_id}: {current!r} -> {requested!r}",
            context={"message_id": message_id, "current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class ConcurrentUpdateError(PipelineError):
    """Version token did not match; someone else wrote the record first."""

    category = ErrorCategory.CONFLICT

    def __init__(self, message_id: int, expected_version: int):
        super().__init__(
            f"Message {message_id} changed concurrently (expected version {expected_version})",
            context={"message_id": message_id, "expected_version": expected_version},
        )
        self.message_id = message_id
        self.expected_version = expected_version


# =============================================================================
# Provider Errors (Transient)
# =============================================================================


class ProviderError(PipelineError):
    """Delivery provider call failed."""


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the client-side timeout."""


class ProviderTransportError(ProviderError):
    """Network/HTTP level failure talking to the provider."""


# =============================================================================
# Queue Errors (Transient)
# =============================================================================


class QueueError(PipelineError):
    """Work queue submit or lease operation failed."""
