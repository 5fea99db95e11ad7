"""
Pre-flight classification applied before a message reaches the provider.

Checks run cheapest first and short-circuit: address length, then the local
delivery window. Only a message that passes both costs a network call.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from outbound.status import MessageStatus

MIN_ADDRESS_LENGTH = 10

# Recipients are on AEST (UTC+10); daylight saving is not applied
LOCAL_UTC_OFFSET_HOURS = 10
WINDOW_START_HOUR = 8
WINDOW_END_HOUR = 21

INVALID_ADDRESS_REASON = "Phone number too short"
OUT_OF_WINDOW_REASON = "Outside allowed sending hours (8 AM - 9 PM AEST)"

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class Outcome:
    """Terminal status and reason decided for one delivery attempt."""

    status: MessageStatus
    reason: Optional[str] = None


def normalize_address(value) -> str:
    """Strip everything but digits."""
    return _NON_DIGITS.sub("", str(value or ""))


def is_valid_address(value) -> bool:
    return len(normalize_address(value)) >= MIN_ADDRESS_LENGTH


def local_hour(now: datetime) -> int:
    """Hour of day at the recipient, from an aware (or naive UTC) datetime."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return (now.hour + LOCAL_UTC_OFFSET_HOURS) % 24


def is_within_delivery_window(hour: int) -> bool:
    return not (hour < WINDOW_START_HOUR or hour > WINDOW_END_HOUR)


def preflight(task, now: datetime) -> Optional[Outcome]:
    """
    Classify a task without calling the provider.

    Returns:
        The terminal Outcome when a cheap check rejects the task,
        None when the task should go to the provider.
    """
    if not is_valid_address(task.to):
        return Outcome(MessageStatus.NOT_SENT_INVALID_ADDRESS, INVALID_ADDRESS_REASON)
    if not is_within_delivery_window(local_hour(now)):
        return Outcome(MessageStatus.NOT_SENT_OUT_OF_WINDOW, OUT_OF_WINDOW_REASON)
    return None
