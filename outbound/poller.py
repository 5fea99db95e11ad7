"""
Poller: moves Pending messages onto the work queue.

Each tick reads the oldest Pending messages (bounded batch), enqueues one
DeliveryTask per message and only then marks the message Queued. A failure
on one message is logged and the message stays Pending for the next tick;
a failure to read the batch aborts the tick.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from outbound.logging_utils import message_log_context
from outbound.metrics import record_poll, record_poll_batch_failure
from outbound.schemas import DeliveryTask
from outbound.status import MessageStatus
from outbound.storage import list_messages_by_status, mark_queued
from outbound.utils import utc_now
from outbound.work_queue import WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class PollResult:
    """Counts for one poller tick."""

    found: int = 0
    enqueued: int = 0
    failed: int = 0
    # enqueued, but the message had already left Pending
    advanced: int = 0


def poll_once(
    db: Session,
    queue: WorkQueue,
    batch_size: int = DEFAULT_BATCH_SIZE,
    now: Optional[datetime] = None,
) -> PollResult:
    """
    Run one poller tick.

    Raises:
        Any store error from the batch read; nothing has been enqueued then.
    """
    now = now or utc_now()

    try:
        pending = list_messages_by_status(db, MessageStatus.CREATED, limit=batch_size)
    except Exception as e:
        logger.error(f"Failed to read pending messages: {e}")
        record_poll_batch_failure()
        raise

    result = PollResult(found=len(pending))
    if not pending:
        logger.info("No pending messages to process")
        return result

    logger.info(f"Found {len(pending)} pending messages")

    # Snapshot every task before the first commit expires the ORM instances
    tasks = [DeliveryTask.from_record(message) for message in pending]

    for task in tasks:
        with message_log_context(task.message_id):
            try:
                queue.enqueue(task, now=now)
                if mark_queued(db, task.message_id, now=now):
                    result.enqueued += 1
                else:
                    result.advanced += 1
                    logger.info(
                        f"Message {task.message_id} left Pending while being enqueued, not counted"
                    )
            except Exception as e:
                db.rollback()
                result.failed += 1
                logger.error(f"Failed to enqueue message {task.message_id}: {e}")

    record_poll(result.found, result.enqueued, result.failed)
    logger.info(
        f"Successfully enqueued {result.enqueued} messages",
        extra={"found": result.found, "failed": result.failed, "advanced": result.advanced},
    )
    return result


class Poller:
    """
    Scheduled wrapper around poll_once().

    Ticks never overlap: a tick that fires while the previous one is still
    running is skipped.
    """

    def __init__(self, session_factory, queue: WorkQueue, batch_size: int = DEFAULT_BATCH_SIZE):
        self._session_factory = session_factory
        self._queue = queue
        self._batch_size = batch_size
        self._running = threading.Lock()

    def tick(self, now: Optional[datetime] = None) -> Optional[PollResult]:
        """
        Returns:
            The PollResult, or None when the tick was skipped
        """
        if not self._running.acquire(blocking=False):
            logger.warning("Previous poller tick still running, skipping this one")
            return None
        try:
            with self._session_factory() as db:
                return poll_once(db, self._queue, self._batch_size, now=now)
        finally:
            self._running.release()
