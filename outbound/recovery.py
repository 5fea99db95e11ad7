"""
Reconciliation sweep for messages stuck in Processing.

A consumer that dies after marking a message Processing leaves it there; the
poller only picks up Pending messages. This sweep re-enqueues such messages
once they have been idle longer than the staleness threshold, and gives up
on a message after `max_attempts` delivery attempts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from outbound.exceptions import ConcurrentUpdateError
from outbound.logging_utils import message_log_context
from outbound.metrics import record_delivery_outcome
from outbound.schemas import DeliveryTask
from outbound.status import MessageStatus
from outbound.storage import list_stale_processing, touch_message, update_message_status
from outbound.utils import utc_now
from outbound.work_queue import WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    found: int = 0
    requeued: int = 0
    exhausted: int = 0
    failed: int = 0


def recover_stale_processing(
    db: Session,
    queue: WorkQueue,
    stale_after: timedelta,
    max_attempts: int,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> RecoveryResult:
    """
    Re-enqueue or give up on messages idle in Processing.

    The status stays Processing when a message is re-enqueued; only
    modified_at/version move, so the record never goes backward and the
    next sweep does not pick it up again until it is stale once more.
    """
    now = now or utc_now()
    stale = list_stale_processing(db, older_than=now - stale_after, limit=limit)
    result = RecoveryResult(found=len(stale))
    if not stale:
        return result

    logger.info(f"Found {len(stale)} messages stuck in Processing")
    snapshots = [(DeliveryTask.from_record(m), m.version, m.retry_count) for m in stale]

    for task, version, attempts in snapshots:
        with message_log_context(task.message_id):
            try:
                if attempts >= max_attempts:
                    update_message_status(
                        db,
                        task.message_id,
                        MessageStatus.FAILED_RETRIES_EXHAUSTED,
                        reason=f"Gave up after {attempts} delivery attempts",
                        expected_version=version,
                        now=now,
                    )
                    record_delivery_outcome(MessageStatus.FAILED_RETRIES_EXHAUSTED.value)
                    result.exhausted += 1
                    continue

                if not touch_message(db, task.message_id, version, now=now):
                    raise ConcurrentUpdateError(task.message_id, version)
                queue.enqueue(task, now=now)
                result.requeued += 1
                logger.info(f"Re-enqueued message {task.message_id} (attempt {attempts + 1})")
            except ConcurrentUpdateError:
                db.rollback()
                logger.info(f"Message {task.message_id} moved on during recovery, skipping")
            except Exception as e:
                db.rollback()
                result.failed += 1
                logger.error(f"Failed to recover message {task.message_id}: {e}")

    return result
