"""
Durable at-least-once work queue stored in the `delivery_tasks` table.

Semantics follow the usual cloud storage-queue model:
- enqueue() is durable once it returns
- receive() leases visible tasks and hides them for the visibility timeout
- ack() deletes a leased task; an unacknowledged lease simply expires and
  the task is delivered again
- a task already delivered `max_deliveries` times is dead-lettered on its
  next lease attempt (poison message)
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError

from outbound.exceptions import QueueError
from outbound.metrics import record_dead_letter, set_queue_depth
from outbound.models import QueuedTask
from outbound.schemas import DeliveryTask
from outbound.utils import format_ts, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A task handed to one consumer until ack/release or lease expiry."""

    task_id: int
    receipt: str
    payload: str
    receive_count: int


class WorkQueue:
    """
    Queue of DeliveryTask payloads.

    Args:
        session_factory: callable returning a SQLAlchemy Session
        visibility_timeout: seconds a leased task stays hidden
        max_deliveries: deliveries allowed before a task is dead-lettered
    """

    def __init__(self, session_factory, visibility_timeout: float = 60.0, max_deliveries: int = 5):
        self._session_factory = session_factory
        self._visibility_timeout = visibility_timeout
        self._max_deliveries = max_deliveries
        self._lease_lock = threading.Lock()

    def enqueue(self, task: DeliveryTask, now: Optional[datetime] = None) -> int:
        """
        Durably add a task.

        Returns:
            The queue-assigned task id

        Raises:
            QueueError: the task was not stored
        """
        ts = format_ts(now)
        try:
            with self._session_factory() as db:
                row = QueuedTask(
                    payload=task.to_json(),
                    enqueued_at=ts,
                    visible_at=ts,
                    receive_count=0,
                )
                db.add(row)
                db.commit()
                task_id = row.id
        except SQLAlchemyError as e:
            raise QueueError(
                "Failed to enqueue delivery task",
                cause=e,
                context={"message_id": task.message_id},
            )
        logger.info(f"Enqueued task {task_id} for message {task.message_id}")
        return task_id

    def receive(self, max_tasks: int = 1, now: Optional[datetime] = None) -> list[Lease]:
        """
        Lease up to `max_tasks` visible tasks, oldest visible first.

        Tasks over the delivery limit are dead-lettered instead of returned.
        """
        now = now or utc_now()
        ts = format_ts(now)
        hidden_until = format_ts(now + timedelta(seconds=self._visibility_timeout))
        leases = []

        try:
            with self._lease_lock, self._session_factory() as db:
                candidates = (
                    db.query(QueuedTask)
                    .filter(QueuedTask.dead_lettered_at.is_(None), QueuedTask.visible_at <= ts)
                    .order_by(QueuedTask.visible_at.asc(), QueuedTask.id.asc())
                    .limit(max_tasks)
                    .all()
                )
                for row in candidates:
                    if row.receive_count >= self._max_deliveries:
                        db.execute(
                            update(QueuedTask)
                            .where(QueuedTask.id == row.id)
                            .values(
                                dead_lettered_at=ts,
                                receipt=None,
                                last_error=row.last_error or "Delivery limit reached",
                            )
                        )
                        logger.warning(
                            f"Task {row.id} dead-lettered after {row.receive_count} deliveries"
                        )
                        record_dead_letter("max_deliveries")
                        continue

                    receipt = str(uuid.uuid4())
                    result = db.execute(
                        update(QueuedTask)
                        .where(
                            QueuedTask.id == row.id,
                            QueuedTask.receive_count == row.receive_count,
                        )
                        .values(
                            receipt=receipt,
                            visible_at=hidden_until,
                            receive_count=QueuedTask.receive_count + 1,
                        )
                    )
                    if result.rowcount == 1:
                        leases.append(Lease(
                            task_id=row.id,
                            receipt=receipt,
                            payload=row.payload,
                            receive_count=row.receive_count + 1,
                        ))
                db.commit()
        except SQLAlchemyError as e:
            raise QueueError("Failed to lease delivery tasks", cause=e)

        if leases:
            logger.debug(f"Leased {len(leases)} task(s)")
        return leases

    def ack(self, receipt: str) -> bool:
        """
        Delete a leased task.

        Returns:
            False when the lease had already expired and been re-issued
        """
        with self._session_factory() as db:
            result = db.execute(delete(QueuedTask).where(QueuedTask.receipt == receipt))
            db.commit()
        if result.rowcount != 1:
            logger.warning(f"Ack for unknown or expired receipt {receipt}")
            return False
        return True

    def release(
        self,
        receipt: str,
        error: Optional[str] = None,
        delay_seconds: float = 0.0,
        now: Optional[datetime] = None,
    ) -> bool:
        """Make a leased task visible again after `delay_seconds`."""
        now = now or utc_now()
        with self._session_factory() as db:
            result = db.execute(
                update(QueuedTask)
                .where(QueuedTask.receipt == receipt)
                .values(
                    receipt=None,
                    visible_at=format_ts(now + timedelta(seconds=delay_seconds)),
                    last_error=error,
                )
            )
            db.commit()
        return result.rowcount == 1

    def dead_letter(self, receipt: str, reason: str, now: Optional[datetime] = None) -> bool:
        """Park a leased task so it is never delivered again."""
        with self._session_factory() as db:
            result = db.execute(
                update(QueuedTask)
                .where(QueuedTask.receipt == receipt)
                .values(receipt=None, dead_lettered_at=format_ts(now), last_error=reason)
            )
            db.commit()
        if result.rowcount == 1:
            logger.warning(f"Task with receipt {receipt} dead-lettered: {reason}")
            record_dead_letter("permanent_error")
            return True
        return False

    def depth(self) -> int:
        """Tasks still waiting for (or in) delivery."""
        with self._session_factory() as db:
            count = (
                db.query(func.count(QueuedTask.id))
                .filter(QueuedTask.dead_lettered_at.is_(None))
                .scalar()
            ) or 0
        set_queue_depth(count)
        return count

    def dead_letter_count(self) -> int:
        with self._session_factory() as db:
            return (
                db.query(func.count(QueuedTask.id))
                .filter(QueuedTask.dead_lettered_at.is_not(None))
                .scalar()
            ) or 0

    def pending_payloads(self) -> list[str]:
        """Payloads of all live tasks in delivery order (inspection/tests)."""
        with self._session_factory() as db:
            rows = (
                db.query(QueuedTask.payload)
                .filter(QueuedTask.dead_lettered_at.is_(None))
                .order_by(QueuedTask.visible_at.asc(), QueuedTask.id.asc())
                .all()
            )
        return [row.payload for row in rows]
