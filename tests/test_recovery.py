"""
Tests for the sweep that recovers messages stuck in Processing.
"""

from datetime import timedelta

from outbound.recovery import recover_stale_processing
from outbound.schemas import DeliveryTask
from outbound.status import MessageStatus
from outbound.storage import get_message_by_id, mark_queued, update_message_status

from conftest import BUSINESS_HOURS

STALE_AFTER = timedelta(minutes=15)


def stuck_in_processing(db, seed, attempts=1, at=BUSINESS_HOURS):
    message_id = seed()
    mark_queued(db, message_id, now=at)
    for _ in range(attempts):
        update_message_status(db, message_id, MessageStatus.PROCESSING, now=at)
    return message_id


class TestRecoverStaleProcessing:
    def test_stale_message_is_requeued_without_moving_backward(self, db, queue, seed):
        message_id = stuck_in_processing(db, seed)
        now = BUSINESS_HOURS + timedelta(minutes=20)

        result = recover_stale_processing(db, queue, STALE_AFTER, max_attempts=3, now=now)

        assert result.requeued == 1
        db.expire_all()
        message = get_message_by_id(db, message_id)
        assert message.status == MessageStatus.PROCESSING.value
        assert message.modified_at == "2025-01-15T02:20:00.000000Z"
        assert [DeliveryTask.from_json(p).message_id for p in queue.pending_payloads()] == [message_id]

    def test_recent_processing_left_alone(self, db, queue, seed):
        stuck_in_processing(db, seed)

        result = recover_stale_processing(
            db, queue, STALE_AFTER, max_attempts=3, now=BUSINESS_HOURS + timedelta(minutes=5)
        )

        assert result.found == 0
        assert queue.depth() == 0

    def test_requeued_message_not_picked_twice(self, db, queue, seed):
        stuck_in_processing(db, seed)
        now = BUSINESS_HOURS + timedelta(minutes=20)
        recover_stale_processing(db, queue, STALE_AFTER, max_attempts=3, now=now)

        second = recover_stale_processing(
            db, queue, STALE_AFTER, max_attempts=3, now=now + timedelta(minutes=1)
        )

        assert second.found == 0
        assert queue.depth() == 1

    def test_gives_up_after_max_attempts(self, db, queue, seed):
        message_id = stuck_in_processing(db, seed, attempts=3)

        result = recover_stale_processing(
            db, queue, STALE_AFTER, max_attempts=3, now=BUSINESS_HOURS + timedelta(hours=1)
        )

        assert result.exhausted == 1
        assert queue.depth() == 0
        db.expire_all()
        message = get_message_by_id(db, message_id)
        assert message.status == MessageStatus.FAILED_RETRIES_EXHAUSTED.value
        assert message.processed_at is not None
        assert "3 delivery attempts" in message.status_reason

    def test_other_states_ignored(self, db, queue, seed):
        seed()
        queued = seed()
        mark_queued(db, queued, now=BUSINESS_HOURS)

        result = recover_stale_processing(
            db, queue, STALE_AFTER, max_attempts=3, now=BUSINESS_HOURS + timedelta(days=1)
        )

        assert result.found == 0
