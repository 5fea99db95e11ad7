"""
Tests for the delivery state machine and the status writes in storage.
"""

from datetime import timedelta

import pytest

from outbound.exceptions import ConcurrentUpdateError, InvalidTransitionError, MessageNotFoundError
from outbound.status import MessageStatus, TERMINAL_STATUSES, can_transition, is_terminal
from outbound.storage import get_message_by_id, mark_queued, update_message_status

from conftest import BUSINESS_HOURS


class TestTransitions:
    """Edges of the state machine."""

    @pytest.mark.parametrize("src,dst", [
        (MessageStatus.CREATED, MessageStatus.QUEUED),
        (MessageStatus.CREATED, MessageStatus.PROCESSING),
        (MessageStatus.QUEUED, MessageStatus.PROCESSING),
        (MessageStatus.PROCESSING, MessageStatus.PROCESSING),
        (MessageStatus.PROCESSING, MessageStatus.SUCCESSFULLY_SENT),
        (MessageStatus.PROCESSING, MessageStatus.FAILED_PROVIDER_ERROR),
    ])
    def test_forward_edges_allowed(self, src, dst):
        assert can_transition(src, dst)

    @pytest.mark.parametrize("src,dst", [
        (MessageStatus.QUEUED, MessageStatus.CREATED),
        (MessageStatus.PROCESSING, MessageStatus.QUEUED),
        (MessageStatus.QUEUED, MessageStatus.SUCCESSFULLY_SENT),
        (MessageStatus.CREATED, MessageStatus.SUCCESSFULLY_SENT),
    ])
    def test_backward_and_skipping_edges_rejected(self, src, dst):
        assert not can_transition(src, dst)

    def test_terminal_states_are_final(self):
        for terminal in TERMINAL_STATUSES:
            assert is_terminal(terminal)
            for status in MessageStatus:
                assert not can_transition(terminal, status)

    def test_accepts_stored_string_values(self):
        assert can_transition("Pending", "Queued")
        assert is_terminal("Successfully Sent")
        assert not is_terminal("Processing")


class TestUpdateMessageStatus:
    """Timestamp and version bookkeeping of update_message_status()."""

    def test_mark_queued_sets_queued_at(self, db, seed):
        message_id = seed()
        later = BUSINESS_HOURS + timedelta(seconds=1)

        assert mark_queued(db, message_id, now=later) is True

        message = get_message_by_id(db, message_id)
        assert message.status == MessageStatus.QUEUED.value
        assert message.queued_at == "2025-01-15T02:00:01.000000Z"
        assert message.modified_at == message.queued_at
        assert message.processed_at is None
        assert message.version == 1

    def test_mark_queued_does_not_move_advanced_message(self, db, seed):
        message_id = seed()
        update_message_status(db, message_id, MessageStatus.PROCESSING, now=BUSINESS_HOURS)

        assert mark_queued(db, message_id, now=BUSINESS_HOURS) is False
        assert get_message_by_id(db, message_id).status == MessageStatus.PROCESSING.value

    def test_processing_counts_attempts_without_processed_at(self, db, seed):
        message_id = seed()
        mark_queued(db, message_id)

        message = update_message_status(db, message_id, MessageStatus.PROCESSING)
        assert message.retry_count == 1
        assert message.processed_at is None

        message = update_message_status(db, message_id, MessageStatus.PROCESSING)
        assert message.retry_count == 2

    def test_terminal_sets_processed_at_and_reason(self, db, seed):
        message_id = seed()
        mark_queued(db, message_id)
        update_message_status(db, message_id, MessageStatus.PROCESSING)

        message = update_message_status(
            db, message_id, MessageStatus.FAILED_PROVIDER_ERROR, reason="boom"
        )
        assert message.processed_at is not None
        assert message.queued_at is not None
        assert message.status_reason == "boom"

    def test_created_to_processing_backfills_queued_at(self, db, seed):
        message_id = seed()
        message = update_message_status(db, message_id, MessageStatus.PROCESSING)
        assert message.queued_at is not None

    def test_repeating_terminal_status_is_noop(self, db, seed):
        message_id = seed()
        mark_queued(db, message_id)
        update_message_status(db, message_id, MessageStatus.PROCESSING)
        first = update_message_status(db, message_id, MessageStatus.SUCCESSFULLY_SENT)
        version = first.version

        again = update_message_status(db, message_id, MessageStatus.SUCCESSFULLY_SENT)
        assert again.version == version

    def test_invalid_transition_raises(self, db, seed):
        message_id = seed()
        with pytest.raises(InvalidTransitionError):
            update_message_status(db, message_id, MessageStatus.SUCCESSFULLY_SENT)

    def test_version_mismatch_raises(self, db, seed):
        message_id = seed()
        with pytest.raises(ConcurrentUpdateError):
            update_message_status(db, message_id, MessageStatus.PROCESSING, expected_version=7)

    def test_missing_message_raises(self, db, tables):
        with pytest.raises(MessageNotFoundError):
            update_message_status(db, 999, MessageStatus.PROCESSING)
