"""
Consumer: delivers one queued task and records the outcome.

Flow per task:
1. Decode the payload (TaskDecodeError is permanent)
2. Re-read the message; an already terminal message is a duplicate delivery
3. Mark it Processing (compare-and-set on the message version)
4. Pre-flight checks, then the provider call
5. Write the terminal status

Store errors propagate so the queue redelivers the task. Provider timeouts
and transport errors are outcomes, not exceptions: they end up as
"Failed - API Error" with a reason telling the two apart.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from outbound.exceptions import (
    ConcurrentUpdateError,
    MessageNotFoundError,
    ProviderTimeoutError,
    ProviderTransportError,
)
from outbound.logging_utils import message_log_context
from outbound.metrics import record_delivery_outcome, record_provider_latency
from outbound.policy import Outcome, normalize_address, preflight
from outbound.providers import DeliveryProvider, classify_provider_status
from outbound.schemas import DeliveryTask
from outbound.status import MessageStatus, is_terminal
from outbound.storage import get_message_by_id, update_message_status
from outbound.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    """What one invocation did. `skipped` means no status was written."""

    message_id: int
    status: MessageStatus
    skipped: bool = False


class DeliveryConsumer:
    """
    Handles DeliveryTask payloads; safe to call from many threads at once.

    Args:
        session_factory: callable returning a SQLAlchemy Session
        provider: DeliveryProvider used for the network hop
        clock: returns the current aware UTC datetime
    """

    def __init__(
        self,
        session_factory,
        provider: DeliveryProvider,
        clock: Callable = utc_now,
    ):
        self._session_factory = session_factory
        self._provider = provider
        self._clock = clock

    def handle(self, payload) -> ConsumeResult:
        task = DeliveryTask.from_json(payload)

        with message_log_context(task.message_id):
            logger.info(f"Processing delivery task for message {task.message_id}")

            with self._session_factory() as db:
                record = get_message_by_id(db, task.message_id)
                if record is None:
                    raise MessageNotFoundError(task.message_id)

                if is_terminal(record.status):
                    logger.info(f"Message {task.message_id} already {record.status}, ignoring duplicate task")
                    return ConsumeResult(task.message_id, MessageStatus(record.status), skipped=True)

                try:
                    record = update_message_status(
                        db,
                        task.message_id,
                        MessageStatus.PROCESSING,
                        expected_version=record.version,
                        now=self._clock(),
                    )
                except ConcurrentUpdateError:
                    return self._yield_to_other_writer(db, task.message_id)
                version = record.version

            # No session is held across the network call
            outcome = self._deliver(task)

            with self._session_factory() as db:
                try:
                    update_message_status(
                        db,
                        task.message_id,
                        outcome.status,
                        reason=outcome.reason,
                        expected_version=version,
                        now=self._clock(),
                    )
                except ConcurrentUpdateError:
                    return self._yield_to_other_writer(db, task.message_id)

            record_delivery_outcome(outcome.status.value)
            logger.info(f"Message {task.message_id} processed with status: {outcome.status.value}")
            return ConsumeResult(task.message_id, outcome.status)

    def _deliver(self, task: DeliveryTask) -> Outcome:
        outcome = preflight(task, self._clock())
        if outcome is not None:
            logger.info(f"Message {task.message_id} rejected before sending: {outcome.reason}")
            return outcome

        started = time.monotonic()
        try:
            response = self._provider.send(
                normalize_address(task.to),
                normalize_address(task.from_msisdn),
                task.message,
            )
        except ProviderTimeoutError as e:
            logger.warning(f"Provider timeout for message {task.message_id}: {e}")
            return Outcome(MessageStatus.FAILED_PROVIDER_ERROR, f"Provider timeout: {e.message}")
        except ProviderTransportError as e:
            logger.warning(f"Provider transport error for message {task.message_id}: {e}")
            return Outcome(MessageStatus.FAILED_PROVIDER_ERROR, f"Provider transport error: {e.message}")
        finally:
            record_provider_latency(time.monotonic() - started)

        return classify_provider_status(response)

    def _yield_to_other_writer(self, db, message_id: int) -> ConsumeResult:
        db.rollback()
        current = get_message_by_id(db, message_id)
        logger.warning(
            f"Message {message_id} was updated by another invocation, leaving it as {current.status}"
        )
        return ConsumeResult(message_id, MessageStatus(current.status), skipped=True)
