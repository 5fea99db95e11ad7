"""
Threads that host the pipeline: the poller and recovery schedules and the
consumer loop that feeds leased tasks to a thread pool.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Optional

from outbound.consumer import DeliveryConsumer
from outbound.exceptions import PipelineError
from outbound.poller import Poller
from outbound.providers import DeliveryProvider, build_provider
from outbound.recovery import recover_stale_processing
from outbound.work_queue import Lease, WorkQueue

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run `func` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self._interval = interval
        self._func = func
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        logger.info(f"{self.name} started, interval {self._interval:g}s")
        while not self._stop.is_set():
            try:
                self._func()
            except Exception:
                # One failed run must not kill the schedule
                logger.exception(f"{self.name} run failed")
            self._stop.wait(self._interval)
        logger.info(f"{self.name} stopped")


class ConsumerLoop:
    """
    Lease tasks and run them through the consumer with bounded parallelism.

    - success (including skipped duplicates): ack
    - PipelineError that is not retryable: dead-letter
    - anything else: release for redelivery after `retry_delay` seconds
    """

    def __init__(
        self,
        queue: WorkQueue,
        consumer: DeliveryConsumer,
        concurrency: int = 4,
        idle_wait: float = 1.0,
        retry_delay: float = 5.0,
    ):
        self._queue = queue
        self._consumer = consumer
        self._concurrency = concurrency
        self._idle_wait = idle_wait
        self._retry_delay = retry_delay
        self._stop = threading.Event()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix="consumer"
        )
        self._thread = threading.Thread(target=self._run, name="consumer-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        if self._executor is not None:
            # Finish in-flight deliveries; their leases are acked or released
            self._executor.shutdown(wait=True)

    def process(self, lease: Lease) -> None:
        """Handle one lease and settle it with the queue."""
        try:
            self._consumer.handle(lease.payload)
        except PipelineError as e:
            if e.is_retryable:
                logger.error(f"Task {lease.task_id} failed, releasing for redelivery: {e}")
                self._queue.release(lease.receipt, error=str(e), delay_seconds=self._retry_delay)
            else:
                logger.error(f"Task {lease.task_id} failed permanently: {e}")
                self._queue.dead_letter(lease.receipt, reason=str(e))
            return
        except Exception as e:
            logger.exception(f"Task {lease.task_id} failed, releasing for redelivery")
            self._queue.release(lease.receipt, error=repr(e), delay_seconds=self._retry_delay)
            return
        self._queue.ack(lease.receipt)

    def drain(self) -> int:
        """Synchronously process every currently visible task; returns the count."""
        handled = 0
        while True:
            leases = self._queue.receive(max_tasks=self._concurrency)
            if not leases:
                return handled
            for lease in leases:
                self.process(lease)
                handled += 1

    def _run(self) -> None:
        logger.info(f"Consumer loop started with concurrency {self._concurrency}")
        while not self._stop.is_set():
            # Only lease what can start right away so leases do not expire in a backlog
            free = 0
            while free < self._concurrency and self._slots.acquire(blocking=False):
                free += 1
            if free == 0:
                self._stop.wait(0.05)
                continue

            try:
                leases = self._queue.receive(max_tasks=free)
            except Exception:
                logger.exception("Failed to lease tasks")
                leases = []

            for _ in range(free - len(leases)):
                self._slots.release()

            for lease in leases:
                self._executor.submit(self._process_and_free, lease)

            if not leases:
                self._stop.wait(self._idle_wait)
        logger.info("Consumer loop stopped")

    def _process_and_free(self, lease: Lease) -> None:
        try:
            self.process(lease)
        except Exception:
            logger.exception(f"Could not settle task {lease.task_id}")
        finally:
            self._slots.release()


class PipelineRunner:
    """Wires poller, consumer loop and recovery sweep from settings."""

    def __init__(self, settings, session_factory, provider: Optional[DeliveryProvider] = None):
        self._settings = settings
        self._session_factory = session_factory
        self.provider = provider or build_provider(settings)
        self.queue = WorkQueue(
            session_factory,
            visibility_timeout=settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS,
            max_deliveries=settings.QUEUE_MAX_DELIVERIES,
        )
        self.poller = Poller(session_factory, self.queue, batch_size=settings.POLL_BATCH_SIZE)
        self.consumer = DeliveryConsumer(session_factory, self.provider)
        self.consumer_loop = ConsumerLoop(
            self.queue,
            self.consumer,
            concurrency=settings.CONSUMER_CONCURRENCY,
        )
        self._poller_task = PeriodicTask("poller", settings.POLL_INTERVAL_SECONDS, self.poller.tick)
        self._recovery_task = PeriodicTask(
            "recovery", settings.RECOVERY_INTERVAL_SECONDS, self.recover
        )

    def recover(self):
        with self._session_factory() as db:
            return recover_stale_processing(
                db,
                self.queue,
                stale_after=timedelta(seconds=self._settings.STALE_PROCESSING_SECONDS),
                max_attempts=self._settings.MAX_DELIVERY_ATTEMPTS,
            )

    def start(self) -> None:
        logger.info("Starting delivery pipeline workers")
        self.consumer_loop.start()
        self._poller_task.start()
        self._recovery_task.start()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        logger.info("Stopping delivery pipeline workers")
        self._poller_task.stop(timeout)
        self._recovery_task.stop(timeout)
        self.consumer_loop.stop(timeout)
        self.provider.close()
