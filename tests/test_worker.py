"""
Tests for the threaded hosting runtime.

Tests cover:
- ConsumerLoop delivers a backlog with several workers in parallel
- PeriodicTask keeps its schedule after a failed run
- PipelineRunner wires poller, consumer loop and recovery together
- One-shot runs from the command line entry point
"""

import threading
import time
from types import SimpleNamespace

from outbound.__main__ import run_once
from outbound.consumer import DeliveryConsumer
from outbound.poller import poll_once
from outbound.status import MessageStatus, is_terminal
from outbound.storage import SessionLocal, get_message_by_id
from outbound.worker import ConsumerLoop, PeriodicTask, PipelineRunner

from conftest import BUSINESS_HOURS, FakeProvider


def wait_for(predicate, timeout=15.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def statuses(ids):
    with SessionLocal() as db:
        return [get_message_by_id(db, message_id).status for message_id in ids]


def make_settings(**overrides):
    values = dict(
        PROVIDER_MODE="simulated",
        PROVIDER_URL="https://sms.example.test/send",
        PROVIDER_TIMEOUT_SECONDS=10.0,
        SIMULATED_SUCCESS_RATE=1.0,
        SIMULATED_DELAY_SECONDS=0.0,
        QUEUE_VISIBILITY_TIMEOUT_SECONDS=30.0,
        QUEUE_MAX_DELIVERIES=5,
        POLL_BATCH_SIZE=100,
        POLL_INTERVAL_SECONDS=0.05,
        CONSUMER_CONCURRENCY=4,
        RECOVERY_INTERVAL_SECONDS=60.0,
        STALE_PROCESSING_SECONDS=900.0,
        MAX_DELIVERY_ATTEMPTS=3,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestConsumerLoop:
    def test_parallel_workers_deliver_whole_backlog(self, db, queue, fake_provider, seed_many):
        ids = seed_many(20)
        poll_once(db, queue, now=BUSINESS_HOURS)
        consumer = DeliveryConsumer(SessionLocal, fake_provider, clock=lambda: BUSINESS_HOURS)
        loop = ConsumerLoop(queue, consumer, concurrency=4, idle_wait=0.05)

        loop.start()
        try:
            assert wait_for(lambda: queue.depth() == 0)
        finally:
            loop.stop(timeout=10)

        assert statuses(ids) == [MessageStatus.SUCCESSFULLY_SENT.value] * 20
        assert queue.dead_letter_count() == 0
        assert sorted(call[2] for call in fake_provider.calls) == sorted(f"message {i}" for i in range(20))

    def test_deliveries_overlap(self, db, queue, fake_provider, seed_many):
        seed_many(4)
        poll_once(db, queue, now=BUSINESS_HOURS)
        in_flight = []
        peak = []
        lock = threading.Lock()

        def slow_send():
            with lock:
                in_flight.append(1)
                peak.append(len(in_flight))
            time.sleep(0.2)
            with lock:
                in_flight.pop()

        fake_provider.on_send = slow_send
        consumer = DeliveryConsumer(SessionLocal, fake_provider, clock=lambda: BUSINESS_HOURS)
        loop = ConsumerLoop(queue, consumer, concurrency=4, idle_wait=0.05)

        loop.start()
        try:
            assert wait_for(lambda: queue.depth() == 0)
        finally:
            loop.stop(timeout=10)

        assert max(peak) > 1

    def test_stop_waits_for_in_flight_delivery(self, db, queue, fake_provider, seed):
        message_id = seed()
        poll_once(db, queue, now=BUSINESS_HOURS)
        started = threading.Event()

        def slow_send():
            started.set()
            time.sleep(0.3)

        fake_provider.on_send = slow_send
        consumer = DeliveryConsumer(SessionLocal, fake_provider, clock=lambda: BUSINESS_HOURS)
        loop = ConsumerLoop(queue, consumer, concurrency=2, idle_wait=0.05)

        loop.start()
        assert started.wait(10)
        loop.stop(timeout=10)

        assert statuses([message_id]) == [MessageStatus.SUCCESSFULLY_SENT.value]
        assert queue.depth() == 0

    def test_idle_loop_stops_promptly(self, queue, consumer):
        loop = ConsumerLoop(queue, consumer, concurrency=2, idle_wait=0.05)
        loop.start()

        started = time.monotonic()
        loop.stop(timeout=5)

        assert time.monotonic() - started < 5


class TestPeriodicTask:
    def test_failed_run_does_not_stop_schedule(self):
        runs = []
        done = threading.Event()

        def flaky():
            runs.append(1)
            if len(runs) == 1:
                raise RuntimeError("first run fails")
            if len(runs) >= 3:
                done.set()

        task = PeriodicTask("flaky", 0.01, flaky)
        task.start()
        try:
            assert done.wait(5)
        finally:
            task.stop(timeout=5)

        assert len(runs) >= 3

    def test_stop_ends_schedule(self):
        runs = []
        task = PeriodicTask("counter", 0.01, lambda: runs.append(1))
        task.start()
        assert wait_for(lambda: len(runs) > 0, timeout=5)
        task.stop(timeout=5)

        count = len(runs)
        time.sleep(0.1)
        assert len(runs) == count


class TestPipelineRunner:
    def test_runner_delivers_pending_messages(self, tables, seed_many):
        ids = seed_many(10)
        runner = PipelineRunner(make_settings(), SessionLocal, provider=FakeProvider())

        runner.start()
        try:
            assert wait_for(lambda: all(is_terminal(s) for s in statuses(ids)))
        finally:
            runner.stop(timeout=10)

        assert runner.queue.depth() == 0
        assert runner.queue.dead_letter_count() == 0

    def test_runner_builds_provider_from_settings(self, tables):
        runner = PipelineRunner(make_settings(), SessionLocal)

        assert runner.recover().found == 0
        runner.provider.close()


class TestRunOnce:
    def test_poll_then_consume(self, tables, seed):
        message_id = seed()
        runner = PipelineRunner(make_settings(), SessionLocal, provider=FakeProvider())

        run_once(runner, "poll")
        assert statuses([message_id]) == [MessageStatus.QUEUED.value]
        assert runner.queue.depth() == 1

        run_once(runner, "consume")
        assert is_terminal(statuses([message_id])[0])
        assert runner.queue.depth() == 0
