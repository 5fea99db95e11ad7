"""
Pytest configuration and shared fixtures.

Test settings are provided here as environment defaults (a real environment
or .env.test still wins) so that settings are built with them before any
outbound module is imported.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_outbound.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("API_SECRET", "test-secret")

# Clear settings cache before any app imports to ensure test env vars are used
from outbound.config import get_settings
get_settings.cache_clear()

from outbound import models  # noqa: E402,F401  registers tables
from outbound.consumer import DeliveryConsumer  # noqa: E402
from outbound.providers import DeliveryProvider, ProviderResponse  # noqa: E402
from outbound.storage import Base, SessionLocal, create_message, engine  # noqa: E402
from outbound.work_queue import WorkQueue  # noqa: E402


# 02:00 UTC is 12:00 at the recipient: inside the delivery window
BUSINESS_HOURS = datetime(2025, 1, 15, 2, 0, 0, tzinfo=timezone.utc)
# 12:00 UTC is 22:00 at the recipient: outside the delivery window
AFTER_HOURS = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeProvider(DeliveryProvider):
    """Provider double that records calls and answers as configured."""

    def __init__(self):
        self.response = ProviderResponse(status="Successfully Sent")
        self.error = None
        self.on_send = None
        self.calls = []

    def send(self, to, from_, body):
        self.calls.append((to, from_, body))
        if self.on_send is not None:
            self.on_send()
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture(scope="function")
def tables():
    """Create tables for one test and drop them afterwards."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def queue(tables):
    return WorkQueue(SessionLocal, visibility_timeout=30, max_deliveries=3)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def consumer(tables, fake_provider):
    """Consumer whose clock sits inside the delivery window."""
    return DeliveryConsumer(SessionLocal, fake_provider, clock=lambda: BUSINESS_HOURS)


@pytest.fixture
def seed(db):
    """Factory inserting Pending messages; returns the new message id."""

    def _seed(to="0412345678", from_="0498765432", body="hi", created_at=BUSINESS_HOURS):
        return create_message(db, to_msisdn=to, from_msisdn=from_, body=body, now=created_at).id

    return _seed


@pytest.fixture
def seed_many(seed):
    """Factory inserting `count` Pending messages one millisecond apart."""

    def _seed_many(count, start=BUSINESS_HOURS):
        return [
            seed(body=f"message {i}", created_at=start + timedelta(milliseconds=i))
            for i in range(count)
        ]

    return _seed_many
