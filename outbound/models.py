"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas and the queue wire format, see schemas.py.
"""

from sqlalchemy import Column, Index, Integer, String, Text

from outbound.status import MessageStatus
from outbound.storage import Base


class Message(Base):
    """
    SQLAlchemy model for one outbound message and its delivery lifecycle.

    Table: messages
    Primary Key: id (assigned by the store, monotonically increasing)

    Timestamps are ISO-8601 UTC strings with microseconds (see utils.format_ts).
    `version` is bumped on every status write and is used as an
    optimistic-concurrency token by the consumer.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    to_msisdn = Column(String(32), nullable=False, index=True)
    from_msisdn = Column(String(32), nullable=False, index=True)
    body = Column(String(1000), nullable=False)
    status = Column(String(100), nullable=False, default=MessageStatus.CREATED.value)
    status_reason = Column(String(500), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    queued_at = Column(String, nullable=True)
    processed_at = Column(String, nullable=True, index=True)
    created_at = Column(String, nullable=False)
    modified_at = Column(String, nullable=False)

    __table_args__ = (
        Index("ix_messages_status_created", "status", "created_at"),
    )


class QueuedTask(Base):
    """
    SQLAlchemy model backing the durable work queue.

    Table: delivery_tasks

    A task is deliverable when `visible_at` has passed and it is not
    dead-lettered. Leasing a task pushes `visible_at` forward by the
    visibility timeout and issues a new `receipt`; deleting the row is the
    acknowledgement.
    """
    __tablename__ = "delivery_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payload = Column(Text, nullable=False)
    enqueued_at = Column(String, nullable=False)
    visible_at = Column(String, nullable=False)
    receive_count = Column(Integer, nullable=False, default=0)
    receipt = Column(String(36), nullable=True, unique=True)
    last_error = Column(Text, nullable=True)
    dead_lettered_at = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_delivery_tasks_visible", "dead_lettered_at", "visible_at"),
    )
