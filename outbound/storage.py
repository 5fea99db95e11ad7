import logging
from datetime import datetime
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from outbound.config import settings
from outbound.exceptions import ConcurrentUpdateError, MessageNotFoundError
from outbound.status import MessageStatus, TERMINAL_STATUSES, ensure_transition, is_terminal
from outbound.utils import format_ts

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to be shared between
# FastAPI's threadpool and the pipeline worker threads
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

# Columns the query API may sort by (request value -> model attribute name)
SORTABLE_COLUMNS = {
    "id": "id",
    "message": "body",
    "status": "status",
    "createddatetime": "created_at",
    "modifieddatetime": "modified_at",
}


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application and worker startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from outbound.models import Message, QueuedTask  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and both tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("messages", "delivery_tasks"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Record Store: pipeline operations
# =============================================================================

def get_message_by_id(db: Session, message_id: int):
    """
    Retrieve a message by its ID.

    Returns:
        Message object if found, None otherwise
    """
    from outbound.models import Message

    return db.get(Message, message_id)


def list_messages_by_status(
    db: Session,
    status: MessageStatus,
    limit: int,
) -> list:
    """
    Read up to `limit` messages in `status`, oldest first.

    Ties on created_at are broken by id so that batches are deterministic.
    """
    from outbound.models import Message

    status = MessageStatus(status)
    logger.debug(f"Listing messages: status={status.value}, limit={limit}")
    return (
        db.query(Message)
        .filter(Message.status == status.value)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(limit)
        .all()
    )


def list_stale_processing(db: Session, older_than: datetime, limit: int) -> list:
    """Messages stuck in Processing whose last write is older than `older_than`."""
    from outbound.models import Message

    return (
        db.query(Message)
        .filter(
            Message.status == MessageStatus.PROCESSING.value,
            Message.modified_at < format_ts(older_than),
        )
        .order_by(Message.modified_at.asc(), Message.id.asc())
        .limit(limit)
        .all()
    )


def mark_queued(db: Session, message_id: int, now: Optional[datetime] = None) -> bool:
    """
    Move a message from Created to Queued.

    The update is conditional on the message still being Created, so a
    record already picked up by a consumer is never moved backward.

    Returns:
        True if the row was updated, False if it had already advanced
    """
    from outbound.models import Message

    ts = format_ts(now)
    result = db.execute(
        update(Message)
        .where(Message.id == message_id, Message.status == MessageStatus.CREATED.value)
        .values(
            status=MessageStatus.QUEUED.value,
            status_reason=None,
            queued_at=ts,
            modified_at=ts,
            version=Message.version + 1,
        )
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning(f"Message {message_id} was no longer Pending when marking it queued")
        return False
    return True


def update_message_status(
    db: Session,
    message_id: int,
    new_status: MessageStatus,
    reason: Optional[str] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
):
    """
    Apply one state-machine transition to a message.

    - queued_at is set the first time the message reaches Queued or later
    - processed_at is set only when the new status is terminal
    - modified_at and version are bumped on every write
    - retry_count counts entries into Processing (delivery attempts)

    Re-applying the status a message already holds in a terminal state is a
    no-op, so a retried write after a lost acknowledgement is safe.

    Args:
        expected_version: when given, the write is a compare-and-set against
            this version. Without it the write is still guarded against a
            concurrent change between the read and the update.

    Raises:
        MessageNotFoundError: no message with this id
        InvalidTransitionError: the transition is not allowed
        ConcurrentUpdateError: the version changed underneath us
    """
    from outbound.models import Message

    new_status = MessageStatus(new_status)
    message = db.get(Message, message_id)
    if message is None:
        raise MessageNotFoundError(message_id)

    if expected_version is not None and message.version != expected_version:
        raise ConcurrentUpdateError(message_id, expected_version)

    current = MessageStatus(message.status)
    if current == new_status and is_terminal(new_status):
        logger.info(f"Message {message_id} already {new_status.value}, nothing to write")
        return message

    ensure_transition(current, new_status, message_id)

    ts = format_ts(now)
    values = {
        "status": new_status.value,
        "status_reason": reason,
        "modified_at": ts,
        "version": Message.version + 1,
    }
    if message.queued_at is None:
        values["queued_at"] = ts
    if new_status == MessageStatus.PROCESSING:
        values["retry_count"] = Message.retry_count + 1
    if new_status in TERMINAL_STATUSES:
        values["processed_at"] = ts

    read_version = message.version
    result = db.execute(
        update(Message)
        .where(Message.id == message_id, Message.version == read_version)
        .values(**values)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ConcurrentUpdateError(message_id, read_version)

    db.commit()
    db.refresh(message)
    logger.info(f"Message {message_id}: {current.value} -> {new_status.value}")
    return message


def touch_message(
    db: Session,
    message_id: int,
    expected_version: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Bump modified_at/version of a Processing message without changing status.

    Returns:
        True if the row was updated, False if it changed concurrently
    """
    from outbound.models import Message

    result = db.execute(
        update(Message)
        .where(
            Message.id == message_id,
            Message.version == expected_version,
            Message.status == MessageStatus.PROCESSING.value,
        )
        .values(modified_at=format_ts(now), version=Message.version + 1)
    )
    db.commit()
    return result.rowcount == 1


# =============================================================================
# Record Store: creation and query operations
# =============================================================================

def create_message(
    db: Session,
    to_msisdn: str,
    from_msisdn: str,
    body: str,
    now: Optional[datetime] = None,
):
    """
    Insert a new message in the Pending (Created) state.

    Args:
        db: Database session
        to_msisdn: Destination number (digits only)
        from_msisdn: Origin number (digits only)
        body: Message text (<= 1000 characters)

    Returns:
        The persisted Message with its store-assigned id
    """
    from outbound.models import Message

    ts = format_ts(now)
    message = Message(
        to_msisdn=to_msisdn,
        from_msisdn=from_msisdn,
        body=body,
        status=MessageStatus.CREATED.value,
        retry_count=0,
        version=0,
        created_at=ts,
        modified_at=ts,
    )
    try:
        db.add(message)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message: {e}")
        raise
    db.refresh(message)
    logger.info(f"Message created with ID: {message.id}")
    return message


def get_messages(
    db: Session,
    page: int = 1,
    page_size: int = 10,
    search: Optional[str] = None,
    status: Optional[str] = None,
    sort_by: str = "createdDateTime",
    sort_order: str = "desc",
) -> Tuple[list, int]:
    """
    Retrieve messages with search, sorting and pagination.

    Args:
        db: Database session
        page: 1-based page number
        page_size: Messages per page (1-100)
        search: Substring matched against body, status, to and from
        status: Exact status filter
        sort_by: One of SORTABLE_COLUMNS (case-insensitive), otherwise createdDateTime
        sort_order: "asc" or "desc" (default)

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from outbound.models import Message

    query = db.query(Message)

    if search:
        pattern = f"%{search}%"
        query = query.filter(
            Message.body.ilike(pattern)
            | Message.status.ilike(pattern)
            | Message.to_msisdn.like(pattern)
            | Message.from_msisdn.like(pattern)
        )

    if status:
        query = query.filter(Message.status == status)

    total = query.count()

    column = getattr(Message, SORTABLE_COLUMNS.get(sort_by.lower(), "created_at"))
    ordering = column.asc() if sort_order.lower() == "asc" else column.desc()
    query = query.order_by(ordering, Message.id.asc())

    messages = query.offset((page - 1) * page_size).limit(page_size).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total


def get_stats(db: Session) -> dict:
    """
    Get delivery statistics for the /stats endpoint.

    Computes:
    - total_messages: count of all messages
    - by_status: count per status value (statuses with no messages are 0)
    - oldest_pending_created_at: created_at of the oldest Pending message
    - last_processed_at: most recent terminal write
    """
    from outbound.models import Message

    total_messages = db.query(func.count(Message.id)).scalar() or 0

    by_status = {status.value: 0 for status in MessageStatus}
    rows = (
        db.query(Message.status, func.count(Message.id).label("count"))
        .group_by(Message.status)
        .all()
    )
    for row in rows:
        by_status[row.status] = row.count

    oldest_pending_created_at = (
        db.query(func.min(Message.created_at))
        .filter(Message.status == MessageStatus.CREATED.value)
        .scalar()
    )
    last_processed_at = db.query(func.max(Message.processed_at)).scalar()

    logger.info(f"Stats computed: {total_messages} messages")

    return {
        "total_messages": total_messages,
        "by_status": by_status,
        "oldest_pending_created_at": oldest_pending_created_at,
        "last_processed_at": last_processed_at,
    }
