import asyncio
import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from outbound.config import settings
from outbound.storage import (
    SessionLocal,
    init_db,
    check_db_health,
    get_db,
    create_message,
    get_message_by_id,
    get_messages,
    get_stats,
)
from outbound.logging_utils import setup_logging, RequestLoggingMiddleware, log_create_data
from outbound.utils import verify_hmac_signature
from outbound.metrics import record_create_outcome, get_metrics, get_metrics_content_type
from outbound.schemas import (
    CreateMessageRequest,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    StatsResponse,
)
from outbound.work_queue import WorkQueue


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Read-only handle for queue statistics; workers build their own
stats_queue = WorkQueue(SessionLocal)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables; start pipeline workers when RUN_WORKERS is set
    - Shutdown: stop workers after in-flight deliveries finish
    """
    init_db()
    runner = None
    if settings.RUN_WORKERS:
        from outbound.worker import PipelineRunner

        runner = PipelineRunner(settings, SessionLocal)
        runner.start()
    yield
    if runner is not None:
        # Joins worker threads; keep the event loop free while they finish
        await asyncio.to_thread(runner.stop)


app = FastAPI(
    title="Outbound Message API",
    description="Creates outbound SMS messages and exposes their delivery status",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and both tables exist
    2. API_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.API_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="API_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

def _reject(request: Request, result: str, status_code: int, detail) -> HTTPException:
    record_create_outcome(result)
    log_create_data(request=request, result=result)
    return HTTPException(status_code=status_code, detail=detail)


@app.post(
    "/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    },
)
async def create_message_route(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
) -> MessageResponse:
    """
    Create an outbound message in the Pending state.

    The delivery pipeline picks it up on the next poller tick.

    Headers:
        - X-Signature: hex HMAC-SHA256 of the raw body using API_SECRET
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.API_SECRET):
        logger.error("Missing or invalid X-Signature header")
        raise _reject(request, "invalid_signature", status.HTTP_401_UNAUTHORIZED, "invalid signature")

    try:
        payload = CreateMessageRequest.parse_raw_body(raw_body)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON: {e}")
        raise _reject(request, "validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid JSON format")
    except ValidationError as e:
        errors = [err["msg"].removeprefix("Value error, ") for err in e.errors()]
        logger.warning(f"Validation failed: {', '.join(errors)}")
        raise _reject(request, "validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY, errors)

    try:
        message = create_message(
            db=db,
            to_msisdn=payload.to,
            from_msisdn=payload.from_msisdn,
            body=payload.message,
        )
    except SQLAlchemyError:
        raise _reject(
            request, "error", status.HTTP_503_SERVICE_UNAVAILABLE,
            "Could not save the message. Please try again later."
        )

    record_create_outcome("created")
    log_create_data(request=request, message_id=message.id, result="created")
    return MessageResponse.from_record(message)


def _int_param(value: str | None, default: int, upper: int | None = None) -> int:
    """Positive int query value, or `default` when missing, malformed or out of range."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number < 1 or (upper is not None and number > upper):
        return default
    return number


@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    search: Annotated[str, Query(description="Substring of message, status, to or from")] = "",
    status_filter: Annotated[str | None, Query(alias="status", description="Exact status")] = None,
    page: Annotated[str | None, Query(description="1-based page, defaults to 1")] = None,
    page_size: Annotated[str | None, Query(alias="pageSize", description="1-100, defaults to 10")] = None,
    sort_by: Annotated[str, Query(alias="sortBy")] = "createdDateTime",
    sort_order: Annotated[str, Query(alias="sortOrder")] = "desc",
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List messages with their delivery status.

    Query Parameters:
        - search: matched against message, status, to and from
        - status: exact status filter
        - page / pageSize: 1-based paging (pageSize 1-100, default 10); a
          missing, malformed or out-of-range value falls back to the default
        - sortBy: id, message, status, createdDateTime, modifiedDateTime
        - sortOrder: asc or desc (default)
    """
    page = _int_param(page, default=1)
    page_size = _int_param(page_size, default=10, upper=100)

    messages, total = get_messages(
        db=db,
        page=page,
        page_size=page_size,
        search=search or None,
        status=status_filter,
        sort_by=sort_by,
        sort_order=sort_order,
    )

    return MessagesListResponse(
        data=[MessageResponse.from_record(msg) for msg in messages],
        total_count=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size),
    )


@app.get(
    "/messages/{message_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_message(message_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    message = get_message_by_id(db, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return MessageResponse.from_record(message)


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """
    Delivery statistics: messages per status, oldest pending message,
    last terminal write, live and dead-lettered queue tasks.
    """
    stats = get_stats(db)
    return StatsResponse(
        **stats,
        queue_depth=stats_queue.depth(),
        dead_lettered_tasks=stats_queue.dead_letter_count(),
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
