"""
Pydantic schemas for the queue wire format and the HTTP API.

This module contains:
- DeliveryTask: the snapshot the poller puts on the work queue
- Request models for incoming data validation
- Response models for API responses
"""

import html
import json
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from outbound.exceptions import TaskDecodeError


MAX_MESSAGE_LENGTH = 1000
MAX_PHONE_LENGTH = 15

_PHONE_CHARS = re.compile(r"^[\d\s\-\(\)\+]+$")
_HTML_TAG = re.compile(r"<[^>]*>")
_REPEATED_SPACES = re.compile(r"[ ]{2,}")


# =============================================================================
# Work Queue Payload
# =============================================================================

class DeliveryTask(BaseModel):
    """
    Point-in-time snapshot of a message taken when it is enqueued.

    The task carries everything needed to deliver the message; the record
    store stays the only authority for status.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: int = Field(..., alias="messageId")
    to: str
    from_msisdn: str = Field(..., alias="from")
    message: str

    @field_validator("to", "from_msisdn", mode="before")
    @classmethod
    def coerce_numeric_address(cls, v):
        # Older producers serialized numbers as JSON integers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @classmethod
    def from_record(cls, record) -> "DeliveryTask":
        return cls(
            message_id=record.id,
            to=record.to_msisdn,
            from_msisdn=record.from_msisdn,
            message=record.body,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload) -> "DeliveryTask":
        """
        Decode a queue payload.

        Raises:
            TaskDecodeError: payload is not valid JSON or misses fields
        """
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise TaskDecodeError("Malformed delivery task payload", cause=e)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateMessageRequest(BaseModel):
    """
    Pydantic model for validating message creation requests.

    Validates:
    - to/from: digits, spaces, dashes, brackets and '+' only; at most
      15 characters once normalized, stored as digits only
    - message: non-blank, at most 1000 characters, HTML tags stripped
    """
    to: str = Field(..., description="Destination phone number")
    from_msisdn: str = Field(..., alias="from", description="Origin phone number")
    message: str = Field(..., description="Message text")

    @field_validator("to", "from_msisdn")
    @classmethod
    def validate_phone_number(cls, v: str, info) -> str:
        field_name = "from" if info.field_name == "from_msisdn" else info.field_name
        if not v or not v.strip():
            raise ValueError(f"'{field_name}' field is required")
        if not _PHONE_CHARS.match(v):
            raise ValueError(f"'{field_name}' field contains invalid characters")
        digits = re.sub(r"\D", "", v)
        if not digits:
            raise ValueError(f"'{field_name}' field must contain digits")
        if len(digits) > MAX_PHONE_LENGTH:
            raise ValueError(f"'{field_name}' field must be {MAX_PHONE_LENGTH} characters or less")
        return digits

    @field_validator("message")
    @classmethod
    def sanitize_message(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("'message' field is required")
        if len(v) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"'message' must be {MAX_MESSAGE_LENGTH} characters or less")
        cleaned = html.unescape(_HTML_TAG.sub("", v.strip()))
        cleaned = _REPEATED_SPACES.sub(" ", cleaned).strip()
        if not cleaned:
            raise ValueError("'message' field is required")
        return cleaned

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "to": "0412345678",
                    "from": "0498765432",
                    "message": "Hello! This is a test message.",
                }
            ]
        },
    }

    @classmethod
    def parse_raw_body(cls, raw_body: bytes) -> "CreateMessageRequest":
        return cls.model_validate(json.loads(raw_body))


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """
    A message record as exposed by the query API.
    Maps database fields to API response format.
    """
    id: int = Field(..., description="Store-assigned message id")
    to: str = Field(..., description="Destination phone number")
    from_msisdn: str = Field(
        ...,
        alias="from",
        serialization_alias="from",
        description="Origin phone number"
    )
    message: str = Field(..., description="Message text")
    status: str = Field(..., description="Delivery status")
    status_reason: Optional[str] = Field(None, alias="statusReason")
    retry_count: int = Field(0, alias="retryCount")
    created_at: str = Field(..., alias="createdDateTime")
    modified_at: str = Field(..., alias="modifiedDateTime")
    queued_at: Optional[str] = Field(None, alias="queuedDateTime")
    processed_at: Optional[str] = Field(None, alias="processedDateTime")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_record(cls, record) -> "MessageResponse":
        return cls(
            id=record.id,
            to=record.to_msisdn,
            from_msisdn=record.from_msisdn,
            message=record.body,
            status=record.status,
            status_reason=record.status_reason,
            retry_count=record.retry_count,
            created_at=record.created_at,
            modified_at=record.modified_at,
            queued_at=record.queued_at,
            processed_at=record.processed_at,
        )


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages with pagination.

    Contains:
    - data: messages on this page
    - totalCount: messages matching the filters (ignoring paging)
    - page, pageSize, totalPages
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total_count: int = Field(..., ge=0, alias="totalCount")
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1, le=100, alias="pageSize")
    total_pages: int = Field(..., ge=0, alias="totalPages")

    model_config = {"populate_by_name": True}


class StatsResponse(BaseModel):
    """Delivery statistics for GET /stats."""
    total_messages: int = Field(..., ge=0)
    by_status: dict[str, int] = Field(default_factory=dict)
    oldest_pending_created_at: Optional[str] = None
    last_processed_at: Optional[str] = None
    queue_depth: int = Field(..., ge=0)
    dead_lettered_tasks: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
