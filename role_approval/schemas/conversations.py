"""Response schemas for conversation endpoints."""

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models import (
    ConversationEventType,
    ConversationOutcome,
    ConversationState,
    ReplyCommand,
)


T = TypeVar("T")


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )


class PaginatedResponse(BaseSchema, Generic[T]):
    """Generic paginated response wrapper."""

    items: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    details: list[dict[str, Any]] = Field(default_factory=list)


class ConversationSummary(BaseSchema):
    """A conversation as it appears in lists."""

    id: UUID
    project_name: str
    role_name: str
    user_name: str
    state: ConversationState
    outcome: ConversationOutcome | None = None
    deadline: datetime | None = None
    reply_count: int
    is_terminal: bool
    created_at: datetime
    updated_at: datetime | None = None


class ProcessedReplyResponse(BaseSchema):
    reply_message_id: str
    from_address: str | None = None
    command: ReplyCommand
    received_at: datetime
    processed_at: datetime


class ConversationEventResponse(BaseSchema):
    event_type: ConversationEventType
    from_state: ConversationState | None = None
    to_state: ConversationState | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ConversationDetail(ConversationSummary):
    """A conversation with everything that happened to it."""

    source_message_id: str
    pending_message_id: str | None = None
    decision_reason: str | None = None
    error_message: str | None = None
    version: int
    processed_replies: list[ProcessedReplyResponse] = Field(default_factory=list)
    events: list[ConversationEventResponse] = Field(default_factory=list)


class ConversationStats(BaseModel):
    by_state: dict[str, int]
    total: int
