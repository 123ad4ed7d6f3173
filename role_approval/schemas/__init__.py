"""Pydantic schemas for the Role Approval API."""

from .conversations import (
    BaseSchema,
    ConversationDetail,
    ConversationEventResponse,
    ConversationStats,
    ConversationSummary,
    ErrorResponse,
    PaginatedResponse,
    ProcessedReplyResponse,
)

__all__ = [
    "BaseSchema",
    "PaginatedResponse",
    "ErrorResponse",
    "ConversationSummary",
    "ConversationDetail",
    "ConversationEventResponse",
    "ProcessedReplyResponse",
    "ConversationStats",
]
