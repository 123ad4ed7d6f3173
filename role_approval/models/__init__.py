"""SQLAlchemy ORM Models for Role Approval."""

from .base import Base, TimestampMixin, UTCDateTime, UUIDMixin, utcnow
from .models import (
    # Enums
    ConversationEventType,
    ConversationOutcome,
    ConversationState,
    ReplyCommand,
    TERMINAL_STATES,
    # Conversations
    Conversation,
    ConversationEvent,
    ProcessedReply,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    # Enums
    "ConversationState",
    "ConversationOutcome",
    "ConversationEventType",
    "ReplyCommand",
    "TERMINAL_STATES",
    # Conversations
    "Conversation",
    "ProcessedReply",
    "ConversationEvent",
]
