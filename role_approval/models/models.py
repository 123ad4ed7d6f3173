"""SQLAlchemy ORM Models for Role Approval.

A conversation row is the durable state of one role request workflow.
It is rewritten at every state transition; replies that were acted on and
the transition history live in their own append-only tables.
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UTCDateTime, UUIDMixin, utcnow


# =============================================================================
# ENUMS
# =============================================================================


class ConversationState(str, PyEnum):
    INIT = "init"
    EVALUATING = "evaluating"
    SENDING = "sending"  # Clarification message about to go out
    AWAITING_REPLY = "awaiting_reply"
    APPLYING = "applying"  # Terminal action about to be applied
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"  # Deadline passed after inconclusive replies
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    ConversationState.APPROVED,
    ConversationState.DENIED,
    ConversationState.TIMED_OUT,
    ConversationState.FAILED,
})


class ConversationOutcome(str, PyEnum):
    APPROVED = "approved"
    DENIED = "denied"


class ReplyCommand(str, PyEnum):
    APPROVE = "approve"
    DENY = "deny"
    UNRECOGNIZED = "unrecognized"


class ConversationEventType(str, PyEnum):
    CREATED = "created"
    TRANSITION = "transition"
    MESSAGE_SENT = "message_sent"
    REPLY_RECEIVED = "reply_received"
    ACTION_APPLIED = "action_applied"
    FAILED = "failed"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x],
        native_enum=False,
        length=32,
    )


# =============================================================================
# CONVERSATION MODELS
# =============================================================================


class Conversation(Base, UUIDMixin, TimestampMixin):
    """One role request handled end to end."""

    __tablename__ = "conversations"

    # Request (immutable after creation)
    project_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_message_id: Mapped[str] = mapped_column(
        String(998),
        nullable=False,
        unique=True,
        comment="Message-ID of the e-mail that carried the request",
    )

    # Workflow state
    state: Mapped[ConversationState] = mapped_column(
        _enum(ConversationState, "conversation_state"),
        default=ConversationState.INIT,
        nullable=False,
    )
    outcome: Mapped[ConversationOutcome | None] = mapped_column(
        _enum(ConversationOutcome, "conversation_outcome"),
        nullable=True,
    )
    pending_message_id: Mapped[str | None] = mapped_column(
        String(998),
        nullable=True,
        index=True,
        comment="Message-ID of the clarification e-mail awaiting replies",
    )
    deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reply_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optimistic locking: every transition bumps this
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Relationships
    processed_replies: Mapped[list["ProcessedReply"]] = relationship(
        back_populates="conversation",
        order_by="ProcessedReply.received_at",
    )
    events: Mapped[list["ConversationEvent"]] = relationship(
        back_populates="conversation",
        order_by="ConversationEvent.created_at",
    )

    __table_args__ = (
        Index("idx_conversations_state_deadline", "state", "deadline"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def __repr__(self) -> str:
        return (
            f"<Conversation {self.id} {self.role_name}@{self.project_name} "
            f"for {self.user_name}: {self.state.value}>"
        )


class ProcessedReply(Base, UUIDMixin):
    """A reply that has been classified and acted upon."""

    __tablename__ = "processed_replies"

    conversation_id: Mapped[UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    reply_message_id: Mapped[str] = mapped_column(String(998), nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(998))
    command: Mapped[ReplyCommand] = mapped_column(
        _enum(ReplyCommand, "reply_command"), nullable=False
    )
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="processed_replies")

    __table_args__ = (
        UniqueConstraint(
            "conversation_id",
            "reply_message_id",
            name="uq_processed_replies_conversation_reply",
        ),
    )


class ConversationEvent(Base, UUIDMixin):
    """Append-only history of what happened to a conversation."""

    __tablename__ = "conversation_events"

    conversation_id: Mapped[UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[ConversationEventType] = mapped_column(
        _enum(ConversationEventType, "conversation_event_type"), nullable=False
    )
    from_state: Mapped[ConversationState | None] = mapped_column(
        _enum(ConversationState, "conversation_state"), nullable=True
    )
    to_state: Mapped[ConversationState | None] = mapped_column(
        _enum(ConversationState, "conversation_state"), nullable=True
    )
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="events")

    __table_args__ = (
        Index("idx_conversation_events_conversation", "conversation_id", "created_at"),
    )
