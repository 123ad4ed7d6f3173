"""Read-side queries over conversations and their history."""

from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models import Conversation, ConversationEvent, ConversationState


class ConversationQueryService:
    """Service for looking at conversations without changing them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_conversations(
        self,
        state: ConversationState | None = None,
        project_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Conversation], int]:
        """List conversations, newest first. Returns (items, total)."""
        query = select(Conversation)
        count_query = select(func.count()).select_from(Conversation)

        if state is not None:
            query = query.where(Conversation.state == state)
            count_query = count_query.where(Conversation.state == state)
        if project_name:
            query = query.where(Conversation.project_name == project_name)
            count_query = count_query.where(Conversation.project_name == project_name)

        total = (await self.session.execute(count_query)).scalar_one()

        result = await self.session.execute(
            query.order_by(Conversation.created_at.desc()).offset(offset).limit(limit)
        )
        return result.scalars().all(), total

    async def get_conversation(self, conversation_id: UUID) -> Conversation | None:
        """Get a conversation with its processed replies and history."""
        result = await self.session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(
                selectinload(Conversation.processed_replies),
                selectinload(Conversation.events),
            )
        )
        return result.scalar_one_or_none()

    async def get_events(self, conversation_id: UUID) -> Sequence[ConversationEvent]:
        result = await self.session.execute(
            select(ConversationEvent)
            .where(ConversationEvent.conversation_id == conversation_id)
            .order_by(ConversationEvent.created_at.asc())
        )
        return result.scalars().all()

    async def count_by_state(self) -> dict[str, int]:
        """Number of conversations in each state."""
        result = await self.session.execute(
            select(Conversation.state, func.count()).group_by(Conversation.state)
        )
        return {state.value: count for state, count in result.all()}
