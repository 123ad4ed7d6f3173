"""API routes for inspecting conversations."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core import SessionDep
from ..models import ConversationState
from ..schemas import (
    ConversationDetail,
    ConversationEventResponse,
    ConversationStats,
    ConversationSummary,
    PaginatedResponse,
)
from ..services import ConversationQueryService

router = APIRouter(prefix="/conversations", tags=["conversations"])


def get_query_service(session: SessionDep) -> ConversationQueryService:
    return ConversationQueryService(session)


QueryServiceDep = Annotated[ConversationQueryService, Depends(get_query_service)]


@router.get("", response_model=PaginatedResponse[ConversationSummary])
async def list_conversations(
    service: QueryServiceDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    state: ConversationState | None = None,
    project: str | None = None,
):
    """List conversations, newest first."""
    offset = (page - 1) * page_size

    items, total = await service.list_conversations(
        state=state,
        project_name=project,
        limit=page_size,
        offset=offset,
    )

    return PaginatedResponse[ConversationSummary](
        items=[ConversationSummary.model_validate(c) for c in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.get("/stats", response_model=ConversationStats)
async def get_conversation_stats(service: QueryServiceDep):
    """Number of conversations in each state."""
    by_state = await service.count_by_state()
    return ConversationStats(by_state=by_state, total=sum(by_state.values()))


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(conversation_id: UUID, service: QueryServiceDep):
    """Get a conversation with its replies and history."""
    conversation = await service.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conversation {conversation_id} not found",
        )
    return ConversationDetail.model_validate(conversation)


@router.get("/{conversation_id}/events", response_model=list[ConversationEventResponse])
async def get_conversation_events(conversation_id: UUID, service: QueryServiceDep):
    """Transition history of a conversation, oldest first."""
    if await service.get_conversation(conversation_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conversation {conversation_id} not found",
        )
    events = await service.get_events(conversation_id)
    return [ConversationEventResponse.model_validate(e) for e in events]
