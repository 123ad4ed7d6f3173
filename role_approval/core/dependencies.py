"""Wiring: FastAPI dependencies and the engine built from settings."""

import logging
from typing import Annotated

import httpx
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings, get_settings
from .database import get_session, get_session_factory

logger = logging.getLogger(__name__)


SessionDep = Annotated[AsyncSession, Depends(get_session)]


def build_conversation_engine(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    http_client: httpx.AsyncClient | None = None,
):
    """
    Assemble a ConversationEngine with the production collaborators.

    The HTTP client, when given, is shared by the policy fetcher and the
    membership client; it must be closed by the caller.
    """
    from ..clients import EmailOwnerNotifier, HttpMembershipClient, SmtpConfig, SmtpMessageSender
    from ..services import ActionExecutor, ConversationConfig, ConversationEngine, PolicyFetcher

    settings = settings or get_settings()
    if not settings.smtp_enabled:
        logger.warning("SMTP_HOST is not set; outbound mail will fail")

    sender = SmtpMessageSender(SmtpConfig.from_settings(settings))
    return ConversationEngine(
        session_factory=session_factory or get_session_factory(),
        policy_source=PolicyFetcher(client=http_client, settings=settings),
        sender=sender,
        executor=ActionExecutor(HttpMembershipClient.from_settings(settings, client=http_client)),
        notifier=EmailOwnerNotifier(sender, settings.owner_address_template),
        config=ConversationConfig.from_settings(settings),
    )
