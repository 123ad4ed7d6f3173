"""
Dispatcher: routes inbound mail into the conversation engine.

A message threaded onto a clarification e-mail we sent is a reply; anything
else is parsed as a new role request. Messages for different conversations
are handled concurrently, messages for the same one strictly in the order
they were fetched.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from .conversation_engine import ConversationEngine
from .errors import RoleRequestParseError
from .interfaces import InboundMessage, ReplyEvent
from .requests import parse_role_request


logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    STARTED = "started"
    REPLY = "reply"
    IGNORED = "ignored"


@dataclass
class DispatchSummary:
    """Counts for one batch of inbound messages."""
    started: int = 0
    replies: int = 0
    ignored: int = 0
    errors: list[str] = field(default_factory=list)
    mailbox_error: str | None = None

    def record(self, outcome: DispatchOutcome) -> None:
        if outcome == DispatchOutcome.STARTED:
            self.started += 1
        elif outcome == DispatchOutcome.REPLY:
            self.replies += 1
        elif outcome == DispatchOutcome.IGNORED:
            self.ignored += 1


class ConversationDispatcher:
    """Feeds inbound e-mail to the engine."""

    def __init__(self, engine: ConversationEngine):
        self._engine = engine

    async def dispatch(self, message: InboundMessage) -> DispatchOutcome:
        """Route a single message."""
        correlated = await self._engine.find_by_thread(message.thread_ids)
        if correlated is not None:
            conversation, sent_message_id = correlated
            logger.info(
                f"Message {message.message_id} from {message.from_address} "
                f"replies to conversation {conversation.id}"
            )
            await self._engine.handle_reply(ReplyEvent.from_message(message, sent_message_id))
            return DispatchOutcome.REPLY

        try:
            request = parse_role_request(message)
        except RoleRequestParseError as e:
            logger.info(f"Dropping message {message.message_id}: {e}")
            return DispatchOutcome.IGNORED

        await self._engine.start(request)
        return DispatchOutcome.STARTED

    async def dispatch_all(self, messages: Sequence[InboundMessage]) -> DispatchSummary:
        """Route a batch, one sequential lane per thread."""
        lanes: dict[str, list[InboundMessage]] = {}
        for message in messages:
            key = message.thread_ids[-1] if message.thread_ids else message.message_id
            lanes.setdefault(key, []).append(message)

        summary = DispatchSummary()

        async def run_lane(lane: list[InboundMessage]) -> None:
            for message in lane:
                try:
                    summary.record(await self.dispatch(message))
                except Exception as e:
                    logger.error(
                        f"Failed to dispatch message {message.message_id}: {e}",
                        exc_info=True,
                    )
                    summary.errors.append(f"Message {message.message_id}: {e}")

        await asyncio.gather(*(run_lane(lane) for lane in lanes.values()))
        return summary
