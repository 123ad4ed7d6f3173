"""
Conversation Engine: the durable role request workflow.

A conversation moves through

    INIT -> EVALUATING -> APPLYING -> APPROVED | DENIED
                       -> SENDING -> AWAITING_REPLY -> APPLYING -> APPROVED | DENIED
                                                    -> TIMED_OUT
    (any non-terminal state) -> FAILED

Key guarantees:
1. Every transition is committed before the next side effect starts, so a
   restart resumes from the last committed state instead of the beginning.
2. Transitions are compare-and-set on (state, version); of two handlers
   racing for the same conversation only one commits.
3. The membership service is called only after the move into APPLYING has
   been committed, so it is called at most once per conversation.
4. The clarification e-mail is sent only from SENDING; a conversation
   found in SENDING after a restart is failed, never re-sent.
5. Each reply id is recorded together with its effect, so a redelivered
   reply is a no-op.

Waiting for a reply holds nothing in memory. The AWAITING_REPLY row and its
deadline are the suspension; replies arrive through ``handle_reply`` and
the deadline through ``handle_deadline`` (driven by the sweeper job).
"""

import asyncio
import logging
import re
import weakref
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..models import (
    Conversation,
    ConversationEvent,
    ConversationEventType,
    ConversationOutcome,
    ConversationState,
    ProcessedReply,
    ReplyCommand,
    utcnow,
)
from .actions import ActionExecutor
from .errors import ConcurrencyError
from .interfaces import MessageSender, OwnerNotifier, PolicySource, ReplyEvent, RoleRequest
from .replies import classify_reply
from .rules import RuleAction, evaluate


logger = logging.getLogger(__name__)


NO_RESPONSE_MESSAGE = (
    "It's been a week, but we haven't heard anything from you, "
    "so I'm going ahead and denying the request. Please write "
    "to us if you are still interested in joining the project"
)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class ConversationConfig:
    """Configuration for conversation behavior."""

    # How long an owner has to answer a clarification e-mail
    reply_timeout: timedelta = timedelta(days=7)

    # Require ##APPROVE / ##DENY on a line by itself
    strict_replies: bool = True

    # Where clarification e-mails go when the policy body doesn't say
    owner_address_template: str = "owner@{project}.dev.java.net"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConversationConfig":
        return cls(
            reply_timeout=timedelta(days=settings.reply_timeout_days),
            strict_replies=settings.reply_match_strict,
            owner_address_template=settings.owner_address_template,
        )


DEFAULT_CONFIG = ConversationConfig()


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class OutboundMessage:
    """A message ready to hand to the sender."""
    to: str
    subject: str
    body: str


@dataclass
class DeadlineSweepResult:
    """Outcome of one pass over expired deadlines."""
    denied: int = 0
    timed_out: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


# =============================================================================
# MESSAGE COMPOSITION
# =============================================================================


_HEADER_LINE = re.compile(r"^([A-Za-z][A-Za-z0-9-]*):[ \t]*(.*)$")


def compose_clarification(body: str, request: RoleRequest, default_to: str) -> OutboundMessage:
    """
    Build the clarification e-mail from a rendered talk body.

    A talk body may open with e-mail headers (``To:``, ``Subject:``)
    followed by a blank line. Without them the message goes to
    ``default_to`` with a subject describing the request.
    """
    headers: dict[str, str] = {}
    lines = body.splitlines()

    if lines and _HEADER_LINE.match(lines[0]):
        parsed: dict[str, str] = {}
        for index, line in enumerate(lines):
            if not line.strip():
                # Header block ends at the first blank line
                headers, lines = parsed, lines[index + 1:]
                break
            match = _HEADER_LINE.match(line)
            if match is None:
                break
            parsed[match.group(1).lower()] = match.group(2).strip()

    return OutboundMessage(
        to=headers.get("to") or default_to,
        subject=headers.get("subject") or str(request),
        body="\n".join(lines).strip(),
    )


# =============================================================================
# CONVERSATION ENGINE
# =============================================================================


class ConversationEngine:
    """
    Runs role request conversations.

    Within one process, events for a conversation are serialised through a
    per-conversation lock. Across processes the compare-and-set on every
    transition keeps a second handler from committing anything.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy_source: PolicySource,
        sender: MessageSender,
        executor: ActionExecutor,
        notifier: OwnerNotifier,
        config: ConversationConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._policy_source = policy_source
        self._sender = sender
        self._executor = executor
        self._notifier = notifier
        self._config = config
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # =========================================================================
    # STARTING A CONVERSATION
    # =========================================================================

    async def start(self, request: RoleRequest) -> Conversation:
        """
        Start a conversation for a role request.

        Idempotent on the request's source message id: a redelivered request
        e-mail returns the existing conversation without doing anything.
        """
        conversation, created = await self._create(request)
        if not created:
            logger.info(
                f"Request {request.source_message_id} already has conversation "
                f"{conversation.id} ({conversation.state.value})"
            )
            return conversation

        logger.info(f"Started a conversation with {request}")
        async with self._lock_for(conversation.id):
            return await self._evaluate(conversation)

    async def _create(self, request: RoleRequest) -> tuple[Conversation, bool]:
        async with self._session_factory() as session:
            existing = await self._find_by_source(session, request.source_message_id)
            if existing is not None:
                return existing, False

            conversation = Conversation(
                id=uuid4(),
                project_name=request.project_name,
                role_name=request.role_name,
                user_name=request.user_name,
                source_message_id=request.source_message_id,
                state=ConversationState.INIT,
                reply_count=0,
                version=1,
            )
            session.add(conversation)
            session.add(ConversationEvent(
                conversation_id=conversation.id,
                event_type=ConversationEventType.CREATED,
                to_state=ConversationState.INIT,
                details={"title": str(request)},
            ))
            try:
                await session.commit()
                return conversation, True
            except IntegrityError:
                await session.rollback()

        # Lost a race with another delivery of the same request
        async with self._session_factory() as session:
            existing = await self._find_by_source(session, request.source_message_id)
            if existing is None:
                raise ConcurrencyError(
                    f"Conversation for {request.source_message_id} vanished after conflict"
                )
            return existing, False

    async def _evaluate(self, conversation: Conversation) -> Conversation:
        """Fetch the policy and act on it."""
        request = self.request_of(conversation)
        conversation = await self._transition(conversation, ConversationState.EVALUATING)

        try:
            policy = await self._policy_source.fetch(request.project_name)
            verdict = evaluate(policy, request.role_name, request.substitutions)
        except Exception as e:
            return await self._fail(conversation, e)

        if verdict.action == RuleAction.APPROVE:
            return await self._resolve(conversation, ConversationOutcome.APPROVED)
        if verdict.action == RuleAction.DENY:
            return await self._resolve(
                conversation, ConversationOutcome.DENIED, reason=verdict.body
            )
        return await self._open_dialogue(conversation, verdict.body)

    async def _open_dialogue(self, conversation: Conversation, body: str) -> Conversation:
        """Send the clarification e-mail and suspend until a reply or the deadline."""
        request = self.request_of(conversation)
        message = compose_clarification(
            body,
            request,
            default_to=self._config.owner_address_template.format(project=request.project_name),
        )

        # The Message-ID is stored before sending so an early reply finds us.
        message_id = self._sender.new_message_id()
        conversation = await self._transition(
            conversation, ConversationState.SENDING, pending_message_id=message_id
        )

        try:
            message_id = await self._sender.send(
                message.to, message.subject, message.body, message_id=message_id
            )
        except Exception as e:
            return await self._fail(conversation, e)

        deadline = self._clock() + self._config.reply_timeout
        logger.info(f"Starting a conversation. Expire date is {deadline.isoformat()}")

        return await self._transition(
            conversation,
            ConversationState.AWAITING_REPLY,
            event_type=ConversationEventType.MESSAGE_SENT,
            details={
                "message_id": message_id,
                "to": message.to,
                "subject": message.subject,
                "deadline": deadline.isoformat(),
            },
            pending_message_id=message_id,
            deadline=deadline,
        )

    # =========================================================================
    # REPLIES
    # =========================================================================

    async def handle_reply(self, reply: ReplyEvent) -> Conversation | None:
        """
        Handle a reply to a clarification e-mail.

        Returns the conversation the reply belongs to (after handling), or
        None when it answers nothing we sent.
        """
        conversation = await self.find_by_message_id(reply.in_reply_to)
        if conversation is None:
            logger.debug(f"Reply {reply.reply_message_id} does not answer a pending message")
            return None

        async with self._lock_for(conversation.id):
            conversation = await self.get(conversation.id)
            try:
                return await self._handle_reply(conversation, reply)
            except ConcurrencyError as e:
                logger.info(f"Reply {reply.reply_message_id} lost a race: {e}")
                return await self.get(conversation.id)

    async def _handle_reply(self, conversation: Conversation, reply: ReplyEvent) -> Conversation:
        if conversation.state != ConversationState.AWAITING_REPLY:
            logger.info(
                f"Ignoring reply {reply.reply_message_id}: conversation "
                f"{conversation.id} is {conversation.state.value}"
            )
            return conversation

        if await self._already_processed(conversation.id, reply.reply_message_id):
            logger.info(f"Reply {reply.reply_message_id} was already processed")
            return conversation

        if conversation.deadline is not None and reply.received_at > conversation.deadline:
            logger.info(
                f"Ignoring reply {reply.reply_message_id}: received "
                f"{reply.received_at.isoformat()}, after the deadline"
            )
            return conversation

        command = classify_reply(reply.body, strict=self._config.strict_replies)
        processed = ProcessedReply(
            reply_message_id=reply.reply_message_id,
            from_address=reply.from_address,
            command=command,
            received_at=reply.received_at,
        )
        details = {
            "reply_message_id": reply.reply_message_id,
            "from": reply.from_address,
            "command": command.value,
        }

        if command == ReplyCommand.UNRECOGNIZED:
            logger.info(f"Reply {reply.reply_message_id} carries no command; still waiting")
            return await self._transition(
                conversation,
                ConversationState.AWAITING_REPLY,
                event_type=ConversationEventType.REPLY_RECEIVED,
                details=details,
                processed_reply=processed,
                reply_count=Conversation.reply_count + 1,
            )

        if command == ReplyCommand.APPROVE:
            note = f"Approving a request based on e-mail from {reply.from_address}"
            outcome, reason = ConversationOutcome.APPROVED, None
        else:
            note = f"Denying a request based on e-mail from {reply.from_address}"
            outcome, reason = ConversationOutcome.DENIED, reply.body

        logger.info(note)
        conversation = await self._resolve(
            conversation,
            outcome,
            reason=reason,
            details=details,
            processed_reply=processed,
            reply_count=Conversation.reply_count + 1,
        )

        if conversation.state in (ConversationState.APPROVED, ConversationState.DENIED):
            await self._confirm(reply, note)
        return conversation

    async def _confirm(self, reply: ReplyEvent, note: str) -> None:
        """Tell whoever replied what we did with their answer."""
        subject = reply.subject or "Role request"
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"
        try:
            await self._sender.send(
                reply.from_address, subject, note, in_reply_to=reply.reply_message_id
            )
        except Exception as e:
            # The action is already applied; only the courtesy note is lost
            logger.warning(f"Failed to confirm reply {reply.reply_message_id}: {e}")

    # =========================================================================
    # DEADLINES
    # =========================================================================

    async def handle_deadline(
        self,
        conversation_id: UUID,
        now: datetime | None = None,
    ) -> Conversation | None:
        """
        Handle the reply deadline of a conversation.

        Silence denies the request. If replies came in but none of them
        decided anything, the conversation just ends without an action.
        A deadline that isn't due yet, or a conversation that already
        reached a decision, is a no-op.
        """
        async with self._lock_for(conversation_id):
            conversation = await self.get(conversation_id)
            if conversation is None:
                return None

            now = now or self._clock()
            if conversation.state != ConversationState.AWAITING_REPLY:
                logger.debug(
                    f"Deadline for {conversation_id} ignored: {conversation.state.value}"
                )
                return conversation
            if conversation.deadline is None or now < conversation.deadline:
                return conversation

            try:
                if conversation.reply_count == 0:
                    logger.info("No response before the deadline. Denying a request.")
                    return await self._resolve(
                        conversation,
                        ConversationOutcome.DENIED,
                        reason=NO_RESPONSE_MESSAGE,
                        details={"timeout": True},
                    )

                logger.info(
                    f"Exiting due to a timeout: conversation {conversation_id} got "
                    f"{conversation.reply_count} replies without a decision"
                )
                return await self._transition(
                    conversation,
                    ConversationState.TIMED_OUT,
                    details={"reply_count": conversation.reply_count},
                )
            except ConcurrencyError as e:
                logger.info(f"Deadline for {conversation_id} lost a race: {e}")
                return await self.get(conversation_id)

    async def due_conversation_ids(self, now: datetime, limit: int = 100) -> list[UUID]:
        """Ids of conversations still waiting past their deadline."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation.id)
                .where(
                    Conversation.state == ConversationState.AWAITING_REPLY,
                    Conversation.deadline.isnot(None),
                    Conversation.deadline <= now,
                )
                .order_by(Conversation.deadline.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def process_due_deadlines(
        self,
        now: datetime | None = None,
        batch_size: int = 100,
    ) -> DeadlineSweepResult:
        """
        Fire every deadline that has passed.

        This is the main method called by the sweeper job.
        """
        now = now or self._clock()
        result = DeadlineSweepResult()

        for conversation_id in await self.due_conversation_ids(now, limit=batch_size):
            try:
                conversation = await self.handle_deadline(conversation_id, now=now)
            except Exception as e:
                logger.error(f"Deadline for {conversation_id} failed: {e}", exc_info=True)
                result.errors.append(f"Conversation {conversation_id}: {e}")
                continue

            if conversation is None:
                result.skipped += 1
            elif conversation.state == ConversationState.DENIED:
                result.denied += 1
            elif conversation.state == ConversationState.TIMED_OUT:
                result.timed_out += 1
            else:
                result.skipped += 1

        return result

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def recover(self) -> int:
        """
        Pick up conversations a previous process left mid-step.

        INIT and EVALUATING had no side effects yet and are evaluated again.
        SENDING and APPLYING may or may not have reached the outside world;
        they are failed and reported, never repeated.

        Returns:
            Number of conversations touched
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation)
                .where(Conversation.state.in_([
                    ConversationState.INIT,
                    ConversationState.EVALUATING,
                    ConversationState.SENDING,
                    ConversationState.APPLYING,
                ]))
                .order_by(Conversation.created_at.asc())
            )
            stranded = result.scalars().all()

        count = 0
        for conversation in stranded:
            async with self._lock_for(conversation.id):
                current = await self.get(conversation.id)
                if current is None or current.version != conversation.version:
                    continue
                logger.info(f"Recovering conversation {current.id} from {current.state.value}")
                try:
                    if current.state in (ConversationState.INIT, ConversationState.EVALUATING):
                        await self._evaluate(current)
                    elif current.state == ConversationState.SENDING:
                        await self._fail(current, RuntimeError(
                            "Interrupted while sending the clarification e-mail; "
                            "it may or may not have gone out"
                        ))
                    else:
                        outcome = current.outcome.value if current.outcome else "terminal"
                        await self._fail(current, RuntimeError(
                            f"Interrupted while applying the {outcome} decision; "
                            "check the membership before retrying"
                        ))
                except ConcurrencyError as e:
                    logger.info(f"Recovery of {current.id} lost a race: {e}")
                    continue
                count += 1

        return count

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, conversation_id: UUID) -> Conversation | None:
        async with self._session_factory() as session:
            return await session.get(Conversation, conversation_id)

    async def find_by_message_id(self, message_id: str) -> Conversation | None:
        """Conversation whose pending clarification e-mail has this Message-ID."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Conversation).where(Conversation.pending_message_id == message_id)
            )
            return result.scalars().first()

    async def find_by_thread(self, message_ids: Sequence[str]) -> tuple[Conversation, str] | None:
        """First conversation any of these Message-IDs belongs to."""
        for message_id in message_ids:
            conversation = await self.find_by_message_id(message_id)
            if conversation is not None:
                return conversation, message_id
        return None

    @staticmethod
    def request_of(conversation: Conversation) -> RoleRequest:
        return RoleRequest(
            project_name=conversation.project_name,
            role_name=conversation.role_name,
            user_name=conversation.user_name,
            source_message_id=conversation.source_message_id,
        )

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    def _lock_for(self, conversation_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _find_by_source(self, session: AsyncSession, source_message_id: str) -> Conversation | None:
        result = await session.execute(
            select(Conversation).where(Conversation.source_message_id == source_message_id)
        )
        return result.scalar_one_or_none()

    async def _already_processed(self, conversation_id: UUID, reply_message_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessedReply.id).where(
                    ProcessedReply.conversation_id == conversation_id,
                    ProcessedReply.reply_message_id == reply_message_id,
                )
            )
            return result.first() is not None

    async def _resolve(
        self,
        conversation: Conversation,
        outcome: ConversationOutcome,
        reason: str | None = None,
        details: dict | None = None,
        processed_reply: ProcessedReply | None = None,
        **values,
    ) -> Conversation:
        """
        Commit a terminal decision, then apply it.

        The move into APPLYING carries the outcome; only the handler that
        commits it calls the membership service.
        """
        conversation = await self._transition(
            conversation,
            ConversationState.APPLYING,
            details={**(details or {}), "outcome": outcome.value},
            processed_reply=processed_reply,
            outcome=outcome,
            decision_reason=reason,
            **values,
        )

        request = self.request_of(conversation)
        try:
            if outcome == ConversationOutcome.APPROVED:
                await self._executor.apply_approve(request)
            else:
                await self._executor.apply_deny(request, reason or "")
        except Exception as e:
            return await self._fail(conversation, e)

        final_state = (
            ConversationState.APPROVED
            if outcome == ConversationOutcome.APPROVED
            else ConversationState.DENIED
        )
        return await self._transition(
            conversation,
            final_state,
            event_type=ConversationEventType.ACTION_APPLIED,
            details={"outcome": outcome.value},
        )

    async def _fail(self, conversation: Conversation, error: Exception) -> Conversation:
        """Abort a conversation: no action, error stored, owners told."""
        request = self.request_of(conversation)
        logger.error(
            f"Conversation {conversation.id} ({request}) failed in "
            f"{conversation.state.value}: {error}",
            exc_info=error,
        )

        try:
            conversation = await self._transition(
                conversation,
                ConversationState.FAILED,
                event_type=ConversationEventType.FAILED,
                details={"error_type": type(error).__name__, "error": str(error)},
                error_message=str(error),
            )
        except ConcurrencyError as e:
            logger.warning(f"Could not record failure of {conversation.id}: {e}")

        await self._notify_owner(
            request.project_name,
            f"Failed to process the {request.role_name} role request from {request.user_name}",
            (
                f"The automatic processing of the {request.role_name} role request "
                f"from {request.user_name} to {request.project_name} failed, and no "
                f"action was taken.\n\n{type(error).__name__}: {error}\n\n"
                "Please handle the request manually."
            ),
        )
        return conversation

    async def _notify_owner(self, project_name: str, subject: str, body: str) -> None:
        try:
            delivered = await self._notifier.notify(project_name, subject, body)
        except Exception as e:
            logger.error(f"Failed to notify owners of {project_name}: {e}")
            return
        if not delivered:
            logger.error(f"Owner notification for {project_name} was lost")

    async def _transition(
        self,
        conversation: Conversation,
        to_state: ConversationState,
        event_type: ConversationEventType = ConversationEventType.TRANSITION,
        details: dict | None = None,
        processed_reply: ProcessedReply | None = None,
        **values,
    ) -> Conversation:
        """
        Compare-and-set the conversation into a new state.

        Everything passed along (column values, a processed reply, the
        history event) commits in one transaction or not at all.

        Raises:
            ConcurrencyError: the row is no longer in the state/version we read
        """
        from_state = conversation.state

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        update(Conversation)
                        .where(
                            Conversation.id == conversation.id,
                            Conversation.state == from_state,
                            Conversation.version == conversation.version,
                        )
                        .values(
                            state=to_state,
                            version=Conversation.version + 1,
                            updated_at=utcnow(),
                            **values,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConcurrencyError(
                            f"Conversation {conversation.id} is no longer "
                            f"{from_state.value} at version {conversation.version}"
                        )

                    if processed_reply is not None:
                        processed_reply.conversation_id = conversation.id
                        session.add(processed_reply)

                    session.add(ConversationEvent(
                        conversation_id=conversation.id,
                        event_type=event_type,
                        from_state=from_state,
                        to_state=to_state,
                        details=details or {},
                    ))
            except IntegrityError as e:
                raise ConcurrencyError(
                    f"Conflicting write to conversation {conversation.id}: {e}"
                ) from e

            refreshed = await session.get(Conversation, conversation.id)

        logger.debug(
            f"Conversation {conversation.id}: {from_state.value} -> {to_state.value}"
        )
        return refreshed
