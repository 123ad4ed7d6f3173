"""
Collaborator interfaces for the conversation workflow.

The engine never looks anything up globally: the policy source, the mail
sender, the membership service and the owner notifier are all handed in,
so tests can substitute recording doubles.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import make_msgid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .policy import PolicyDocument


logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class RoleRequest:
    """A request by a user for a role in a project."""
    project_name: str
    role_name: str
    user_name: str
    source_message_id: str

    @property
    def substitutions(self) -> dict[str, str]:
        """Placeholder values for policy message bodies."""
        return {
            "project": self.project_name,
            "role": self.role_name,
            "user": self.user_name,
        }

    def __str__(self) -> str:
        return f"{self.role_name} role request from {self.user_name} to {self.project_name}"


@dataclass(frozen=True)
class InboundMessage:
    """An e-mail picked up from the mailbox."""
    message_id: str
    from_address: str
    subject: str
    body: str
    received_at: datetime
    in_reply_to: str | None = None
    references: tuple[str, ...] = field(default_factory=tuple)

    @property
    def thread_ids(self) -> tuple[str, ...]:
        """Message-IDs this message answers, most direct first."""
        ids = [self.in_reply_to] if self.in_reply_to else []
        ids.extend(ref for ref in reversed(self.references) if ref not in ids)
        return tuple(ids)


@dataclass(frozen=True)
class ReplyEvent:
    """A reply correlated to an outbound clarification message."""
    reply_message_id: str
    in_reply_to: str
    from_address: str
    body: str
    received_at: datetime
    subject: str = ""

    @classmethod
    def from_message(cls, message: InboundMessage, in_reply_to: str) -> "ReplyEvent":
        return cls(
            reply_message_id=message.message_id,
            in_reply_to=in_reply_to,
            from_address=message.from_address,
            body=message.body,
            received_at=message.received_at,
            subject=message.subject,
        )


# =============================================================================
# COLLABORATORS
# =============================================================================


class PolicySource(ABC):
    """Where policy documents come from."""

    @abstractmethod
    async def fetch(self, project_name: str) -> "PolicyDocument":
        """Fetch the current policy for a project, following redirects."""
        pass


class MessageSender(ABC):
    """Outbound e-mail transport."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        in_reply_to: str | None = None,
        message_id: str | None = None,
    ) -> str:
        """
        Send a message.

        Args:
            message_id: Message-ID to put on the message; a fresh one is
                generated when omitted

        Returns:
            The Message-ID of the sent message

        Raises:
            MessageSendError: the message could not be handed over
        """
        pass

    def new_message_id(self) -> str:
        """A Message-ID for a message that has not been sent yet."""
        return make_msgid()


class MembershipService(ABC):
    """The platform's role-grant service."""

    @abstractmethod
    async def grant_role(self, project_name: str, user_name: str, role_name: str) -> None:
        pass

    @abstractmethod
    async def decline_role(
        self,
        project_name: str,
        user_name: str,
        role_name: str,
        reason: str,
    ) -> None:
        pass


class OwnerNotifier(ABC):
    """Best-effort channel to a project's owners."""

    @abstractmethod
    async def notify(self, project_name: str, subject: str, body: str) -> bool:
        """
        Tell the owners of a project something.

        Never raises; returns False when the notification was lost.
        """
        pass


class Mailbox(ABC):
    """
    Inbound e-mail source.

    Subclasses implement ``poll``. Messages that ``wait_for_replies`` picks
    up but does not yield are held back and handed out again by the next
    ``fetch_unseen``, so a server that marks fetched mail as seen loses
    nothing.
    """

    poll_interval_seconds: float = 60.0

    def __init__(self):
        self._held: list[InboundMessage] = []

    @abstractmethod
    async def poll(self) -> list[InboundMessage]:
        """Return messages the server has not handed out before."""
        pass

    async def fetch_unseen(self) -> list[InboundMessage]:
        """Held-back messages first, then new mail from the server."""
        fresh = await self.poll()
        held, self._held = self._held, []
        return held + fresh

    async def wait_for_replies(
        self,
        sent_message_id: str,
        deadline: datetime,
    ) -> AsyncIterator[ReplyEvent]:
        """
        Yield replies to one message until the deadline passes.

        Only replies threaded onto ``sent_message_id`` and received by the
        deadline are yielded. Everything else fetched in the meantime, and
        any reply left over when the caller stops consuming, is held for
        the next ``fetch_unseen``.
        """
        while True:
            now = datetime.now(timezone.utc)
            if now >= deadline:
                return

            replies = []
            for message in await self.fetch_unseen():
                if sent_message_id in message.thread_ids and message.received_at <= deadline:
                    replies.append(message)
                else:
                    logger.debug(
                        f"Holding {message.message_id}: not a timely reply to {sent_message_id}"
                    )
                    self._held.append(message)

            while replies:
                message = replies.pop(0)
                try:
                    yield ReplyEvent.from_message(message, sent_message_id)
                except GeneratorExit:
                    self._held.extend(replies)
                    raise

            remaining = (deadline - datetime.now(timezone.utc)).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))
