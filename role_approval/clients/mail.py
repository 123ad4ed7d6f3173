"""
Mail transport: SMTP out, IMAP in.

Outbound Message-IDs are chosen before the send, so the engine can store
one with the conversation and correlate a reply that arrives while the
relay is still talking to us. Inbound receive times come from the IMAP
server (INTERNALDATE), never from the sender's Date header.
"""

import email
import email.policy
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr

import aioimaplib
import aiosmtplib

from ..core.config import Settings
from ..services.errors import MessageSendError, TransportError
from ..services.interfaces import InboundMessage, Mailbox, MessageSender, OwnerNotifier


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SmtpConfig:
    """Outbound mail configuration."""
    host: str = ""
    port: int = 587
    user: str = ""
    password: str = ""
    use_tls: bool = True
    from_address: str = "role-approval@dev.java.net"
    timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpConfig":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.mail_from,
        )


@dataclass
class ImapConfig:
    """Inbound mail configuration."""
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = ""
    folder: str = "INBOX"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImapConfig":
        return cls(
            host=settings.imap_host,
            port=settings.imap_port,
            user=settings.imap_user,
            password=settings.imap_password,
            folder=settings.imap_folder,
        )


# =============================================================================
# MESSAGE HELPERS
# =============================================================================


INTERNALDATE_PATTERN = re.compile(rb'INTERNALDATE "([^"]+)"')


def domain_of(address: str) -> str | None:
    return parseaddr(address)[1].rpartition("@")[2] or None


def build_message(
    from_address: str,
    to: str,
    subject: str,
    body: str,
    in_reply_to: str | None = None,
    message_id: str | None = None,
) -> EmailMessage:
    """Build a plain-text message, generating a Message-ID unless given one."""
    message = EmailMessage()
    message["From"] = from_address
    message["To"] = to
    message["Subject"] = subject
    message["Message-ID"] = message_id or make_msgid(domain=domain_of(from_address))
    if in_reply_to:
        message["In-Reply-To"] = in_reply_to
        message["References"] = in_reply_to
    message.set_content(body)
    return message


def parse_internaldate(lines) -> datetime | None:
    """
    Server receive time from the response lines of a FETCH (INTERNALDATE ...).

    The message literal itself is skipped; returns None when no parseable
    INTERNALDATE is present.
    """
    for line in lines:
        if isinstance(line, bytearray):
            continue
        match = INTERNALDATE_PATTERN.search(line)
        if match is None:
            continue
        value = match.group(1).decode("ascii", "replace").strip()
        try:
            return datetime.strptime(value, "%d-%b-%Y %H:%M:%S %z")
        except ValueError:
            logger.warning(f"Unparseable INTERNALDATE {value!r}")
            return None
    return None


def parse_inbound(raw: bytes, received_at: datetime | None = None) -> InboundMessage:
    """
    Turn a raw RFC 822 message into an InboundMessage.

    ``received_at`` is when our server took the message in; it defaults to
    now. The Date header is written by the sender and plays no part.
    """
    message = email.message_from_bytes(raw, policy=email.policy.default)

    body_part = message.get_body(preferencelist=("plain",))
    body = body_part.get_content() if body_part is not None else ""

    in_reply_to = str(message.get("In-Reply-To") or "").strip() or None
    references = tuple(str(message.get("References") or "").split())

    return InboundMessage(
        message_id=str(message.get("Message-ID") or "").strip(),
        from_address=parseaddr(str(message.get("From") or ""))[1],
        subject=str(message.get("Subject") or ""),
        body=body,
        received_at=received_at or datetime.now(timezone.utc),
        in_reply_to=in_reply_to,
        references=references,
    )


# =============================================================================
# SMTP
# =============================================================================


class SmtpMessageSender(MessageSender):
    """Sends mail through an SMTP relay."""

    def __init__(self, config: SmtpConfig):
        self._config = config

    def new_message_id(self) -> str:
        return make_msgid(domain=domain_of(self._config.from_address))

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        in_reply_to: str | None = None,
        message_id: str | None = None,
    ) -> str:
        message = build_message(
            self._config.from_address,
            to,
            subject,
            body,
            in_reply_to,
            message_id=message_id or self.new_message_id(),
        )
        try:
            await aiosmtplib.send(
                message,
                hostname=self._config.host,
                port=self._config.port,
                username=self._config.user or None,
                password=self._config.password or None,
                start_tls=self._config.use_tls,
                timeout=self._config.timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise MessageSendError(f"Failed to send {subject!r} to {to}: {e}") from e

        logger.info(f"[EMAIL] To: {to}, Subject: {subject}, Message-ID: {message['Message-ID']}")
        return message["Message-ID"]


# =============================================================================
# IMAP
# =============================================================================


class ImapMailbox(Mailbox):
    """Polls an IMAP folder for unseen mail, marking what it hands out as seen."""

    def __init__(self, config: ImapConfig, poll_interval_seconds: float = 60.0):
        super().__init__()
        self._config = config
        self.poll_interval_seconds = poll_interval_seconds

    async def poll(self) -> list[InboundMessage]:
        imap_client = aioimaplib.IMAP4_SSL(host=self._config.host, port=self._config.port)
        try:
            await imap_client.wait_hello_from_server()

            login_result = await imap_client.login(self._config.user, self._config.password)
            if login_result.result != "OK":
                raise TransportError(f"IMAP login failed: {login_result}")

            select_result = await imap_client.select(self._config.folder)
            if select_result.result != "OK":
                raise TransportError(
                    f"Failed to select folder {self._config.folder}: {select_result}"
                )

            search_result = await imap_client.search("UNSEEN")
            if search_result.result != "OK" or not search_result.lines:
                return []

            email_ids = search_result.lines[0].decode().split()
            messages = []
            for email_id in email_ids:
                fetch_result = await imap_client.fetch(email_id, "(INTERNALDATE RFC822)")
                if fetch_result.result != "OK":
                    logger.error(f"Failed to fetch email {email_id}: {fetch_result}")
                    continue

                try:
                    messages.append(
                        parse_inbound(
                            bytes(fetch_result.lines[1]),
                            received_at=parse_internaldate(fetch_result.lines),
                        )
                    )
                except (ValueError, LookupError) as e:
                    logger.error(f"Failed to parse email {email_id}: {e}", exc_info=True)
                await imap_client.store(email_id, "+FLAGS", "\\Seen")

            if messages:
                logger.info(f"Fetched {len(messages)} new messages from {self._config.folder}")
            return messages

        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"IMAP fetch failed: {e}") from e

        finally:
            try:
                await imap_client.logout()
            except Exception as e:
                logger.debug(f"IMAP logout failed: {e}")


# =============================================================================
# OWNER NOTIFICATION
# =============================================================================


class EmailOwnerNotifier(OwnerNotifier):
    """Mails a project's owners; losing the mail is logged, never raised."""

    def __init__(self, sender: MessageSender, owner_address_template: str):
        self._sender = sender
        self._owner_address_template = owner_address_template

    def owner_address(self, project_name: str) -> str:
        return self._owner_address_template.format(project=project_name)

    async def notify(self, project_name: str, subject: str, body: str) -> bool:
        to = self.owner_address(project_name)
        try:
            await self._sender.send(to, subject, body)
            return True
        except Exception as e:
            logger.error(f"Failed to notify {to}: {e}")
            return False
