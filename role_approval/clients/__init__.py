"""Concrete collaborators: membership service and mail transport."""

from .mail import (
    EmailOwnerNotifier,
    ImapConfig,
    ImapMailbox,
    SmtpConfig,
    SmtpMessageSender,
    build_message,
    parse_inbound,
    parse_internaldate,
)
from .membership import HttpMembershipClient

__all__ = [
    "HttpMembershipClient",
    "SmtpMessageSender",
    "SmtpConfig",
    "ImapMailbox",
    "ImapConfig",
    "EmailOwnerNotifier",
    "build_message",
    "parse_inbound",
    "parse_internaldate",
]
