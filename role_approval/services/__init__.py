"""Business logic services for Role Approval."""

from .actions import ActionExecutor
from .conversation_engine import (
    ConversationConfig,
    ConversationEngine,
    DeadlineSweepResult,
    NO_RESPONSE_MESSAGE,
    OutboundMessage,
    compose_clarification,
)
from .conversations import ConversationQueryService
from .dispatcher import ConversationDispatcher, DispatchOutcome, DispatchSummary
from .errors import (
    ConcurrencyError,
    MessageSendError,
    NoMatchingRuleError,
    ParseError,
    PolicyError,
    PolicyFetchError,
    RoleRequestParseError,
    ServiceError,
    TransportError,
    UnknownActionError,
    WorkflowError,
)
from .interfaces import (
    InboundMessage,
    Mailbox,
    MembershipService,
    MessageSender,
    OwnerNotifier,
    PolicySource,
    ReplyEvent,
    RoleRequest,
)
from .policy import PolicyDocument, PolicyFetcher, Rule, parse_policy
from .replies import classify_reply
from .requests import parse_role_request
from .rules import RuleAction, Verdict, evaluate
from .templates import render_template

__all__ = [
    # Conversation engine (primary)
    "ConversationEngine",
    "ConversationConfig",
    "DeadlineSweepResult",
    "OutboundMessage",
    "NO_RESPONSE_MESSAGE",
    "compose_clarification",
    "ConversationDispatcher",
    "DispatchOutcome",
    "DispatchSummary",
    "ConversationQueryService",
    # Building blocks
    "ActionExecutor",
    "PolicyFetcher",
    "PolicyDocument",
    "Rule",
    "parse_policy",
    "RuleAction",
    "Verdict",
    "evaluate",
    "classify_reply",
    "parse_role_request",
    "render_template",
    # Collaborators
    "RoleRequest",
    "InboundMessage",
    "ReplyEvent",
    "PolicySource",
    "MessageSender",
    "MembershipService",
    "OwnerNotifier",
    "Mailbox",
    # Errors
    "WorkflowError",
    "TransportError",
    "PolicyFetchError",
    "MessageSendError",
    "ParseError",
    "UnknownActionError",
    "RoleRequestParseError",
    "ServiceError",
    "PolicyError",
    "NoMatchingRuleError",
    "ConcurrencyError",
]
