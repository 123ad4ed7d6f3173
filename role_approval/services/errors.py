"""
Workflow exceptions.

Every failure that aborts a conversation derives from WorkflowError. None of
them is retried; the conversation is marked failed and the project owner is
told why.
"""


class WorkflowError(Exception):
    """Base exception for conversation workflow operations."""
    pass


# =============================================================================
# TRANSPORT
# =============================================================================


class TransportError(WorkflowError):
    """Policy or mail fetch/send failed."""
    pass


class PolicyFetchError(TransportError):
    """Policy document could not be retrieved."""
    pass


class MessageSendError(TransportError):
    """Outbound e-mail could not be sent."""
    pass


# =============================================================================
# PARSING
# =============================================================================


class ParseError(WorkflowError):
    """Malformed input: policy document, rule action, or request e-mail."""
    pass


class UnknownActionError(ParseError):
    """A matching rule carries an action we don't understand."""

    def __init__(self, action: str):
        super().__init__(f"Unknown action {action!r}")
        self.action = action


class RoleRequestParseError(ParseError):
    """An inbound e-mail does not describe a role request."""
    pass


# =============================================================================
# SERVICE / POLICY
# =============================================================================


class ServiceError(WorkflowError):
    """The membership service rejected or failed a grant/decline call."""
    pass


class PolicyError(WorkflowError):
    """The policy does not give an unambiguous answer."""
    pass


class NoMatchingRuleError(PolicyError):
    """No rule in the policy matches the requested role."""

    def __init__(self, role: str):
        super().__init__(f"No matching rule found for role {role!r}")
        self.role = role


# =============================================================================
# CONCURRENCY
# =============================================================================


class ConcurrencyError(WorkflowError):
    """Another handler already moved the conversation on."""
    pass
