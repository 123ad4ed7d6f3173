"""
Rule Evaluator: decides what to do with a role request.

Rules are tried in document order and the first one whose role list
contains the requested role decides; later rules are never looked at.
An action we don't recognise, or no matching rule at all, is an error:
we never approve or deny on a policy we can't read.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .errors import NoMatchingRuleError, UnknownActionError
from .policy import PolicyDocument, Rule
from .templates import render_template


logger = logging.getLogger(__name__)


class RuleAction(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    TALK = "talk"


@dataclass(frozen=True)
class Verdict:
    """Result of evaluating a policy against a request."""
    action: RuleAction
    body: str = ""
    rule: Rule | None = None

    @property
    def opens_dialogue(self) -> bool:
        return self.action == RuleAction.TALK


def find_rule(policy: PolicyDocument, role_name: str) -> Rule | None:
    """First rule whose role list contains the role, or None."""
    for rule in policy.rules:
        if rule.matches(role_name):
            return rule
    return None


def evaluate(
    policy: PolicyDocument,
    role_name: str,
    substitutions: Mapping[str, str],
) -> Verdict:
    """
    Evaluate a policy for a role.

    Raises:
        UnknownActionError: the matching rule's action is not approve/deny/talk
        NoMatchingRuleError: no rule mentions the role
    """
    logger.info("Determining the rule")
    rule = find_rule(policy, role_name)
    if rule is None:
        raise NoMatchingRuleError(role_name)

    try:
        action = RuleAction(rule.action)
    except ValueError:
        raise UnknownActionError(rule.action) from None

    if action == RuleAction.APPROVE:
        return Verdict(action=action, rule=rule)

    body = render_template(rule.body_template, substitutions)
    if action == RuleAction.TALK:
        body = body.strip()
    return Verdict(action=action, body=body, rule=rule)
