"""Builds RoleRequests from the platform's role request e-mails."""

import re

from .errors import RoleRequestParseError
from .interfaces import InboundMessage, RoleRequest


# "alice has requested the Observer role in the foo project."
_SENTENCE = re.compile(
    r"^\s*(?P<user>\S+)\s+has\s+requested\s+(?:the\s+)?(?P<role>.+?)\s+role\s+"
    r"(?:in|for)\s+(?:the\s+)?(?P<project>[\w.-]+?)\s+project\b",
    re.IGNORECASE | re.MULTILINE,
)

# "Project: foo" / "Role: Observer" / "User: alice"
_FIELD = re.compile(
    r"^\s*(?P<key>project|role|user|username)\s*:\s*(?P<value>.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)


def parse_role_request(message: InboundMessage) -> RoleRequest:
    """
    Extract the project, role and user from a role request e-mail.

    Raises:
        RoleRequestParseError: the e-mail is not a role request
    """
    match = _SENTENCE.search(message.body) or _SENTENCE.search(message.subject)
    if match:
        return RoleRequest(
            project_name=match.group("project"),
            role_name=match.group("role").strip(),
            user_name=match.group("user"),
            source_message_id=message.message_id,
        )

    fields = {}
    for field_match in _FIELD.finditer(message.body):
        key = field_match.group("key").lower()
        key = "user" if key == "username" else key
        fields.setdefault(key, field_match.group("value"))

    missing = {"project", "role", "user"} - fields.keys()
    if missing:
        raise RoleRequestParseError(
            f"Message {message.message_id} is not a role request "
            f"(missing {', '.join(sorted(missing))})"
        )

    return RoleRequest(
        project_name=fields["project"],
        role_name=fields["role"],
        user_name=fields["user"],
        source_message_id=message.message_id,
    )
