"""
Reply Classifier: turns a reply body into a command.

Owners answer a clarification e-mail with ``##APPROVE`` or ``##DENY``.
In strict mode the marker has to sit on a line of its own, which keeps a
quoted copy of our own instructions ("reply with ##APPROVE to ...") from
counting as an answer. Lenient mode only looks at how the body starts.
"""

from ..models import ReplyCommand


APPROVE_MARKER = "##APPROVE"
DENY_MARKER = "##DENY"

_MARKERS = {
    APPROVE_MARKER: ReplyCommand.APPROVE,
    DENY_MARKER: ReplyCommand.DENY,
}


def classify_reply(body: str, strict: bool = True) -> ReplyCommand:
    """Return the first command found in a reply body."""
    if strict:
        for line in body.splitlines():
            command = _MARKERS.get(line.strip())
            if command is not None:
                return command
        return ReplyCommand.UNRECOGNIZED

    text = body.lstrip()
    for marker, command in _MARKERS.items():
        if text.startswith(marker):
            return command
    return ReplyCommand.UNRECOGNIZED
