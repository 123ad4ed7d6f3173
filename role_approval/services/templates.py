"""Placeholder substitution for policy message bodies."""

from collections.abc import Mapping


def render_template(template: str, substitutions: Mapping[str, str]) -> str:
    """
    Replace ``${key}`` tokens in a message body.

    The template is processed line by line and every line is emitted with a
    trailing ``\\n``, so line endings come out normalised. Tokens without a
    substitution are left as they are; nothing is escaped.
    """
    tokens = [("${" + key + "}", value) for key, value in substitutions.items()]

    lines = []
    for line in template.splitlines():
        for token, value in tokens:
            line = line.replace(token, value)
        lines.append(line + "\n")
    return "".join(lines)
