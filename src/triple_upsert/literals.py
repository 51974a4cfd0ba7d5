"""
Lexical forms and escaping for literals and predicates.

Shared by the lookup query builder and the mutation encoder so both
write values the same way.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from triple_upsert.models import UID

_SIMPLE_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

_UNESCAPE_RE = re.compile(r'\\(u[0-9a-fA-F]{4}|["\\nrt])')
_UNESCAPES = {'"': '"', "\\": "\\", "n": "\n", "r": "\r", "t": "\t"}

# Characters that would break out of an <...> predicate reference
_BAD_PREDICATE_RE = re.compile(r'[<>"{}|^`\\\s]')


def lexical_form(value: Any) -> str:
    """Render a Python value as the lexical form sent to the store."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UID):
        return value.value
    return str(value)


def escape_string(text: str) -> str:
    """Escape quotes, backslashes and control characters."""
    out = []
    for ch in text:
        escaped = _SIMPLE_ESCAPES.get(ch)
        if escaped is not None:
            out.append(escaped)
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return "".join(out)


def unescape_string(text: str) -> str:
    """Reverse escape_string."""
    def _replace(match: re.Match) -> str:
        token = match.group(1)
        if token[0] == "u":
            return chr(int(token[1:], 16))
        return _UNESCAPES[token]

    return _UNESCAPE_RE.sub(_replace, text)


def quote_literal(value: Any) -> str:
    """Lexical form of ``value``, escaped and wrapped in double quotes."""
    return f'"{escape_string(lexical_form(value))}"'


def format_predicate(predicate: str) -> str:
    """
    Wrap a predicate in angle brackets.

    Raises:
        ValueError: If the predicate is empty or contains characters that
            cannot appear inside the brackets.
    """
    if not predicate or _BAD_PREDICATE_RE.search(predicate):
        raise ValueError(f"Invalid predicate: {predicate!r}")
    return f"<{predicate}>"
