"""Best-effort repair of truncated JSON from streaming tool arguments.

During streaming, a model emits tool-argument JSON in fragments.  ``repair``
closes whatever is open so the text can be decoded at any cut point::

    >>> repair('{"name": "Alice", "age": 30, "city": "New Yor')
    '{"name": "Alice", "age": 30, "city": "New Yor"}'
    >>> repair('{"a": 1, "b": ')
    '{"a": 1}'

Supported repairs:

- unclosed strings, including a dangling ``\\`` or partial ``\\uXXXX``
- unclosed objects and arrays (mismatched closers are tolerated)
- trailing commas, anywhere outside string literals
- object keys with no value yet (``"b":`` or a lone ``"b"``)
- truncated ``true`` / ``false`` / ``null`` and dangling number suffixes

The result always closes but is not guaranteed to match the eventual
complete document (``"New Yor"`` stays ``"New Yor"``).  Already well-formed
input is returned unchanged.
"""

from __future__ import annotations

import json
import re
from typing import Any

_CLOSERS = {"{": "}", "[": "]"}
_OPENERS = {"}": "{", "]": "["}
_LITERALS = ("true", "false", "null")
_NUMBER_CHARS = frozenset("0123456789+-.eE")
_PARTIAL_UNICODE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def repair(text: str) -> str:
    """Return *text* with open structures closed so that it decodes as JSON."""
    if not text.strip():
        return "{}"

    in_string, escape_next, stack = _scan(text)

    out = text
    if in_string:
        out = _strip_partial_escape(out, escape_next) + '"'

    out = _trim_tail(out)
    out = _complete_scalar(out)
    out = _drop_incomplete_member(out)

    for opener in reversed(stack):
        out = _trim_tail(out) + _CLOSERS[opener]

    out = _remove_dangling_commas(out)

    # Trailing whitespace is the only thing trimmed from valid input.
    if out == text.rstrip():
        return text
    return out


def parse(text: str) -> Any:
    """Repair *text* and decode it.

    Raises ``json.JSONDecodeError`` when even the repaired text is not JSON
    (for example prose with no brackets at all).
    """
    return json.loads(repair(text))


def try_parse(text: str) -> Any | None:
    """Like :func:`parse` but returns ``None`` instead of raising."""
    try:
        return parse(text)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def _scan(text: str) -> tuple[bool, bool, list[str]]:
    """Single forward pass.  Returns ``(in_string, escape_next, open_brackets)``."""
    in_string = False
    escape_next = False
    stack: list[str] = []

    for ch in text:
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in _OPENERS and stack:
            opener = _OPENERS[ch]
            if stack[-1] == opener:
                stack.pop()
            else:
                # Mismatch: drop the innermost, then let this closer close
                # the enclosing bracket if it matches.
                stack.pop()
                if stack and stack[-1] == opener:
                    stack.pop()

    return in_string, escape_next, stack


def _enclosing_bracket(text: str) -> str | None:
    """Nearest unmatched ``{`` or ``[`` at the end of *text*."""
    _, _, stack = _scan(text)
    return stack[-1] if stack else None


def _string_start(text: str) -> int | None:
    """Index of the opening quote of the string literal that ends *text*."""
    i = len(text) - 2
    while i >= 0:
        if text[i] == '"':
            j = i - 1
            while j >= 0 and text[j] == "\\":
                j -= 1
            if (i - 1 - j) % 2 == 0:
                return i
        i -= 1
    return None


# ---------------------------------------------------------------------------
# Tail fixes
# ---------------------------------------------------------------------------

def _strip_partial_escape(text: str, escape_next: bool) -> str:
    if escape_next:
        return text[:-1]
    match = _PARTIAL_UNICODE.search(text)
    if match:
        start = match.start()
        j = start
        while j >= 0 and text[j] == "\\":
            j -= 1
        if (start - j) % 2 == 1:
            return text[:start]
    return text


def _trim_tail(text: str) -> str:
    text = text.rstrip()
    if text.endswith(","):
        text = text[:-1].rstrip()
    return text


def _complete_scalar(text: str) -> str:
    """Finish a truncated literal or drop a dangling number suffix."""
    i = len(text)
    while i > 0 and text[i - 1].isalpha():
        i -= 1
    word = text[i:]
    if word and (i == 0 or not (text[i - 1].isalnum() or text[i - 1] in '"_')):
        for literal in _LITERALS:
            if literal != word and literal.startswith(word):
                return text + literal[len(word):]
        return text

    i = len(text)
    while i > 0 and text[i - 1] in _NUMBER_CHARS:
        i -= 1
    token = text[i:]
    if not token or token[0] not in "-0123456789":
        return text
    if i > 0 and (text[i - 1].isalnum() or text[i - 1] == '"'):
        return text
    trimmed = token.rstrip("+-.eE")
    if trimmed == token:
        return text
    return _trim_tail(text[:i] + trimmed)


def _drop_incomplete_member(text: str) -> str:
    """Remove a key that has no value yet."""
    if text.endswith(":"):
        text = text[:-1].rstrip()
        if text.endswith('"'):
            start = _string_start(text)
            if start is not None:
                text = text[:start]
        text = _trim_tail(text)

    if text.endswith('"'):
        start = _string_start(text)
        if start is not None:
            before = text[:start].rstrip()
            if before.endswith("{") or (
                before.endswith(",") and _enclosing_bracket(before) == "{"
            ):
                text = _trim_tail(before)

    return text


def _remove_dangling_commas(text: str) -> str:
    """Drop every comma followed (after whitespace) by a closing bracket."""
    out: list[str] = []
    in_string = False
    escape_next = False
    n = len(text)

    for i, ch in enumerate(text):
        if escape_next:
            escape_next = False
        elif in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in _OPENERS:
                continue
        out.append(ch)

    return "".join(out)
