"""
JSON text emitter.

Renders the tree built by the serializer (plain dicts, lists, strings,
numbers, booleans, None and SequenceNode) into text, compact or indented.

Strings are escaped as follows: ``\\"`` and ``\\\\``, the short escapes
``\\b \\f \\n \\r \\t``, and ``\\uXXXX`` for every other control character and
for surrogate code points. Everything else, including non-ASCII text, is
written as-is.

A str holding a high surrogate followed directly by a low surrogate (for
example ``"\\ud800\\udc00"``) is written as two escapes, which JSON reads as
one escaped pair. It therefore loads as the single combined character
(``"\\U00010000"``), not as the two original code points.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from refson.registry import ID_KEY, VALUES_KEY

_ESCAPE_RE = re.compile('["\\\\\x00-\x1f\ud800-\udfff]')

_SHORT_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

INDENT = "  "


@dataclass(eq=False)
class SequenceNode:
    """
    A tracked sequence in the output tree.

    Rendered as a plain array unless a later occurrence of the same
    sequence was written as a reference, in which case it is rendered as
    ``{"$id": identity, "$values": [...]}`` so the reference can resolve.
    """

    identity: int
    items: list = field(default_factory=list)
    referenced: bool = False


def _escape_char(match: re.Match) -> str:
    char = match.group(0)
    short = _SHORT_ESCAPES.get(char)
    if short is not None:
        return short
    return "\\u%04x" % ord(char)


def encode_string(value: str) -> str:
    """Quote and escape a string."""
    return '"' + _ESCAPE_RE.sub(_escape_char, value) + '"'


def encode_number(value: int | float) -> str:
    """
    Canonical number text: decimal integers, and the shortest decimal that
    round-trips for floats. The caller must reject non-finite floats.
    """
    if isinstance(value, float):
        return float.__repr__(value)
    return int.__repr__(value)


def render(tree, pretty: bool = False) -> str:
    """Render an output tree to JSON text."""
    out: list[str] = []
    _render(tree, out, pretty, 0)
    return "".join(out)


def _render(node, out: list[str], pretty: bool, level: int) -> None:
    if node is None:
        out.append("null")
    elif node is True:
        out.append("true")
    elif node is False:
        out.append("false")
    elif isinstance(node, str):
        out.append(encode_string(node))
    elif isinstance(node, (int, float)):
        out.append(encode_number(node))
    elif isinstance(node, SequenceNode):
        if node.referenced:
            wrapper = {ID_KEY: node.identity, VALUES_KEY: node.items}
            _render_object(wrapper, out, pretty, level)
        else:
            _render_array(node.items, out, pretty, level)
    elif isinstance(node, list):
        _render_array(node, out, pretty, level)
    elif isinstance(node, dict):
        _render_object(node, out, pretty, level)
    else:
        raise TypeError(f"Cannot render {type(node).__name__} node")


def _render_array(items: list, out: list[str], pretty: bool, level: int) -> None:
    if not items:
        out.append("[]")
        return
    out.append("[")
    for i, item in enumerate(items):
        if i:
            out.append(",")
        if pretty:
            out.append("\n" + INDENT * (level + 1))
        _render(item, out, pretty, level + 1)
    if pretty:
        out.append("\n" + INDENT * level)
    out.append("]")


def _render_object(members: dict, out: list[str], pretty: bool, level: int) -> None:
    if not members:
        out.append("{}")
        return
    out.append("{")
    separator = ": " if pretty else ":"
    for i, (key, value) in enumerate(members.items()):
        if i:
            out.append(",")
        if pretty:
            out.append("\n" + INDENT * (level + 1))
        out.append(encode_string(key))
        out.append(separator)
        _render(value, out, pretty, level + 1)
    if pretty:
        out.append("\n" + INDENT * level)
    out.append("}")
