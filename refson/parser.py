"""
Recursive-descent parser from tokens to an intermediate tree.

The tree uses plain Python values: dict for objects (insertion ordered),
list for arrays, and str, int, float, bool or None for scalars. The
reserved keys are validated here, where byte offsets are still known:

- ``$ref``: non-negative integer, and the only key of its object.
- ``$id``: non-negative integer.
- ``$type``: string.
- ``$values``: array, allowed only next to ``$id``.
- none of them may appear twice in one object.

Other duplicate keys follow the usual last-one-wins rule.
"""

from __future__ import annotations

from refson.errors import DepthExceeded, JsonSyntaxError
from refson.lexer import Lexer, Token, TokenKind, decode_input
from refson.options import DEFAULT_MAX_DEPTH
from refson.registry import ID_KEY, REF_KEY, RESERVED_KEYS, TYPE_KEY, VALUES_KEY

_SCALARS = (
    TokenKind.STRING,
    TokenKind.NUMBER,
    TokenKind.TRUE,
    TokenKind.FALSE,
    TokenKind.NULL,
)


class Parser:
    """
    Parses one complete JSON document.

    Example:
        >>> Parser('{"a": [1, 2.5, null]}').parse()
        {'a': [1, 2.5, None]}
    """

    def __init__(
        self,
        text: str | bytes,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_tokens: int | None = None,
    ):
        self.lexer = Lexer(decode_input(text), max_tokens=max_tokens)
        self.max_depth = max_depth
        self.token: Token = self.lexer.next_token()

    def parse(self):
        """Parse the whole input; trailing content is an error."""
        value = self._value(0)
        if self.token.kind is not TokenKind.EOF:
            raise self._unexpected("end of input")
        return value

    def _advance(self) -> Token:
        token = self.token
        self.token = self.lexer.next_token()
        return token

    def _expect(self, kind: TokenKind) -> Token:
        if self.token.kind is not kind:
            raise self._unexpected(repr(kind.value))
        return self._advance()

    def _unexpected(self, expected: str) -> JsonSyntaxError:
        token = self.token
        if token.kind is TokenKind.EOF:
            found = "end of input"
        elif token.kind in (TokenKind.STRING, TokenKind.NUMBER):
            found = f"{token.kind.value} {token.value!r}"
        else:
            found = repr(token.kind.value)
        return self.lexer.error(f"Expected {expected}, found {found}", token.index)

    def _value(self, depth: int):
        self._check_depth(depth)
        kind = self.token.kind
        if kind in _SCALARS:
            return self._advance().value
        if kind is TokenKind.LBRACE:
            return self._object(depth)
        if kind is TokenKind.LBRACKET:
            return self._array(depth)
        raise self._unexpected("a value")

    def _check_depth(self, depth: int) -> None:
        if depth > self.max_depth:
            raise DepthExceeded(
                f"Nesting exceeds max_depth={self.max_depth}",
                offset=self.lexer.byte_offset(self.token.index),
            )

    def _array(self, depth: int) -> list:
        self._expect(TokenKind.LBRACKET)
        items = []
        if self.token.kind is TokenKind.RBRACKET:
            self._advance()
            return items
        while True:
            items.append(self._value(depth + 1))
            if self.token.kind is TokenKind.COMMA:
                self._advance()
                continue
            if self.token.kind is TokenKind.RBRACKET:
                self._advance()
                return items
            raise self._unexpected("',' or ']'")

    def _object(self, depth: int) -> dict:
        start = self._expect(TokenKind.LBRACE)
        members: dict = {}
        if self.token.kind is TokenKind.RBRACE:
            self._advance()
            return members
        while True:
            if self.token.kind is not TokenKind.STRING:
                # Only string keys exist on the wire
                raise self._unexpected("a string key")
            key_token = self._advance()
            key = key_token.value
            self._expect(TokenKind.COLON)
            value_index = self.token.index
            value = self._value(depth + 1)

            if key in RESERVED_KEYS:
                self._check_reserved(members, key, value, key_token, value_index)
            members[key] = value

            if self.token.kind is TokenKind.COMMA:
                self._advance()
                continue
            if self.token.kind is TokenKind.RBRACE:
                self._advance()
                break
            raise self._unexpected("',' or '}'")

        self._check_object_shape(members, start)
        return members

    def _check_reserved(self, members: dict, key: str, value, key_token: Token, value_index: int):
        if key in members:
            raise self.lexer.error(f"Duplicate {key} in object", key_token.index)
        if key in (ID_KEY, REF_KEY):
            if type(value) is not int or value < 0:
                raise self.lexer.error(f"{key} must be a non-negative integer", value_index)
        elif key == TYPE_KEY:
            if not isinstance(value, str):
                raise self.lexer.error(f"{key} must be a string", value_index)
        elif key == VALUES_KEY:
            if not isinstance(value, list):
                raise self.lexer.error(f"{key} must be an array", value_index)

    def _check_object_shape(self, members: dict, start: Token) -> None:
        if REF_KEY in members and len(members) != 1:
            raise self.lexer.error(f"{REF_KEY} must be the only key of its object", start.index)
        if VALUES_KEY in members:
            if ID_KEY not in members or len(members) != 2:
                raise self.lexer.error(
                    f"{VALUES_KEY} must appear together with {ID_KEY} and nothing else",
                    start.index,
                )


def parse(text: str | bytes, max_depth: int = DEFAULT_MAX_DEPTH, max_tokens: int | None = None):
    """Parse JSON text into the intermediate tree."""
    return Parser(text, max_depth=max_depth, max_tokens=max_tokens).parse()
