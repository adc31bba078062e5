"""
Tokenizer for JSON text.

The lexer is total: every input either tokenizes completely or fails with
JsonSyntaxError carrying the byte offset (into the UTF-8 encoding of the
input) of the offending character.

Numbers are converted while lexing: literals without fraction or exponent
become ``int`` (arbitrary precision), the rest become ``float``. A
fractional literal too large for a double fails with NumericOverflow.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any

from refson.errors import JsonSyntaxError, NumericOverflow, TokenLimitExceeded


class TokenKind(enum.Enum):
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    COLON = ":"
    COMMA = ","
    STRING = "string"
    NUMBER = "number"
    TRUE = "true"
    FALSE = "false"
    NULL = "null"
    EOF = "end of input"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Any
    # Character index into the text; see Lexer.byte_offset()
    index: int


_PUNCTUATION = {
    "{": TokenKind.LBRACE,
    "}": TokenKind.RBRACE,
    "[": TokenKind.LBRACKET,
    "]": TokenKind.RBRACKET,
    ":": TokenKind.COLON,
    ",": TokenKind.COMMA,
}

_LITERALS = (
    ("true", TokenKind.TRUE, True),
    ("false", TokenKind.FALSE, False),
    ("null", TokenKind.NULL, None),
)

_WHITESPACE = " \t\n\r"

_NUMBER_RE = re.compile(r"-?(?:0|[1-9][0-9]*)(\.[0-9]+)?([eE][+-]?[0-9]+)?")

# Run of characters that need no unescaping
_PLAIN_RE = re.compile('[^"\\\\\x00-\x1f]*')

_HEX_RE = re.compile(r"[0-9a-fA-F]{4}")

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}


def decode_input(data: str | bytes | bytearray) -> str:
    """Accept text or UTF-8 bytes; a leading byte-order mark is dropped."""
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise JsonSyntaxError(f"Invalid UTF-8 ({e.reason})", offset=e.start) from None
    if data.startswith("\ufeff"):
        data = data[1:]
    return data


class Lexer:
    """
    Produces tokens one at a time from a complete text.

    Args:
        text: The JSON text.
        max_tokens: Optional cap on the number of tokens; exceeding it
            raises TokenLimitExceeded.
    """

    def __init__(self, text: str, max_tokens: int | None = None):
        self.text = text
        self.max_tokens = max_tokens
        self.pos = 0
        self.count = 0

    def byte_offset(self, index: int) -> int:
        """Convert a character index into a UTF-8 byte offset."""
        if self.text.isascii():
            return index
        return len(self.text[:index].encode("utf-8", "surrogatepass"))

    def error(self, message: str, index: int) -> JsonSyntaxError:
        return JsonSyntaxError(message, offset=self.byte_offset(index))

    def next_token(self) -> Token:
        text = self.text
        length = len(text)
        pos = self.pos
        while pos < length and text[pos] in _WHITESPACE:
            pos += 1

        if pos >= length:
            self.pos = pos
            return Token(TokenKind.EOF, None, pos)

        self.count += 1
        if self.max_tokens is not None and self.count > self.max_tokens:
            raise TokenLimitExceeded(
                f"Input exceeds max_tokens={self.max_tokens}",
                offset=self.byte_offset(pos),
            )

        char = text[pos]
        kind = _PUNCTUATION.get(char)
        if kind is not None:
            self.pos = pos + 1
            return Token(kind, char, pos)

        if char == '"':
            value, self.pos = self._string(pos)
            return Token(TokenKind.STRING, value, pos)

        if char == "-" or "0" <= char <= "9":
            value, self.pos = self._number(pos)
            return Token(TokenKind.NUMBER, value, pos)

        for word, kind, value in _LITERALS:
            if text.startswith(word, pos):
                self.pos = pos + len(word)
                return Token(kind, value, pos)

        raise self.error(f"Unexpected character {char!r}", pos)

    def _number(self, start: int) -> tuple[int | float, int]:
        match = _NUMBER_RE.match(self.text, start)
        if match is None:
            raise self.error("Malformed number", start)
        literal = match.group(0)
        end = match.end()

        if match.group(1) is None and match.group(2) is None:
            try:
                return int(literal), end
            except ValueError:
                # Beyond the interpreter's integer string conversion limit
                raise NumericOverflow(
                    f"Integer literal of {len(literal)} digits is too long",
                    offset=self.byte_offset(start),
                ) from None

        value = float(literal)
        if value in (float("inf"), float("-inf")):
            raise NumericOverflow(
                f"Number {literal} is out of double-precision range",
                offset=self.byte_offset(start),
            )
        return value, end

    def _string(self, start: int) -> tuple[str, int]:
        text = self.text
        length = len(text)
        pos = start + 1
        chunks: list[str] = []

        while True:
            match = _PLAIN_RE.match(text, pos)
            chunks.append(match.group(0))
            pos = match.end()

            if pos >= length:
                raise self.error("Unterminated string", start)

            char = text[pos]
            if char == '"':
                return "".join(chunks), pos + 1

            if char != "\\":
                raise self.error(f"Unescaped control character {char!r} in string", pos)

            if pos + 1 >= length:
                raise self.error("Unterminated string", start)

            escape = text[pos + 1]
            if escape in _SIMPLE_ESCAPES:
                chunks.append(_SIMPLE_ESCAPES[escape])
                pos += 2
                continue

            if escape != "u":
                raise self.error(f"Invalid escape '\\{escape}'", pos)

            code = self._hex(pos)
            pos += 6

            # Combine a surrogate pair; unpaired surrogates are kept as-is
            if 0xD800 <= code <= 0xDBFF and text.startswith("\\u", pos):
                low = self._hex(pos)
                if 0xDC00 <= low <= 0xDFFF:
                    code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
                    pos += 6
            chunks.append(chr(code))

    def _hex(self, pos: int) -> int:
        match = _HEX_RE.match(self.text, pos + 2)
        if match is None:
            raise self.error("Invalid \\u escape", pos)
        return int(match.group(0), 16)
