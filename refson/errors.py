"""
Error kinds raised by refson.

Every failure surfaces to the caller of serialize()/deserialize() as a
subclass of RefsonError. Parse errors carry the byte offset into the input;
semantic errors carry the field path of the value being processed, e.g.
``$.employees[1].company``.
"""

from __future__ import annotations


class RefsonError(Exception):
    """
    Base class for all serialization/deserialization errors.

    Attributes:
        message: Human-readable description of the failure.
        offset: Byte offset into the input text (parse errors only).
        path: Field path of the offending value (semantic errors only).
    """

    def __init__(
        self,
        message: str,
        *,
        offset: int | None = None,
        path: str | None = None,
    ):
        self.message = message
        self.offset = offset
        self.path = path
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [self.message]
        if self.offset is not None:
            parts.append(f"at byte {self.offset}")
        if self.path is not None:
            parts.append(f"at {self.path}")
        if len(parts) == 1:
            return self.message
        return f"{parts[0]} ({', '.join(parts[1:])})"


class JsonSyntaxError(RefsonError):
    """Malformed input text, or a violation of the reserved-key rules."""


class NotSerializable(RefsonError):
    """A type lacks the serializable opt-in and is not a built-in value kind."""


class ConfigurationError(RefsonError):
    """A serializable type is declared inconsistently (e.g. wire-name collision)."""


class UnknownField(RefsonError):
    """An unknown key was found on the wire while in strict mode."""


class MissingField(RefsonError):
    """A field declared ``required`` is absent from the input."""


class DanglingReference(RefsonError):
    """A ``$ref`` names an identity that was never bound."""


class DuplicateId(RefsonError):
    """The same ``$id`` was declared twice within one document."""


class DepthExceeded(RefsonError):
    """Nesting went deeper than the configured ``max_depth``."""


class TokenLimitExceeded(RefsonError):
    """The input contains more tokens than the configured ``max_tokens``."""


class NumericOverflow(RefsonError):
    """A number cannot be stored in its target field without losing precision."""


class NonFiniteNumber(RefsonError):
    """NaN or an infinity was encountered; JSON cannot represent them."""


class Cancelled(RefsonError):
    """The caller's cancellation signal was observed."""
