"""
Configuration models for serialize() and deserialize().

Options are immutable Pydantic models, validated when constructed. The
top-level functions accept an options object plus keyword overrides:

    >>> from refson import serialize, SerializeOptions
    >>> serialize(obj, SerializeOptions(pretty=True))
    >>> serialize(obj, pretty=True, max_depth=32)  # same thing, inline

Pre-configured instances are provided for the common cases (PRETTY, STRICT).
"""

from __future__ import annotations

from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MAX_DEPTH = 256


class CancelSignal(Protocol):
    """Anything with an ``is_set()`` method, e.g. ``threading.Event``."""

    def is_set(self) -> bool: ...


class SerializeOptions(BaseModel):
    """
    Options controlling serialize().

    Attributes:
        pretty: Indent output by two spaces per level and sort the keys of
            plain mappings. Aggregate fields keep their declared order.
        include_nulls: Emit fields whose value is None. Overridden by the
            class-level ``include_nulls`` of @serializable and by the
            per-field ``include_if_null`` of Field.
        max_depth: Maximum nesting depth before DepthExceeded is raised.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pretty: bool = False
    include_nulls: bool = True
    max_depth: int = Field(default=DEFAULT_MAX_DEPTH, ge=1)


class DeserializeOptions(BaseModel):
    """
    Options controlling deserialize().

    Attributes:
        strict: Raise UnknownField for keys that match no declared field,
            instead of silently discarding them.
        max_depth: Maximum nesting depth of the input document.
        max_tokens: Optional cap on the number of lexical tokens.
        allow_forward_references: Accept ``$ref`` to an identity declared
            later in the document. Such references are resolved after the
            root is materialized.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    strict: bool = False
    max_depth: int = Field(default=DEFAULT_MAX_DEPTH, ge=1)
    max_tokens: int | None = Field(default=None, ge=1)
    allow_forward_references: bool = False


OptionsT = TypeVar("OptionsT", SerializeOptions, DeserializeOptions)


def merge_options(
    model: type[OptionsT], options: OptionsT | None, overrides: dict[str, Any]
) -> OptionsT:
    """Apply keyword overrides on top of an options object, re-validating."""
    if options is None:
        return model(**overrides)
    if not overrides:
        return options
    return model(**{**options.model_dump(), **overrides})


# Pretty-printed output with sorted mapping keys
PRETTY = SerializeOptions(pretty=True)

# Reject unknown keys on the wire
STRICT = DeserializeOptions(strict=True)
