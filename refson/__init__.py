"""
refson - reference-preserving JSON serialization for Python object graphs.

This library converts graphs of annotated Python objects to JSON text and
back, preserving object identity: shared objects are written once and
referenced afterwards, so shared structure and cycles survive a round trip.

- Primitives (int, float, bool, str, None)
- Sequences (list, tuple, set, frozenset) and string-keyed dicts
- Classes opted in with @serializable, including dataclasses
- Polymorphic fields, via a ``$type`` discriminator

Basic Usage:
    >>> from refson import serialize, deserialize, serializable
    >>>
    >>> @serializable
    ... class Point:
    ...     x: int
    ...     y: int
    >>>
    >>> p = Point()
    >>> p.x, p.y = 1, 2
    >>> serialize(p)
    '{"$id":0,"x":1,"y":2}'
    >>> deserialize('{"$id":0,"x":1,"y":2}', Point).x
    1

Shared references and cycles:
    >>> @serializable
    ... class Node:
    ...     next: "Node | None" = None
    >>>
    >>> n = Node()
    >>> n.next = n
    >>> serialize(n)
    '{"$id":0,"next":{"$ref":0}}'
    >>> m = deserialize(serialize(n), Node)
    >>> m.next is m
    True

Field configuration:
    >>> from typing import Annotated
    >>> from refson import Field, Ignore
    >>>
    >>> @serializable(include_nulls=False)
    ... class User:
    ...     id: Annotated[int, Field("user_id", required=True)]
    ...     password: Annotated[str, Ignore(reason="secret")]

Options:
    >>> from refson import PRETTY, STRICT
    >>> serialize(p, PRETTY)                        # indented, sorted dict keys
    >>> serialize(p, pretty=True, max_depth=32)     # inline overrides
    >>> deserialize(text, Point, STRICT)            # unknown keys are errors

Every failure is raised as a subclass of RefsonError, carrying the byte
offset (parse errors) or the field path (semantic errors) of the problem.
"""

import logging
from typing import Any

from refson.annotations import Field, Ignore, serializable
from refson.deserialize import Deserializer
from refson.errors import (
    Cancelled,
    ConfigurationError,
    DanglingReference,
    DepthExceeded,
    DuplicateId,
    JsonSyntaxError,
    MissingField,
    NonFiniteNumber,
    NotSerializable,
    NumericOverflow,
    RefsonError,
    TokenLimitExceeded,
    UnknownField,
)
from refson.options import (
    PRETTY,
    STRICT,
    CancelSignal,
    DeserializeOptions,
    SerializeOptions,
    merge_options,
)
from refson.registry import Descriptor, FieldDescriptor, ValueKind, describe
from refson.serialize import Serializer
from refson.tracker import PENDING, ReferenceTracker

logging.getLogger(__name__).addHandler(logging.NullHandler())


def serialize(
    obj,
    options: SerializeOptions | None = None,
    *,
    expected_type: Any = None,
    cancel: CancelSignal | None = None,
    **overrides,
) -> str:
    """
    Serialize an object graph to JSON text.

    Args:
        obj: Root of the graph. Any built-in value kind, or an instance of
            a class marked with @serializable.
        options: Optional SerializeOptions (e.g. PRETTY).
        expected_type: Static type the reader will deserialize as. When it
            differs from obj's class, the root carries a ``$type``.
        cancel: Optional cancellation signal (anything with ``is_set()``,
            such as threading.Event).
        **overrides: Individual SerializeOptions fields, applied on top of
            options.

    Returns:
        The JSON text.

    Raises:
        NotSerializable: If the graph reaches a class without @serializable,
            or a mapping with a reserved key.
        JsonSyntaxError: If a mapping has a non-string key.
        NonFiniteNumber: If a float is NaN or infinite.
        DepthExceeded: If nesting exceeds ``max_depth``.
        Cancelled: If the cancellation signal is set.

    Example:
        >>> serialize([1, 2.5, {"a": None}])
        '[1,2.5,{"a":null}]'
        >>> print(serialize({"b": 1, "a": [True]}, pretty=True))
        {
          "a": [
            true
          ],
          "b": 1
        }
    """
    options = merge_options(SerializeOptions, options, overrides)
    return Serializer(options, cancel=cancel).serialize(obj, expected_type)


def deserialize(
    text: str | bytes,
    expected_type: Any = None,
    options: DeserializeOptions | None = None,
    *,
    cancel: CancelSignal | None = None,
    **overrides,
):
    """
    Deserialize JSON text back to an object graph.

    Args:
        text: JSON text as str, or UTF-8 bytes.
        expected_type: Type of the root: a class, an annotation such as
            ``list[Point]``, or a dotted import path such as
            ``"mypackage.models.Point"``. Without one, objects that carry no
            ``$type`` load as plain dicts.
        options: Optional DeserializeOptions (e.g. STRICT).
        cancel: Optional cancellation signal.
        **overrides: Individual DeserializeOptions fields, applied on top
            of options.

    Returns:
        The reconstructed root object. Identity is restored: every
        ``$ref`` to the same ``$id`` yields the same Python object.

    Raises:
        JsonSyntaxError: Malformed text or reserved-key misuse, with the
            byte offset of the problem.
        DanglingReference, DuplicateId: Broken identity structure.
        UnknownField: Unknown key in strict mode.
        MissingField: A required field is absent.
        NumericOverflow: A number does not fit its target field.
        DepthExceeded, TokenLimitExceeded: Resource limits exceeded.
        Cancelled: If the cancellation signal is set.

    Example:
        >>> deserialize('{"$id":0,"x":1,"y":2}', Point).y
        2
        >>> deserialize('{"$id":0,"$values":[{"$ref":0}]}')
        [[...]]
    """
    options = merge_options(DeserializeOptions, options, overrides)
    return Deserializer(options, cancel=cancel).deserialize(text, expected_type)


__all__ = [
    "serialize",
    "deserialize",
    "serializable",
    "Field",
    "Ignore",
    "describe",
    "Descriptor",
    "FieldDescriptor",
    "ValueKind",
    "ReferenceTracker",
    "PENDING",
    "Serializer",
    "Deserializer",
    "SerializeOptions",
    "DeserializeOptions",
    "CancelSignal",
    "PRETTY",
    "STRICT",
    "RefsonError",
    "JsonSyntaxError",
    "NotSerializable",
    "ConfigurationError",
    "UnknownField",
    "MissingField",
    "DanglingReference",
    "DuplicateId",
    "DepthExceeded",
    "TokenLimitExceeded",
    "NumericOverflow",
    "NonFiniteNumber",
    "Cancelled",
]
