"""
Serializer: walks an object graph and produces JSON text.

The Serializer consults the registry for every value it meets and the
reference tracker for every aggregate and sequence:

- The first occurrence of an aggregate is written in full, as
  ``{"$id": n, "$type": ..., field: value, ...}``. ``$type`` is left out
  when the expected type (from the field annotation, or the root's own
  type) already determines the class.
- Every later occurrence of the same object is written as ``{"$ref": n}``.
- Sequences are written as plain arrays. If a sequence turns out to be
  referenced again, its first occurrence is written as
  ``{"$id": n, "$values": [...]}`` instead.
- Plain mappings are written key by key, in insertion order (sorted when
  pretty-printing). They are not tracked.

Output is assembled as a tree first and rendered at the end, so a sequence
can be promoted to the ``$values`` form after its first occurrence has
already been visited.
"""

from __future__ import annotations

import math
from typing import Any

from refson.encoder import SequenceNode, render
from refson.errors import (
    Cancelled,
    DepthExceeded,
    JsonSyntaxError,
    NonFiniteNumber,
    NotSerializable,
    NumericOverflow,
)
from refson.options import CancelSignal, SerializeOptions
from refson.registry import (
    ANY,
    ID_KEY,
    REF_KEY,
    RESERVED_KEYS,
    TYPE_KEY,
    Descriptor,
    FieldDescriptor,
    TypeHint,
    ValueKind,
    analyze_hint,
    describe,
    value_kind,
)
from refson.tracker import ReferenceTracker

# Sequences that carry identity. Tuples and frozensets are immutable, so
# their identity is not observable and they are written by value.
_TRACKED_SEQUENCES = (list, set)

# Integers this small are always below the interpreter's digit limit
_SMALL_INT_BITS = 2000


def child_path(path: str, key) -> str:
    """Extend a field path with a mapping key, field name or index."""
    if isinstance(key, int):
        return f"{path}[{key}]"
    if isinstance(key, str) and key.isidentifier():
        return f"{path}.{key}"
    return f"{path}[{key!r}]"


class Serializer:
    """
    Serializes one object graph.

    A Serializer owns the reference tracker for a single call and must not
    be reused or shared between threads.

    Attributes:
        options: The SerializeOptions in effect.
        cancel: Optional cancellation signal, polled at every aggregate and
            element boundary.
        tracker: The ReferenceTracker for this call.
    """

    def __init__(
        self,
        options: SerializeOptions | None = None,
        cancel: CancelSignal | None = None,
    ):
        self.options = options or SerializeOptions()
        self.cancel = cancel
        self.tracker = ReferenceTracker()
        self._sequences: dict[int, SequenceNode] = {}

    def serialize(self, obj, expected_type: Any = None) -> str:
        """
        Serialize obj and return the JSON text.

        Args:
            obj: Root of the object graph.
            expected_type: Static type the reader will expect. Defaults to
                obj's own type, so the root never carries ``$type`` unless
                a base class is given here.
        """
        if expected_type is None:
            hint = analyze_hint(type(obj))
        else:
            hint = analyze_hint(expected_type)
        tree = self.encode(obj, hint, 0, "$")
        return render(tree, pretty=self.options.pretty)

    def encode(self, value, hint: TypeHint, depth: int, path: str):
        """Convert one value into its output tree node."""
        if depth > self.options.max_depth:
            raise DepthExceeded(
                f"Nesting exceeds max_depth={self.options.max_depth}", path=path
            )
        self._check_cancelled(path)

        kind = value_kind(value)

        if kind is ValueKind.NULL:
            return None
        if kind is ValueKind.BOOLEAN:
            return bool(value)
        if kind is ValueKind.INTEGER:
            if value.bit_length() > _SMALL_INT_BITS:
                self._check_int_digits(value, path)
            return value
        if kind is ValueKind.FLOATING:
            if not math.isfinite(value):
                raise NonFiniteNumber(f"Cannot serialize {value!r}", path=path)
            return value
        if kind is ValueKind.STRING:
            return value
        if kind is ValueKind.SEQUENCE:
            return self._encode_sequence(value, hint, depth, path)
        if kind is ValueKind.MAPPING:
            return self._encode_mapping(value, hint, depth, path)
        return self._encode_aggregate(value, hint, depth, path)

    def _encode_sequence(self, value, hint: TypeHint, depth: int, path: str):
        item_hint = hint.item or ANY

        if not isinstance(value, _TRACKED_SEQUENCES):
            return [
                self.encode(item, item_hint, depth + 1, child_path(path, i))
                for i, item in enumerate(value)
            ]

        identity, first_time = self.tracker.observe(value)
        if not first_time:
            self._sequences[identity].referenced = True
            return {REF_KEY: identity}

        node = SequenceNode(identity)
        self._sequences[identity] = node
        for i, item in enumerate(value):
            node.items.append(self.encode(item, item_hint, depth + 1, child_path(path, i)))
        return node

    def _encode_mapping(self, value: dict, hint: TypeHint, depth: int, path: str) -> dict:
        item_hint = hint.item or ANY

        for key in value:
            if not isinstance(key, str):
                raise JsonSyntaxError(
                    f"Mapping keys must be strings, got {type(key).__name__} {key!r}",
                    path=path,
                )
            if key in RESERVED_KEYS:
                raise NotSerializable(f"Mapping key {key!r} is reserved", path=path)

        items = sorted(value.items(), key=lambda kv: kv[0]) if self.options.pretty else value.items()
        return {
            key: self.encode(item, item_hint, depth + 1, child_path(path, key))
            for key, item in items
        }

    def _encode_aggregate(self, value, hint: TypeHint, depth: int, path: str) -> dict:
        try:
            descriptor = describe(type(value))
        except NotSerializable as e:
            raise NotSerializable(e.message, path=path) from None

        identity, first_time = self.tracker.observe(value)
        if not first_time:
            return {REF_KEY: identity}

        node: dict[str, Any] = {ID_KEY: identity}
        if hint.cls is not type(value):
            node[TYPE_KEY] = descriptor.wire_name

        for field in descriptor.fields:
            field_value = getattr(value, field.name, None)
            if field_value is None and not self._include_null(descriptor, field):
                continue
            node[field.wire_name] = self.encode(
                field_value, field.hint, depth + 1, child_path(path, field.wire_name)
            )
        return node

    def _include_null(self, descriptor: Descriptor, field: FieldDescriptor) -> bool:
        if field.include_if_null is not None:
            return field.include_if_null
        if descriptor.include_nulls is not None:
            return descriptor.include_nulls
        return self.options.include_nulls

    def _check_int_digits(self, value: int, path: str) -> None:
        try:
            int.__repr__(value)
        except ValueError:
            raise NumericOverflow(
                f"Integer of {value.bit_length()} bits exceeds the integer string conversion limit",
                path=path,
            ) from None

    def _check_cancelled(self, path: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled("Serialization cancelled", path=path)
