"""
Deserializer: parses JSON text and rebuilds the object graph.

Deserialization runs in three steps:

1. The parser turns the text into an intermediate tree (see parser.py).
2. The tree is materialized top-down. For every object node:
   - ``{"$ref": n}`` is replaced by the object bound to identity n. If n is
     allocated but not yet bound (its object is still being built), or is
     a permitted forward reference, a fix-up is recorded instead.
   - ``{"$id": n, "$values": [...]}`` becomes a list bound to n before its
     elements are filled, so elements may refer back to it.
   - ``{"$id": n, ...}`` becomes an aggregate of the expected class (or the
     class named by ``$type``). The instance is constructed and bound to n
     before its fields are filled, so cycles resolve in place.
   - any other object becomes a plain dict, unless the expected type is an
     aggregate class.
3. Once the root is complete, the recorded fix-ups are applied in the order
   they were recorded. A fix-up whose identity was never bound raises
   DanglingReference.

Values are coerced to their field annotations: integral floats into ``int``
fields, integers into ``float`` fields, and arrays into ``tuple``/``set``/
``frozenset`` fields. A coercion that would lose precision raises
NumericOverflow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable

from refson.errors import (
    Cancelled,
    DanglingReference,
    MissingField,
    NotSerializable,
    NumericOverflow,
    UnknownField,
)
from refson.options import CancelSignal, DeserializeOptions
from refson.parser import parse
from refson.registry import (
    ANY,
    ID_KEY,
    REF_KEY,
    TYPE_KEY,
    VALUES_KEY,
    Construction,
    Descriptor,
    TypeHint,
    ValueKind,
    analyze_hint,
    describe,
    resolve_type_path,
    resolve_wire_name,
)
from refson.serialize import child_path
from refson.tracker import PENDING, ReferenceTracker

logger = logging.getLogger(__name__)


def _field_setter(instance) -> Callable[[str, Any], None]:
    """Attribute setter for instance; frozen dataclasses are set the way their __init__ does."""
    params = getattr(type(instance), "__dataclass_params__", None)
    if params is not None and params.frozen:
        return partial(object.__setattr__, instance)
    return partial(setattr, instance)


@dataclass(eq=False)
class _Deferred:
    """A value that can only be produced after the root is materialized."""

    resolve: Callable[[], Any]
    path: str


class Deserializer:
    """
    Deserializes one document.

    A Deserializer owns the reference tracker and fix-up list for a single
    call and must not be reused or shared between threads.

    Attributes:
        options: The DeserializeOptions in effect.
        cancel: Optional cancellation signal, polled at every aggregate and
            element boundary.
        tracker: The ReferenceTracker for this call.
    """

    def __init__(
        self,
        options: DeserializeOptions | None = None,
        cancel: CancelSignal | None = None,
    ):
        self.options = options or DeserializeOptions()
        self.cancel = cancel
        self.tracker = ReferenceTracker()
        self._fixups: list[tuple[_Deferred, Callable[[Any], None]]] = []

    def deserialize(self, text: str | bytes, expected_type: Any = None):
        """
        Deserialize text into a value of expected_type.

        Args:
            text: A complete JSON document, as str or UTF-8 bytes.
            expected_type: The type the root should have: a class, a typing
                annotation such as ``list[Point]``, or a dotted import path
                such as ``"mypackage.models.Point"``. When omitted, objects
                without ``$type`` load as plain dicts.
        """
        if isinstance(expected_type, str):
            expected_type = resolve_type_path(expected_type)
        hint = analyze_hint(expected_type) if expected_type is not None else ANY

        tree = parse(
            text,
            max_depth=self.options.max_depth,
            max_tokens=self.options.max_tokens,
        )
        root = self.value(tree, hint, "$")
        self._apply_fixups()
        if isinstance(root, _Deferred):
            root = root.resolve()
        return root

    # =========================================================================
    # Materialization
    # =========================================================================

    def value(self, node, hint: TypeHint, path: str):
        """Materialize one tree node and coerce it to hint."""
        self._check_cancelled(path)
        if isinstance(node, dict):
            result = self._object(node, hint, path)
        elif isinstance(node, list):
            result = self._sequence(node, hint, path)
        else:
            result = node
        return self._coerce(result, hint, path)

    def _object(self, node: dict, hint: TypeHint, path: str):
        if REF_KEY in node:
            return self._reference(node[REF_KEY], path)

        identity = node.get(ID_KEY)
        if VALUES_KEY in node:
            return self._sequence(node[VALUES_KEY], hint, path, identity)

        cls = self._aggregate_class(node, hint, path)
        if cls is None:
            return self._mapping(node, hint, path, identity)
        return self._aggregate(node, cls, path, identity)

    def _reference(self, identity: int, path: str):
        target = self.tracker.resolve(identity)
        if target is not PENDING:
            return target

        if self.tracker.is_known(identity) or self.options.allow_forward_references:
            return _Deferred(partial(self._resolve_late, identity, path), path)

        raise DanglingReference(
            f"$ref {identity} does not refer to an earlier $id", path=path
        )

    def _resolve_late(self, identity: int, path: str):
        target = self.tracker.resolve(identity)
        if target is PENDING:
            raise DanglingReference(f"$ref {identity} was never bound", path=path)
        return target

    def _aggregate_class(self, node: dict, hint: TypeHint, path: str) -> type | None:
        base = hint.cls if hint.kind is ValueKind.AGGREGATE else None
        if TYPE_KEY in node:
            try:
                cls = resolve_wire_name(node[TYPE_KEY], base)
            except NotSerializable as e:
                raise NotSerializable(e.message, path=path) from None
            if base is not None and not issubclass(cls, base):
                raise NotSerializable(
                    f"$type {node[TYPE_KEY]!r} names {cls.__qualname__}, "
                    f"which is not a subclass of {base.__qualname__}",
                    path=path,
                )
            return cls
        return base

    def _sequence(self, items: list, hint: TypeHint, path: str, identity: int | None = None):
        if hint.kind is ValueKind.SEQUENCE:
            container = hint.cls
            item_hint = hint.item or ANY
        else:
            container = list
            item_hint = ANY

        result: list = []
        if identity is not None:
            if container is list:
                self.tracker.bind(identity, result, path)
            else:
                self.tracker.allocate(identity, path)

        late = False
        for i, item in enumerate(items):
            value = self.value(item, item_hint, child_path(path, i))
            if isinstance(value, _Deferred):
                late = True
                result.append(None)
                self._defer(value, partial(result.__setitem__, i))
            else:
                result.append(value)

        if container is list:
            return result

        def build():
            built = container(result)
            if identity is not None:
                self.tracker.bind(identity, built, path)
            return built

        if late:
            return _Deferred(build, path)
        return build()

    def _mapping(self, node: dict, hint: TypeHint, path: str, identity: int | None) -> dict:
        item_hint = (hint.item or ANY) if hint.kind is ValueKind.MAPPING else ANY

        result: dict = {}
        if identity is not None:
            self.tracker.bind(identity, result, path)

        for key, item in node.items():
            if key in (ID_KEY, TYPE_KEY):
                continue
            value = self.value(item, item_hint, child_path(path, key))
            if isinstance(value, _Deferred):
                result[key] = None
                self._defer(value, partial(result.__setitem__, key))
            else:
                result[key] = value
        return result

    def _aggregate(self, node: dict, cls: type, path: str, identity: int | None):
        try:
            descriptor = describe(cls)
        except NotSerializable as e:
            raise NotSerializable(e.message, path=path) from None

        if self.options.strict:
            self._check_unknown(node, descriptor, path)

        if descriptor.construction is Construction.POSITIONAL:
            return self._construct_positional(node, descriptor, path, identity)

        if descriptor.construction is Construction.ZERO_ARG:
            instance = cls()
            for field in descriptor.fields + descriptor.ignored:
                if not hasattr(instance, field.name):
                    setattr(instance, field.name, field.default())
        else:
            instance = cls.__new__(cls)
            for field in descriptor.fields + descriptor.ignored:
                setattr(instance, field.name, field.default())

        if identity is not None:
            self.tracker.bind(identity, instance, path)

        assign = _field_setter(instance)
        for field in descriptor.fields:
            field_path = child_path(path, field.wire_name)
            if field.wire_name not in node:
                if field.required:
                    raise MissingField(f"Required field {field.wire_name!r} is missing", path=field_path)
                continue
            value = self.value(node[field.wire_name], field.hint, field_path)
            if isinstance(value, _Deferred):
                self._defer(value, partial(assign, field.name))
            else:
                assign(field.name, value)
        return instance

    def _construct_positional(
        self, node: dict, descriptor: Descriptor, path: str, identity: int | None
    ):
        """Build the field values first, then call the constructor with them."""
        if identity is not None:
            self.tracker.allocate(identity, path)

        values: dict[str, Any] = {}
        deferred: dict[str, _Deferred] = {}
        for field in descriptor.fields:
            field_path = child_path(path, field.wire_name)
            if field.wire_name not in node:
                if field.required:
                    raise MissingField(f"Required field {field.wire_name!r} is missing", path=field_path)
                if field.name in descriptor.init_params:
                    values[field.name] = field.default()
                continue
            value = self.value(node[field.wire_name], field.hint, field_path)
            if isinstance(value, _Deferred):
                deferred[field.name] = value
                values[field.name] = None
            else:
                values[field.name] = value
        for field in descriptor.ignored:
            if field.name in descriptor.init_params:
                values[field.name] = field.default()

        instance = descriptor.cls(
            **{name: values.pop(name) for name in descriptor.init_params if name in values}
        )
        assign = _field_setter(instance)
        for name, value in values.items():
            assign(name, value)

        if identity is not None:
            self.tracker.bind(identity, instance, path)
        for name, value in deferred.items():
            self._defer(value, partial(assign, name))
        return instance

    def _check_unknown(self, node: dict, descriptor: Descriptor, path: str) -> None:
        for key in node:
            if key in (ID_KEY, TYPE_KEY):
                continue
            if key in descriptor.by_wire_name or key in descriptor.ignored_keys:
                continue
            raise UnknownField(
                f"Unknown field {key!r} for {descriptor.wire_name}",
                path=child_path(path, key),
            )

    # =========================================================================
    # Coercion
    # =========================================================================

    def _coerce(self, value, hint: TypeHint, path: str):
        if value is None or isinstance(value, _Deferred) or isinstance(value, bool):
            return value

        if hint.kind is ValueKind.INTEGER and type(value) is float:
            if not value.is_integer():
                raise NumericOverflow(f"{value!r} cannot be stored as an integer", path=path)
            return int(value)

        if hint.kind is ValueKind.FLOATING and type(value) is int:
            try:
                converted = float(value)
            except OverflowError:
                raise NumericOverflow(f"{value} is out of double-precision range", path=path) from None
            if int(converted) != value:
                raise NumericOverflow(
                    f"{value} cannot be stored as a double without losing precision",
                    path=path,
                )
            return converted

        return value

    # =========================================================================
    # Fix-ups
    # =========================================================================

    def _defer(self, deferred: _Deferred, assign: Callable[[Any], None]) -> None:
        self._fixups.append((deferred, assign))

    def _apply_fixups(self) -> None:
        if not self._fixups:
            return
        logger.debug("Applying %d fix-up(s)", len(self._fixups))
        for deferred, assign in self._fixups:
            assign(deferred.resolve())
        self._fixups.clear()

    def _check_cancelled(self, path: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled("Deserialization cancelled", path=path)
