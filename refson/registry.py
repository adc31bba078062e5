"""
Type Descriptor Registry.

Discovers and caches per-type metadata for serializable classes:
- the ordered list of fields, with wire names and null policies
- the set of ignored fields
- the strategy used to construct an instance during deserialization

Descriptors are built lazily on first encounter and cached for the lifetime
of the process. They are immutable once published; concurrent describe()
calls for the same type observe the same instance (a thread that loses the
publication race discards its own candidate).

This module also owns:
- ValueKind, the closed set of runtime value kinds
- TypeHint, the analysis of a field annotation into an expected kind
- the wire-name table used to resolve ``$type`` discriminators
"""

from __future__ import annotations

import collections.abc
import dataclasses
import enum
import importlib
import inspect
import logging
import threading
import types
import typing
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, ClassVar, Mapping, Union

from refson.annotations import Field, Ignore, serializable_spec
from refson.errors import ConfigurationError, NotSerializable

logger = logging.getLogger(__name__)

# Keys with a reserved meaning on the wire
ID_KEY = "$id"
REF_KEY = "$ref"
TYPE_KEY = "$type"
VALUES_KEY = "$values"
RESERVED_KEYS = frozenset({ID_KEY, REF_KEY, TYPE_KEY, VALUES_KEY})


class ValueKind(str, enum.Enum):
    """Closed set of value kinds, determined per value at runtime."""

    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOATING = "floating"
    STRING = "string"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    AGGREGATE = "aggregate"
    REFERENCE = "reference"


class Construction(str, enum.Enum):
    """How the deserializer creates an aggregate instance."""

    # cls() followed by field assignment
    ZERO_ARG = "zero_arg"
    # cls(**field_values), called once the field values are materialized
    POSITIONAL = "positional"
    # cls.__new__(cls), then field defaults and assignment
    BLANK = "blank"


# Built-in value kinds, keyed by exact type
_BUILTIN_KINDS: dict[type, ValueKind] = {
    type(None): ValueKind.NULL,
    bool: ValueKind.BOOLEAN,
    int: ValueKind.INTEGER,
    float: ValueKind.FLOATING,
    str: ValueKind.STRING,
    list: ValueKind.SEQUENCE,
    tuple: ValueKind.SEQUENCE,
    set: ValueKind.SEQUENCE,
    frozenset: ValueKind.SEQUENCE,
    dict: ValueKind.MAPPING,
}

# Abstract collection origins that map onto a concrete container
_SEQUENCE_ORIGINS: dict[Any, type] = {
    list: list,
    tuple: tuple,
    set: set,
    frozenset: frozenset,
    collections.abc.Sequence: list,
    collections.abc.MutableSequence: list,
    collections.abc.Iterable: list,
    collections.abc.Collection: list,
    collections.abc.Set: frozenset,
    collections.abc.MutableSet: set,
}
_MAPPING_ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)

# Bases whose annotations are never fields
_SKIPPED_BASE_MODULES = frozenset({"builtins", "typing", "abc"})


# =============================================================================
# Type hint analysis
# =============================================================================


@dataclass(frozen=True)
class TypeHint:
    """
    What a field annotation says about the value it holds.

    Attributes:
        kind: Expected value kind, or None when the annotation does not
            determine one (Any, unions of several types, unannotated).
        cls: Concrete class: the container type for sequences, the
            aggregate class for aggregates.
        item: Element hint for sequences, value hint for mappings.
        nullable: The annotation admits None.
    """

    kind: ValueKind | None = None
    cls: Any = None
    item: TypeHint | None = None
    nullable: bool = False


ANY = TypeHint()


def analyze_hint(hint: Any) -> TypeHint:
    """Reduce a (resolved) annotation to a TypeHint."""
    if hint is None or hint is type(None):
        return TypeHint(kind=ValueKind.NULL, cls=type(None), nullable=True)
    if hint is Any or hint is object or isinstance(hint, (str, typing.TypeVar, typing.ForwardRef)):
        return ANY

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is Annotated:
        return analyze_hint(args[0])

    if origin is Union or origin is types.UnionType:
        members = [a for a in args if a is not type(None)]
        nullable = len(members) != len(args)
        if len(members) == 1:
            return dataclasses.replace(analyze_hint(members[0]), nullable=nullable)
        return TypeHint(nullable=nullable)

    if origin in _SEQUENCE_ORIGINS:
        item = ANY
        if origin is tuple:
            if len(args) == 2 and args[1] is Ellipsis:
                item = analyze_hint(args[0])
            elif args and all(a == args[0] for a in args):
                item = analyze_hint(args[0])
        elif args:
            item = analyze_hint(args[0])
        return TypeHint(kind=ValueKind.SEQUENCE, cls=_SEQUENCE_ORIGINS[origin], item=item)

    if origin in _MAPPING_ORIGINS:
        item = analyze_hint(args[1]) if len(args) == 2 else ANY
        return TypeHint(kind=ValueKind.MAPPING, cls=dict, item=item)

    if not isinstance(hint, type):
        return ANY

    if hint in _BUILTIN_KINDS:
        return TypeHint(kind=_BUILTIN_KINDS[hint], cls=hint)
    if hint in _SEQUENCE_ORIGINS:
        return TypeHint(kind=ValueKind.SEQUENCE, cls=_SEQUENCE_ORIGINS[hint], item=ANY)
    if hint in _MAPPING_ORIGINS:
        return TypeHint(kind=ValueKind.MAPPING, cls=dict, item=ANY)
    return TypeHint(kind=ValueKind.AGGREGATE, cls=hint)


def _is_classvar(hint: Any) -> bool:
    if hint is ClassVar or typing.get_origin(hint) is ClassVar:
        return True
    # Unresolved string annotations
    return isinstance(hint, str) and hint.startswith(("ClassVar", "typing.ClassVar"))


def _field_markers(hint: Any) -> tuple[Field | None, Ignore | None]:
    """Extract the Field/Ignore markers from an Annotated hint."""
    if typing.get_origin(hint) is not Annotated:
        return None, None
    field_marker = None
    ignore_marker = None
    for meta in hint.__metadata__:
        if isinstance(meta, Field):
            field_marker = meta
        elif isinstance(meta, Ignore):
            ignore_marker = meta
        elif meta is Ignore:
            ignore_marker = Ignore()
        elif meta is Field:
            field_marker = Field()
    return field_marker, ignore_marker


# =============================================================================
# Descriptors
# =============================================================================


@dataclass(frozen=True)
class FieldDescriptor:
    """
    Metadata for one field of a serializable class.

    Attributes:
        name: Attribute name on the instance.
        wire_name: Key used on the wire.
        hint: Expected value kind, from the annotation.
        ignore: Field is suppressed in both directions.
        include_if_null: Per-field null policy (None defers to the class).
        required: Missing key is an error when deserializing.
        order: Serialization sort key.
        default: Factory for the value used when the key is absent.
    """

    name: str
    wire_name: str
    hint: TypeHint
    ignore: bool = False
    include_if_null: bool | None = None
    required: bool = False
    order: int = 0
    default: Callable[[], Any] | None = None
    reason: str = ""


@dataclass(frozen=True)
class Descriptor:
    """
    Immutable per-type metadata.

    For built-in value kinds only ``cls``, ``kind`` and ``wire_name`` are
    meaningful. For aggregates, ``fields`` is in serialization order and
    excludes ignored fields, which are listed in ``ignored``.
    """

    cls: Any
    kind: ValueKind
    wire_name: str
    fields: tuple[FieldDescriptor, ...] = ()
    ignored: tuple[FieldDescriptor, ...] = ()
    include_nulls: bool | None = None
    comment: str = ""
    construction: Construction = Construction.BLANK
    init_params: tuple[str, ...] = ()
    by_wire_name: Mapping[str, FieldDescriptor] = field(
        default_factory=lambda: types.MappingProxyType({}), compare=False
    )
    ignored_keys: frozenset[str] = frozenset()

    @property
    def serializable(self) -> bool:
        return self.kind is ValueKind.AGGREGATE


_descriptors: dict[type, Descriptor] = {}
_descriptors_lock = threading.Lock()


def describe(cls: type) -> Descriptor:
    """
    Return the descriptor for a type, building and caching it on first use.

    Raises:
        NotSerializable: If cls is neither a built-in value kind nor marked
            with @serializable.
        ConfigurationError: If the class's fields are declared inconsistently
            (e.g. two fields share a wire name).
    """
    try:
        return _descriptors[cls]
    except KeyError:
        pass

    candidate = _build_descriptor(cls)

    # Publish; losers of a race discard their candidate
    with _descriptors_lock:
        return _descriptors.setdefault(cls, candidate)


def _build_descriptor(cls: type) -> Descriptor:
    if cls in _BUILTIN_KINDS:
        return Descriptor(cls=cls, kind=_BUILTIN_KINDS[cls], wire_name=cls.__name__)

    spec = serializable_spec(cls) if isinstance(cls, type) else None
    if spec is None:
        name = getattr(cls, "__qualname__", repr(cls))
        raise NotSerializable(
            f"{name} is not serializable.\n"
            f"Mark the class with @serializable to opt in."
        )

    fields, ignored = _collect_fields(cls)
    construction, init_params = _construction_strategy(cls, fields + ignored)

    descriptor = Descriptor(
        cls=cls,
        kind=ValueKind.AGGREGATE,
        wire_name=spec.name,
        fields=fields,
        ignored=ignored,
        include_nulls=spec.include_nulls,
        comment=spec.comment,
        construction=construction,
        init_params=init_params,
        by_wire_name=types.MappingProxyType({f.wire_name: f for f in fields}),
        ignored_keys=frozenset(f.wire_name for f in ignored),
    )
    logger.debug(
        "Built descriptor for %s: %d field(s), %d ignored, construction=%s",
        cls.__qualname__,
        len(fields),
        len(ignored),
        construction.value,
    )
    return descriptor


def _resolved_hints(cls: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(cls, localns={cls.__name__: cls}, include_extras=True)
    except NameError as e:
        raise ConfigurationError(
            f"Cannot resolve the field annotations of {cls.__qualname__}: {e}.\n"
            f"Field types must be importable from the class's module."
        ) from e


def _collect_fields(
    cls: type,
) -> tuple[tuple[FieldDescriptor, ...], tuple[FieldDescriptor, ...]]:
    """
    Walk the class hierarchy and build field descriptors.

    Supertype fields come first; a field redeclared in a subclass keeps the
    position of its first declaration but takes the subclass's annotation.
    """
    hints = _resolved_hints(cls)
    dataclass_fields = (
        {f.name: f for f in dataclasses.fields(cls)} if dataclasses.is_dataclass(cls) else {}
    )

    collected: dict[str, FieldDescriptor] = {}
    for klass in reversed(cls.__mro__):
        if klass.__module__ in _SKIPPED_BASE_MODULES:
            continue
        for name in inspect.get_annotations(klass):
            hint = hints.get(name, Any)
            if _is_classvar(hint):
                continue
            collected[name] = _field_descriptor(cls, name, hint, dataclass_fields.get(name))

    ordered = sorted(collected.values(), key=lambda f: f.order)
    fields = tuple(f for f in ordered if not f.ignore)
    ignored = tuple(f for f in ordered if f.ignore)

    seen: dict[str, str] = {}
    for f in fields:
        if f.wire_name in RESERVED_KEYS:
            raise ConfigurationError(
                f"Wire name {f.wire_name!r} is reserved",
                path=f"{cls.__qualname__}.{f.name}",
            )
        if f.wire_name in seen:
            raise ConfigurationError(
                f"Fields {seen[f.wire_name]!r} and {f.name!r} both use "
                f"wire name {f.wire_name!r}",
                path=cls.__qualname__,
            )
        seen[f.wire_name] = f.name

    return fields, ignored


def _field_descriptor(
    cls: type,
    name: str,
    hint: Any,
    dc_field: dataclasses.Field | None,
) -> FieldDescriptor:
    field_marker, ignore_marker = _field_markers(hint)
    type_hint = analyze_hint(hint)

    if ignore_marker is not None:
        return FieldDescriptor(
            name=name,
            wire_name=name,
            hint=type_hint,
            ignore=True,
            default=_default_factory(cls, name, type_hint, dc_field),
            reason=ignore_marker.reason,
        )

    field_marker = field_marker or Field()
    return FieldDescriptor(
        name=name,
        wire_name=field_marker.name or name,
        hint=type_hint,
        include_if_null=field_marker.include_if_null,
        required=field_marker.required,
        order=field_marker.order,
        default=_default_factory(cls, name, type_hint, dc_field),
    )


def _default_factory(
    cls: type,
    name: str,
    hint: TypeHint,
    dc_field: dataclasses.Field | None,
) -> Callable[[], Any]:
    """Value given to a field that is absent from the wire."""
    if dc_field is not None:
        if dc_field.default_factory is not dataclasses.MISSING:
            return dc_field.default_factory
        if dc_field.default is not dataclasses.MISSING:
            value = dc_field.default
            return lambda: value

    for klass in cls.__mro__:
        if name not in klass.__dict__:
            continue
        value = klass.__dict__[name]
        if not inspect.isroutine(value) and not hasattr(value, "__get__"):
            return lambda: value
        break

    if hint.nullable or hint.kind is None:
        return lambda: None
    if hint.kind is ValueKind.BOOLEAN:
        return lambda: False
    if hint.kind is ValueKind.INTEGER:
        return lambda: 0
    if hint.kind is ValueKind.FLOATING:
        return lambda: 0.0
    if hint.kind is ValueKind.STRING:
        return lambda: ""
    if hint.kind is ValueKind.SEQUENCE:
        return hint.cls
    if hint.kind is ValueKind.MAPPING:
        return dict
    return lambda: None


def _construction_strategy(
    cls: type, fields: tuple[FieldDescriptor, ...]
) -> tuple[Construction, tuple[str, ...]]:
    try:
        signature = inspect.signature(cls)
    except (TypeError, ValueError):
        return Construction.BLANK, ()

    # Frozen dataclasses reject field assignment after construction
    dc_params = getattr(cls, "__dataclass_params__", None)
    frozen = dc_params is not None and dc_params.frozen

    if not frozen:
        try:
            signature.bind()
            return Construction.ZERO_ARG, ()
        except TypeError:
            pass

    names = {f.name for f in fields}
    params = []
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        if param.kind is param.POSITIONAL_ONLY or param.name not in names:
            return Construction.BLANK, ()
        params.append(param.name)
    return Construction.POSITIONAL, tuple(params)


# =============================================================================
# Runtime value kinds
# =============================================================================


def value_kind(value: Any) -> ValueKind:
    """Classify a runtime value into one of the value kinds."""
    kind = _BUILTIN_KINDS.get(type(value))
    if kind is not None:
        return kind
    # Subclasses of built-ins (IntEnum, OrderedDict, ...)
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.FLOATING
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple, set, frozenset)):
        return ValueKind.SEQUENCE
    if isinstance(value, dict):
        return ValueKind.MAPPING
    return ValueKind.AGGREGATE


# =============================================================================
# Wire names
# =============================================================================

# Maps ``$type`` wire names to classes, filled by @serializable
_wire_names: dict[str, type] = {}


def register_wire_name(name: str, cls: type) -> None:
    """Register the class that a ``$type`` wire name resolves to."""
    existing = _wire_names.get(name)
    if existing is not None and existing is not cls:
        logger.debug(
            "Overwriting wire name %r: %s.%s -> %s.%s",
            name,
            existing.__module__,
            existing.__qualname__,
            cls.__module__,
            cls.__qualname__,
        )
    _wire_names[name] = cls
    logger.debug("Registered wire name %r for %s.%s", name, cls.__module__, cls.__qualname__)


def _subclasses(base: type):
    yield base
    for sub in base.__subclasses__():
        yield from _subclasses(sub)


def resolve_wire_name(name: str, base: type | None = None) -> type:
    """
    Resolve a ``$type`` discriminator to a class.

    Subclasses of the expected base are searched first, so that identical
    wire names in unrelated hierarchies do not collide; the global table is
    the fallback.
    """
    if base is not None:
        for candidate in _subclasses(base):
            spec = serializable_spec(candidate)
            if spec is not None and spec.name == name:
                return candidate

    try:
        return _wire_names[name]
    except KeyError:
        raise NotSerializable(
            f"Unknown $type {name!r}. Known types: {sorted(_wire_names)}"
        ) from None


def resolve_type_path(path: str) -> type:
    """
    Import a class from a dotted path such as ``"package.module.Class"``.

    Nested classes (``"module.Outer.Inner"``) are supported: the longest
    importable module prefix is imported and the rest is walked as
    attributes.
    """
    parts = path.split(".")
    for split in range(len(parts) - 1, 0, -1):
        module_name = ".".join(parts[:split])
        try:
            obj = importlib.import_module(module_name)
        except ModuleNotFoundError:
            continue
        try:
            for attr in parts[split:]:
                obj = getattr(obj, attr)
        except AttributeError:
            break
        if isinstance(obj, type):
            return obj
        break
    raise NotSerializable(f"Cannot resolve class from path {path!r}")
