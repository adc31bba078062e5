"""
Declarative configuration surface for user types.

Three markers are the only configuration points a user type has:

- @serializable: class decorator that opts a type in. Without it, instances
  of the class are rejected with NotSerializable.
- Field: per-field override, attached with typing.Annotated.
- Ignore: per-field suppression, attached with typing.Annotated.

Example:
    >>> from typing import Annotated
    >>> from refson import serializable, Field, Ignore
    >>>
    >>> @serializable(include_nulls=False)
    ... class User:
    ...     id: Annotated[int, Field("user_id")]
    ...     name: str
    ...     password: Annotated[str, Ignore(reason="secret")]

Fields are the class's annotated attributes, in declaration order, with the
fields of serializable base classes first. ClassVar annotations are skipped.
"""

from __future__ import annotations

from typing import Callable, TypeVar, overload

from pydantic import BaseModel, ConfigDict

T = TypeVar("T", bound=type)

# Attribute set on a class by @serializable. Looked up in the class's own
# __dict__ only, so subclasses must opt in themselves.
MARKER_ATTR = "__refson_serializable__"


class SerializableSpec(BaseModel):
    """
    Class-level settings recorded by @serializable.

    Attributes:
        name: Wire name used in ``$type``. Defaults to the class name.
        include_nulls: Class-level null policy; None defers to the options.
        comment: Free-form documentation, kept on the descriptor.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    include_nulls: bool | None = None
    comment: str = ""


class Field(BaseModel):
    """
    Per-field override, used as ``Annotated[T, Field(...)]``.

    Attributes:
        name: Wire name of the field; defaults to the attribute name.
        include_if_null: Emit the field when its value is None. None defers
            to the class and options policy.
        required: Deserialization fails with MissingField if the key is absent.
        order: Sort key for serialization order (smaller first). Fields with
            equal keys keep their declaration order.
    """

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    include_if_null: bool | None = None
    required: bool = False
    order: int = 0

    def __init__(self, name: str | None = None, **data):
        super().__init__(name=name, **data)


class Ignore(BaseModel):
    """
    Per-field suppression, used as ``Annotated[T, Ignore()]``.

    Ignored fields are never written, and matching keys on the wire are
    discarded without error even in strict mode.
    """

    model_config = ConfigDict(frozen=True)

    reason: str = "Excluded from serialization"


@overload
def serializable(cls: T) -> T: ...


@overload
def serializable(
    *,
    name: str | None = None,
    include_nulls: bool | None = None,
    comment: str = "",
) -> Callable[[T], T]: ...


def serializable(
    cls=None,
    *,
    name: str | None = None,
    include_nulls: bool | None = None,
    comment: str = "",
):
    """
    Mark a class as serializable.

    Usable bare (``@serializable``) or with arguments
    (``@serializable(name="point", include_nulls=False)``). The class is also
    registered under its wire name so that ``$type`` discriminators can be
    resolved when deserializing polymorphic fields.
    """

    def wrap(klass: T) -> T:
        spec = SerializableSpec(
            name=name or klass.__name__,
            include_nulls=include_nulls,
            comment=comment,
        )
        setattr(klass, MARKER_ATTR, spec)

        from refson.registry import register_wire_name

        register_wire_name(spec.name, klass)
        return klass

    if cls is None:
        return wrap
    return wrap(cls)


def serializable_spec(cls: type) -> SerializableSpec | None:
    """Return the class's own @serializable settings, or None."""
    spec = cls.__dict__.get(MARKER_ATTR)
    if isinstance(spec, SerializableSpec):
        return spec
    return None
