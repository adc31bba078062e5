"""
Reference Tracker.

A per-call, bidirectional side-table between live objects and the integer
identities that stand for them on the wire. It is created at the start of
one serialize() or deserialize() call and dropped at the end; it never
crosses call boundaries and is not shared between threads.

Only aggregates and sequences are tracked. Primitives, strings, None and
plain mappings are never given an identity.

Serialization uses observe(); deserialization uses allocate()/bind() and
resolve(). An identity moves through the states

    Allocated -> Bound

and resolve() on an Allocated identity returns the PENDING token, which
the deserializer records as a fix-up to apply once the root is complete.
"""

from __future__ import annotations

from typing import Any

from refson.errors import DuplicateId


class _Pending:
    """Token returned by resolve() for identities not yet bound."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "PENDING"

    def __bool__(self) -> bool:
        return False


PENDING = _Pending()

# Marks an identity that has been allocated but not bound
_ALLOCATED = object()


class ReferenceTracker:
    """
    Assigns and resolves stable identities within one call.

    Identities are assigned in first-encounter order, starting at 0.

    Example:
        >>> tracker = ReferenceTracker()
        >>> point = Point(1, 2)
        >>> tracker.observe(point)
        (0, True)
        >>> tracker.observe(point)
        (0, False)
    """

    def __init__(self):
        # id(obj) -> identity
        self._ids: dict[int, int] = {}
        # identity -> obj (or _ALLOCATED)
        self._objects: dict[int, Any] = {}
        # Keep observed objects alive so their id() cannot be reused by a
        # new object while this call is running.
        self._refs: list = []
        self._next_id = 0

    def observe(self, obj) -> tuple[int, bool]:
        """
        Return ``(identity, first_time)`` for obj.

        The first observation of an object allocates the next identity and
        binds it; later observations return the same identity with
        ``first_time`` False.
        """
        key = id(obj)
        existing = self._ids.get(key)
        if existing is not None:
            return existing, False

        identity = self._next_id
        self._next_id += 1
        self._ids[key] = identity
        self._objects[identity] = obj
        self._refs.append(obj)
        return identity, True

    def identity_of(self, obj) -> int | None:
        """Return obj's identity if it has been observed or bound, else None."""
        return self._ids.get(id(obj))

    def allocate(self, identity: int, path: str | None = None) -> None:
        """
        Reserve an identity declared on the wire, before its object exists.

        Raises:
            DuplicateId: If the identity was already allocated in this call.
        """
        if identity in self._objects:
            raise DuplicateId(f"$id {identity} is declared more than once", path=path)
        self._objects[identity] = _ALLOCATED
        self._next_id = max(self._next_id, identity + 1)

    def bind(self, identity: int, obj, path: str | None = None) -> None:
        """
        Register a freshly constructed object against an identity.

        The identity may have been reserved with allocate(); binding an
        identity that is already bound raises DuplicateId.
        """
        current = self._objects.get(identity, _ALLOCATED)
        if current is not _ALLOCATED:
            raise DuplicateId(f"$id {identity} is declared more than once", path=path)
        self._objects[identity] = obj
        self._ids[id(obj)] = identity
        self._refs.append(obj)
        self._next_id = max(self._next_id, identity + 1)

    def resolve(self, identity: int):
        """
        Return the object bound to identity, or PENDING.

        PENDING is returned both for allocated-but-unbound identities and
        for identities never seen; use is_known() to tell them apart.
        """
        obj = self._objects.get(identity, _ALLOCATED)
        if obj is _ALLOCATED:
            return PENDING
        return obj

    def is_known(self, identity: int) -> bool:
        """True if identity has been allocated or bound."""
        return identity in self._objects

    def is_bound(self, identity: int) -> bool:
        return self._objects.get(identity, _ALLOCATED) is not _ALLOCATED

    def statistics(self) -> dict[str, int]:
        """Counts of tracked identities, for debugging."""
        bound = sum(1 for obj in self._objects.values() if obj is not _ALLOCATED)
        return {
            "tracked": len(self._objects),
            "bound": bound,
            "pending": len(self._objects) - bound,
        }

    def __len__(self) -> int:
        return len(self._objects)
