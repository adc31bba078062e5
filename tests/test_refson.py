"""Tests for refson serialization/deserialization."""

import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Annotated

import pytest
from pydantic import ValidationError

from refson import (
    PRETTY,
    STRICT,
    Cancelled,
    DanglingReference,
    DepthExceeded,
    DuplicateId,
    Field,
    Ignore,
    JsonSyntaxError,
    MissingField,
    NonFiniteNumber,
    NotSerializable,
    NumericOverflow,
    SerializeOptions,
    TokenLimitExceeded,
    UnknownField,
    deserialize,
    serializable,
    serialize,
)


def roundtrip(obj, expected_type=None, **kwargs):
    """Serialize and deserialize an object, returning the result."""
    text = serialize(obj, **kwargs)
    return deserialize(text, expected_type if expected_type is not None else type(obj))


# ============================================================================
# Module-level models (wire names must resolve at deserialization time)
# ============================================================================


@serializable
class Point:
    x: int
    y: int

    def __init__(self, x=0, y=0):
        self.x = x
        self.y = y


@serializable
class Holder:
    a: Point | None = None
    b: Point | None = None


@serializable
class Account:
    id: Annotated[int, Field("user_id")] = 0


@serializable
class Login:
    name: str
    password: Annotated[str, Ignore()]


@serializable
class Company:
    name: str
    employees: "list[Employee]"

    def __init__(self, name=""):
        self.name = name
        self.employees = []


@serializable
@dataclass
class Employee:
    name: str
    company: Company | None = None


@serializable(name="shape")
class Shape:
    label: str = ""


@serializable(name="circle")
class Circle(Shape):
    radius: float = 0.0


@serializable(name="square")
class Square(Shape):
    side: float = 0.0


@serializable
class Drawing:
    shapes: list[Shape]

    def __init__(self):
        self.shapes = []


@serializable(include_nulls=False)
class Profile:
    nickname: str | None = None
    bio: Annotated[str | None, Field(include_if_null=True)] = None


@serializable
class Ordered:
    b: Annotated[int, Field(order=2)] = 0
    a: Annotated[int, Field(order=1)] = 0
    c: int = 0


@serializable
class Ticket:
    code: Annotated[str, Field(required=True)] = ""
    note: str = ""


@serializable
class Tagged:
    tags: set[str]
    coords: tuple[int, ...]
    flags: frozenset[int]

    def __init__(self):
        self.tags = set()
        self.coords = ()
        self.flags = frozenset()


@serializable
class Pair:
    left: list[int]
    right: list[int]

    def __init__(self):
        self.left = []
        self.right = []


@serializable
@dataclass(frozen=True)
class Coord:
    lat: float = 0.0
    lon: float = 0.0


@serializable
@dataclass(frozen=True)
class Link:
    name: str = ""
    other: "Link | None" = None


@serializable
@dataclass
class Team:
    name: str
    members: list[str] = field(default_factory=list)
    lead: Annotated[str, Ignore(reason="derived")] = "nobody"


@serializable
class Node:
    value: int = 0
    next: "Node | None" = None


class Plain:
    """Not marked serializable."""


# ============================================================================
# Tests
# ============================================================================


class TestPrimitives:
    """Test serialization of built-in value kinds."""

    def test_scalars(self):
        assert serialize(None) == "null"
        assert serialize(True) == "true"
        assert serialize(False) == "false"
        assert serialize(42) == "42"
        assert serialize(-7) == "-7"
        assert serialize("hi") == '"hi"'

    def test_float_shortest_form(self):
        assert serialize(0.1) == "0.1"
        assert serialize(2.0) == "2.0"
        assert serialize(-0.0) == "-0.0"
        assert deserialize(serialize(1e100)) == 1e100

    def test_big_integers(self):
        big = 10**30 + 1
        assert serialize(big) == str(big)
        assert deserialize(str(big)) == big
        assert deserialize("-9223372036854775809") == -(2**63) - 1

    def test_string_escapes(self):
        assert serialize('a"b\\c\x01\n') == '"a\\"b\\\\c\\u0001\\n"'
        assert serialize("é😀") == '"é😀"'

    def test_unpaired_surrogate_roundtrip(self):
        text = serialize("\ud800x")
        assert text == '"\\ud800x"'
        assert deserialize(text) == "\ud800x"

    def test_adjacent_surrogates_load_as_pair(self):
        text = serialize("\ud800\udc00")
        assert text == '"\\ud800\\udc00"'
        assert deserialize(text) == "\U00010000"

    def test_parse_escapes(self):
        assert deserialize(r'"é😀\/\t"') == "é😀/\t"


class TestCollections:
    """Test sequences and mappings."""

    def test_list(self):
        assert serialize([1, 2.5, None, "a"]) == '[1,2.5,null,"a"]'
        assert deserialize("[1,2.5,null,\"a\"]") == [1, 2.5, None, "a"]

    def test_empty(self):
        assert serialize([]) == "[]"
        assert serialize({}) == "{}"
        assert deserialize("[]") == []
        assert deserialize("{}") == {}

    def test_mapping_insertion_order(self):
        assert serialize({"b": 1, "a": 2}) == '{"b":1,"a":2}'

    def test_mapping_sorted_when_pretty(self):
        assert serialize({"b": 1, "a": 2}, pretty=True) == '{\n  "a": 2,\n  "b": 1\n}'

    def test_tuple_as_list_root(self):
        assert deserialize(serialize((1, 2)), tuple[int, ...]) == (1, 2)

    def test_non_string_key_rejected(self):
        with pytest.raises(JsonSyntaxError):
            serialize({1: "a"})

    def test_reserved_key_rejected(self):
        with pytest.raises(NotSerializable):
            serialize({"$id": 1})

    def test_typed_mapping_values(self):
        result = deserialize('{"p":{"x":1,"y":2}}', dict[str, Point])
        assert isinstance(result["p"], Point)
        assert result["p"].y == 2

    def test_container_fields(self):
        t = Tagged()
        t.tags = {"x"}
        t.coords = (1, 2)
        t.flags = frozenset({3})
        result = roundtrip(t)
        assert result.tags == {"x"} and isinstance(result.tags, set)
        assert result.coords == (1, 2) and isinstance(result.coords, tuple)
        assert result.flags == frozenset({3}) and isinstance(result.flags, frozenset)


class TestScenarios:
    """Concrete wire-format scenarios."""

    def test_leaf_aggregate(self):
        text = serialize(Point(1, 2))
        assert text == '{"$id":0,"x":1,"y":2}'
        result = deserialize(text, Point)
        assert isinstance(result, Point)
        assert (result.x, result.y) == (1, 2)

    def test_self_referential_list(self):
        lst = []
        lst.append(lst)
        text = serialize(lst)
        assert text == '{"$id":0,"$values":[{"$ref":0}]}'
        result = deserialize(text)
        assert len(result) == 1
        assert result[0] is result

    def test_shared_child(self):
        c = Point(1, 2)
        h = Holder()
        h.a = c
        h.b = c
        text = serialize(h)
        assert text == '{"$id":0,"a":{"$id":1,"x":1,"y":2},"b":{"$ref":1}}'
        result = deserialize(text, Holder)
        assert result.a is result.b
        assert result.a.x == 1

    def test_renamed_field(self):
        account = Account()
        account.id = 7
        text = serialize(account)
        assert text == '{"$id":0,"user_id":7}'
        assert deserialize(text, Account).id == 7

    def test_ignored_field(self):
        login = Login()
        login.name = "a"
        login.password = "x"
        text = serialize(login)
        assert text == '{"$id":0,"name":"a"}'
        result = deserialize('{"$id":0,"name":"a","password":"y"}', Login)
        assert result.name == "a"
        assert result.password == ""

    def test_non_finite_float(self):
        with pytest.raises(NonFiniteNumber):
            serialize(float("nan"))
        with pytest.raises(NonFiniteNumber) as exc_info:
            serialize(Point(float("inf"), 0))
        assert exc_info.value.path == "$.x"

    def test_dangling_reference(self):
        with pytest.raises(DanglingReference):
            deserialize('{"$ref":5}')
        with pytest.raises(DanglingReference) as exc_info:
            deserialize('[{"$ref":5}]')
        assert exc_info.value.path == "$[0]"


class TestReferenceCycles:
    """Test sharing and cycle preservation."""

    def make_company(self):
        company = Company("Acme")
        company.employees = [Employee("a", company), Employee("b", company)]
        return company

    def test_company_cycle(self):
        company = self.make_company()
        text = serialize(company)
        assert text == (
            '{"$id":0,"name":"Acme","employees":['
            '{"$id":2,"name":"a","company":{"$ref":0}},'
            '{"$id":3,"name":"b","company":{"$ref":0}}]}'
        )
        result = deserialize(text, Company)
        assert [e.name for e in result.employees] == ["a", "b"]
        assert all(e.company is result for e in result.employees)

    def test_cycle_through_constructor_arguments(self):
        company = self.make_company()
        text = serialize(company.employees[0])
        result = deserialize(text, Employee)
        assert isinstance(result, Employee)
        assert result.company.employees[0] is result
        assert result.company.employees[1].company is result.company

    def test_self_loop(self):
        node = Node()
        node.next = node
        text = serialize(node)
        assert text == '{"$id":0,"value":0,"next":{"$ref":0}}'
        result = deserialize(text, Node)
        assert result.next is result

    def test_linked_chain(self):
        head = Node()
        current = head
        for i in range(1, 5):
            current.next = Node()
            current = current.next
            current.value = i
        current.next = head
        result = roundtrip(head)
        values = []
        node = result
        for _ in range(5):
            values.append(node.value)
            node = node.next
        assert values == [0, 1, 2, 3, 4]
        assert node is result

    def test_shared_list(self):
        shared = [1, 2]
        pair = Pair()
        pair.left = shared
        pair.right = shared
        text = serialize(pair)
        assert text == '{"$id":0,"left":{"$id":1,"$values":[1,2]},"right":{"$ref":1}}'
        result = deserialize(text, Pair)
        assert result.left is result.right
        assert result.left == [1, 2]

    def test_mappings_are_not_tracked(self):
        shared = {"k": 1}
        result = deserialize(serialize([shared, shared]))
        assert result == [{"k": 1}, {"k": 1}]
        assert result[0] is not result[1]

    def test_cyclic_mapping_exceeds_depth(self):
        d = {}
        d["self"] = d
        with pytest.raises(DepthExceeded):
            serialize(d, max_depth=16)

    def test_forward_reference(self):
        text = '[{"$ref":1},{"$id":1,"x":1,"y":2}]'
        with pytest.raises(DanglingReference):
            deserialize(text, list[Point])
        result = deserialize(text, list[Point], allow_forward_references=True)
        assert result[0] is result[1]
        assert isinstance(result[0], Point)

    def test_forward_reference_never_bound(self):
        with pytest.raises(DanglingReference):
            deserialize('[{"$ref":9}]', allow_forward_references=True)

    def test_duplicate_id(self):
        with pytest.raises(DuplicateId):
            deserialize('[{"$id":1,"x":1,"y":2},{"$id":1,"x":3,"y":4}]', list[Point])


class TestObjects:
    """Test aggregates: construction, polymorphism and field policies."""

    def test_dataclass_defaults(self):
        team = Team("core", ["ann", "bob"], lead="ann")
        text = serialize(team)
        assert text == '{"$id":0,"name":"core","members":["ann","bob"]}'
        result = deserialize(text, Team)
        assert result == Team("core", ["ann", "bob"])
        assert result.lead == "nobody"

    def test_frozen_dataclass(self):
        coord = Coord(1.5, -2.25)
        assert roundtrip(coord) == coord

    def test_frozen_dataclass_self_reference(self):
        link = Link("a")
        object.__setattr__(link, "other", link)
        text = serialize(link)
        assert text == '{"$id":0,"name":"a","other":{"$ref":0}}'
        result = deserialize(text, Link)
        assert result.name == "a"
        assert result.other is result

    def test_polymorphic_field(self):
        circle = Circle()
        circle.label = "c"
        circle.radius = 1.5
        drawing = Drawing()
        drawing.shapes = [circle]
        text = serialize(drawing)
        assert text == '{"$id":0,"shapes":[{"$id":2,"$type":"circle","label":"c","radius":1.5}]}'
        result = deserialize(text, Drawing)
        assert isinstance(result.shapes[0], Circle)
        assert result.shapes[0].radius == 1.5

    def test_polymorphic_root(self):
        square = Square()
        square.side = 2.5
        text = serialize(square, expected_type=Shape)
        assert text == '{"$id":0,"$type":"square","label":"","side":2.5}'
        assert isinstance(deserialize(text, Shape), Square)

    def test_type_outside_expected_class(self):
        with pytest.raises(NotSerializable) as exc_info:
            deserialize('{"$id":0,"$type":"square","side":1}', Point)
        assert exc_info.value.path == "$"
        with pytest.raises(NotSerializable) as exc_info:
            deserialize('{"$id":0,"shapes":[{"$id":1,"$type":"Point","x":1,"y":2}]}', Drawing)
        assert exc_info.value.path == "$.shapes[0]"

    def test_untyped_aggregate_loads_as_dict(self):
        assert deserialize('{"$id":0,"x":1,"y":2}') == {"x": 1, "y": 2}

    def test_expected_type_by_path(self):
        result = deserialize('{"$id":0,"x":3,"y":4}', f"{__name__}.Point")
        assert isinstance(result, Point)
        assert result.x == 3

    def test_expected_type_bad_path(self):
        with pytest.raises(NotSerializable):
            deserialize("{}", "no_such_module.Thing")

    def test_not_serializable(self):
        with pytest.raises(NotSerializable):
            serialize(Plain())
        holder = Holder()
        holder.a = Plain()
        with pytest.raises(NotSerializable) as exc_info:
            serialize(holder)
        assert exc_info.value.path == "$.a"

    def test_missing_fields_take_defaults(self):
        result = deserialize('{"$id":0}', Point)
        assert (result.x, result.y) == (0, 0)
        login = deserialize("{}", Login)
        assert login.name == ""

    def test_field_order(self):
        assert serialize(Ordered()) == '{"$id":0,"c":0,"a":0,"b":0}'

    def test_required_field(self):
        with pytest.raises(MissingField) as exc_info:
            deserialize('{"$id":0,"note":"n"}', Ticket)
        assert exc_info.value.path == "$.code"
        assert deserialize('{"code":"A1"}', Ticket).code == "A1"


class TestNulls:
    """Test null inclusion precedence."""

    def test_include_nulls_option(self):
        assert serialize(Holder()) == '{"$id":0,"a":null,"b":null}'
        assert serialize(Holder(), include_nulls=False) == '{"$id":0}'

    def test_class_and_field_policy(self):
        assert serialize(Profile()) == '{"$id":0,"bio":null}'
        assert serialize(Profile(), include_nulls=True) == '{"$id":0,"bio":null}'
        profile = Profile()
        profile.nickname = "z"
        assert serialize(profile) == '{"$id":0,"nickname":"z","bio":null}'


class TestNumbers:
    """Test numeric coercion at target fields."""

    def test_integral_float_into_int(self):
        result = deserialize('{"x":1.0,"y":2e0}', Point)
        assert result.x == 1 and type(result.x) is int
        assert result.y == 2 and type(result.y) is int

    def test_fraction_into_int(self):
        with pytest.raises(NumericOverflow) as exc_info:
            deserialize('{"x":1.5,"y":0}', Point)
        assert exc_info.value.path == "$.x"

    def test_int_into_float(self):
        result = deserialize('{"radius":2}', Circle)
        assert result.radius == 2.0 and type(result.radius) is float

    def test_imprecise_int_into_float(self):
        with pytest.raises(NumericOverflow):
            deserialize('{"radius":%d}' % (2**53 + 1), Circle)
        with pytest.raises(NumericOverflow):
            deserialize('{"radius":1%s}' % ("0" * 400), Circle)

    def test_float_literal_overflow(self):
        with pytest.raises(NumericOverflow):
            deserialize("1e400")

    @pytest.mark.skipif(
        not hasattr(sys, "get_int_max_str_digits"), reason="no integer string conversion limit"
    )
    def test_integer_beyond_conversion_limit(self):
        with pytest.raises(NumericOverflow):
            serialize(10**5000)
        with pytest.raises(NumericOverflow) as exc_info:
            serialize([1, -(10**5000)])
        assert exc_info.value.path == "$[1]"


class TestOptions:
    """Test option presets, overrides and validation."""

    def test_pretty(self):
        assert serialize(Point(1, 2), PRETTY) == '{\n  "$id": 0,\n  "x": 1,\n  "y": 2\n}'
        assert serialize([1, [2]], pretty=True) == "[\n  1,\n  [\n    2\n  ]\n]"

    def test_strict(self):
        text = '{"$id":0,"x":1,"y":2,"z":3}'
        assert deserialize(text, Point).x == 1
        with pytest.raises(UnknownField) as exc_info:
            deserialize(text, Point, STRICT)
        assert exc_info.value.path == "$.z"

    def test_strict_accepts_ignored_keys(self):
        result = deserialize('{"name":"a","password":"y"}', Login, strict=True)
        assert result.name == "a"

    def test_max_depth(self):
        assert serialize([[[1]]], max_depth=3) == "[[[1]]]"
        with pytest.raises(DepthExceeded):
            serialize([[[[1]]]], max_depth=3)
        assert deserialize("[[[1]]]", max_depth=3) == [[[1]]]
        with pytest.raises(DepthExceeded) as exc_info:
            deserialize("[[[[1]]]]", max_depth=3)
        assert exc_info.value.offset == 4

    def test_max_tokens(self):
        assert deserialize("[1,2,3]", max_tokens=7) == [1, 2, 3]
        with pytest.raises(TokenLimitExceeded):
            deserialize("[1,2,3]", max_tokens=6)

    def test_invalid_options(self):
        with pytest.raises(ValidationError):
            SerializeOptions(max_depth=0)
        with pytest.raises(ValidationError):
            serialize(1, colour="red")
        with pytest.raises(ValidationError):
            deserialize("1", max_tokens=0)


class TestCancellation:
    """Test cooperative cancellation."""

    class TripAfter:
        def __init__(self, polls):
            self.polls = polls

        def is_set(self):
            self.polls -= 1
            return self.polls < 0

    def test_event_set_before_start(self):
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            serialize(Point(), cancel=event)
        with pytest.raises(Cancelled):
            deserialize("[1]", cancel=event)

    def test_cancel_mid_graph(self):
        with pytest.raises(Cancelled) as exc_info:
            serialize(list(range(10)), cancel=self.TripAfter(3))
        assert exc_info.value.path == "$[2]"

    def test_unset_event(self):
        event = threading.Event()
        assert deserialize(serialize([1, 2], cancel=event), cancel=event) == [1, 2]


class TestLaws:
    """Round-trip properties over representative graphs."""

    def graphs(self):
        company = Company("Acme")
        company.employees = [Employee("a", company)]
        shared = Point(5, 6)
        holder = Holder()
        holder.a = shared
        holder.b = shared
        node = Node()
        node.next = node
        return [
            (company, Company),
            (company.employees[0], Employee),
            (holder, Holder),
            (node, Node),
            (Coord(0.5, 0.25), Coord),
            ([holder, shared], list[Holder | Point]),
        ]

    def test_text_roundtrip(self):
        for graph, expected in self.graphs():
            text = serialize(graph)
            assert serialize(deserialize(text, expected), expected_type=expected) == text

    def test_parallel_calls_are_independent(self):
        graphs = [g for g, _ in self.graphs()] * 4
        expected = [serialize(g) for g in graphs]
        with ThreadPoolExecutor(max_workers=4) as pool:
            assert list(pool.map(serialize, graphs)) == expected
