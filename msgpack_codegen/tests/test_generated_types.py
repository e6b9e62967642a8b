"""
Behavior of generated serializers for the richer node kinds: map key
strategies, polymorphic fields, generics, named identifiers, custom
capabilities, shims, times and floats.
"""

import dataclasses
import importlib
import io
import json
import struct
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import msgpack
import pytest

from msgpack_codegen.runtime import errors, wire

TEST_DATA = Path(__file__).parent / "test_data"


def roundtrip(unit, suffix, value):
    bts = bytes(getattr(unit, f"marshal_{suffix}")(value))
    left, rest = getattr(unit, f"unmarshal_{suffix}")(bts)
    assert rest == b""
    assert getattr(unit, f"msgsize_{suffix}")(value) >= len(bts)

    buf = io.BytesIO()
    getattr(unit, f"encode_{suffix}")(value, wire.Writer(buf))
    assert buf.getvalue() == bts
    assert getattr(unit, f"decode_{suffix}")(wire.Reader(io.BytesIO(bts))) == left
    return left


SHIM_KEYS = """
from dataclasses import dataclass, field

# msgp:maps shim
# msgp:shim Coord as:str using:coord_to_str/coord_from_str


@dataclass(frozen=True)
class Coord:
    x: int
    y: int


def coord_to_str(c):
    return f"{c.x},{c.y}"


def coord_from_str(s):
    x, y = s.split(",")
    return Coord(int(x), int(y))


@dataclass
class Grid:
    cells: dict[Coord, str] = field(default_factory=dict)
    names: dict[str, int] = field(default_factory=dict)
"""

BINARY_KEYS = """
from dataclasses import dataclass, field

from msgpack_codegen.runtime import int32

# msgp:maps binkeys


@dataclass
class Index:
    offsets: dict[int32, str] = field(default_factory=dict)
    weights: dict[float, bool] = field(default_factory=dict)
"""

AUTO_SHIM_KEYS = """
from dataclasses import dataclass, field

from msgpack_codegen.runtime import uint8

# msgp:maps autoshim


@dataclass
class Histogram:
    buckets: dict[int, int] = field(default_factory=dict)
    flags: dict[bool, str] = field(default_factory=dict)
    small: dict[uint8, float] = field(default_factory=dict)
"""

NATIVE_KEYS = """
from dataclasses import dataclass, field


@dataclass
class Counts:
    by_id: dict[int, int] = field(default_factory=dict)
    by_name: dict[str, int] = field(default_factory=dict)
"""


class TestMapKeys:
    """Map key strategies"""

    @pytest.mark.parametrize("count", [0, 1, 50])
    def test_shimmed_keys_roundtrip(self, compile_unit, count):
        unit = compile_unit(SHIM_KEYS)
        cells = {unit.Coord(i, i * 7 % 13 - 6): f"cell-{i}" for i in range(count)}
        grid = unit.Grid(cells=cells, names={"n": count})

        left = roundtrip(unit, "grid", grid)
        assert set(left.cells) == set(cells)
        assert left.cells == cells

    def test_shimmed_keys_wire_form(self, compile_unit):
        unit = compile_unit(SHIM_KEYS)
        grid = unit.Grid(cells={unit.Coord(1, -2): "a"})
        assert msgpack.unpackb(bytes(unit.marshal_grid(grid))) == {"cells": {"1,-2": "a"}, "names": {}}

    def test_binary_keys(self, compile_unit):
        unit = compile_unit(BINARY_KEYS)
        index = unit.Index(offsets={5: "five", -1: "minus"}, weights={0.25: True})
        wire_form = msgpack.unpackb(bytes(unit.marshal_index(index)), strict_map_key=False)
        assert wire_form["offsets"][struct.pack(">i", 5)] == "five"
        assert wire_form["weights"] == {struct.pack(">d", 0.25): True}
        assert roundtrip(unit, "index", index) == index

    def test_auto_shimmed_keys(self, compile_unit):
        unit = compile_unit(AUTO_SHIM_KEYS)
        histogram = unit.Histogram(buckets={10: 3, -4: 1}, flags={True: "on", False: "off"}, small={255: 0.5})
        wire_form = msgpack.unpackb(bytes(unit.marshal_histogram(histogram)))
        assert wire_form["buckets"] == {"10": 3, "-4": 1}
        assert wire_form["flags"] == {"true": "on", "false": "off"}
        assert roundtrip(unit, "histogram", histogram) == histogram

    def test_auto_shimmed_key_overflow(self, compile_unit):
        unit = compile_unit(AUTO_SHIM_KEYS)
        with pytest.raises(errors.IntOverflowError):
            unit.unmarshal_histogram(msgpack.packb({"small": {"256": 1.0}}))

    def test_unsupported_keys_skip_the_field(self, compile_unit):
        unit = compile_unit(NATIVE_KEYS)
        value = unit.Counts(by_id={1: 2}, by_name={"a": 1})
        assert msgpack.unpackb(bytes(unit.marshal_counts(value))) == {"by_name": {"a": 1}}
        assert unit._new_counts().by_id is None


POLYMORPHIC = """
from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, field


class Greeting(ABC):
    pass


@dataclass
class Hello(Greeting):
    foo: str = ""


@dataclass
class Bye(Greeting):
    msgp_tag = "bye"

    until: int = 0


class Stranger(Greeting):
    pass


@dataclass
class Circle:
    radius: float = 0.0


@dataclass
class Square:
    side: float = 0.0


@dataclass
class Envelope:
    body: Greeting | None = None
    items: list[Greeting] = field(default_factory=list)
    shape: Circle | Square | None = None
"""


class TestPolymorphism:
    """Closed sets of implementers are written as [discriminator, payload]"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(POLYMORPHIC)

    def test_two_element_array(self, unit):
        bts = bytes(unit.marshal_envelope(unit.Envelope(body=unit.Hello(foo="hello"))))
        wire_form = msgpack.unpackb(bts)
        assert wire_form["body"] == ["Hello", {"foo": "hello"}]
        assert json.dumps(wire_form["body"]) == '["Hello", {"foo": "hello"}]'

    def test_custom_discriminator(self, unit):
        bts = bytes(unit.marshal_envelope(unit.Envelope(body=unit.Bye(until=3))))
        assert msgpack.unpackb(bts)["body"] == ["bye", {"until": 3}]

    def test_roundtrip(self, unit):
        value = unit.Envelope(
            body=unit.Bye(until=9),
            items=[unit.Hello("a"), None, unit.Bye(1)],
            shape=unit.Square(side=2.5),
        )
        left = roundtrip(unit, "envelope", value)
        assert left == value
        assert type(left.items[2]) is unit.Bye

    def test_union_of_dataclasses(self, unit):
        bts = bytes(unit.marshal_envelope(unit.Envelope(shape=unit.Circle(1.0))))
        assert msgpack.unpackb(bts)["shape"] == ["Circle", {"radius": 1.0}]

    def test_unknown_discriminator(self, unit):
        bts = msgpack.packb({"body": ["Nope", {}]})
        with pytest.raises(errors.UnknownVariantError) as exc_info:
            unit.unmarshal_envelope(bts)
        assert exc_info.value.discriminator == "Nope"
        assert exc_info.value.path == ["body"]

    def test_unregistered_implementer_cannot_be_encoded(self, unit):
        with pytest.raises(errors.UnknownVariantError):
            unit.marshal_envelope(unit.Envelope(body=unit.Stranger()))

    def test_payload_must_be_a_pair(self, unit):
        with pytest.raises(errors.ArraySizeError):
            unit.unmarshal_envelope(msgpack.packb({"body": ["Hello"]}))


RECURSIVE = """
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Node:
    value: int = 0
    next: Node | None = None
    children: list[Node] = field(default_factory=list)
    index: dict[str, Node] = field(default_factory=dict)
"""

GENERICS = """
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")
N = TypeVar("N", int, float)


@dataclass
class Box(Generic[T]):
    item: T
    items: list[T] = field(default_factory=list)


@dataclass
class Shelf:
    ints: Box[int] = field(default_factory=lambda: Box(0))
    names: Box[str] = field(default_factory=lambda: Box(""))
    nested: Box[list[int]] = field(default_factory=lambda: Box([]))


@dataclass
class Number(Generic[N]):
    value: N


@dataclass
class BadShelf:
    text: Number[str] = field(default_factory=lambda: Number(""))
"""


class TestGraphShapes:
    """Recursive and generic types"""

    def test_recursive_roundtrip(self, compile_unit):
        unit = compile_unit(RECURSIVE)
        leaf = unit.Node(value=3)
        root = unit.Node(value=1, next=unit.Node(value=2, next=leaf), children=[unit.Node(4)], index={"leaf": leaf})
        assert roundtrip(unit, "node", root) == root

    def test_generic_instances_get_their_own_functions(self, compile_unit):
        unit = compile_unit(GENERICS)
        assert hasattr(unit.serializers, "marshal_box_int")
        assert hasattr(unit.serializers, "marshal_box_str")
        assert hasattr(unit.serializers, "marshal_box_list_int")
        assert not hasattr(unit.serializers, "marshal_box")

    def test_generic_roundtrip(self, compile_unit):
        unit = compile_unit(GENERICS)
        shelf = unit.Shelf(
            ints=unit.Box(1, [2, 3]),
            names=unit.Box("a", ["b"]),
            nested=unit.Box([1], [[2, 3], []]),
        )
        assert roundtrip(unit, "shelf", shelf) == shelf
        assert msgpack.unpackb(bytes(unit.marshal_box_int(unit.Box(1, [2])))) == {"item": 1, "items": [2]}

    def test_constraint_violation_is_reported(self, compile_unit):
        unit = compile_unit(GENERICS)
        errors_by_type = unit.generator.ir.errors
        assert "BadShelf" in errors_by_type
        assert "constraints" in errors_by_type["BadShelf"]
        assert not hasattr(unit.serializers, "marshal_bad_shelf")
        assert "BadShelf" in unit.code


IDENTIFIERS = """
from dataclasses import dataclass
from enum import IntEnum
from typing import NewType

from msgpack_codegen.runtime import uint8

UserID = NewType("UserID", str)


class Color(IntEnum):
    RED = 1
    GREEN = 2


class Tag(str):
    pass


@dataclass
class Account:
    owner: UserID = UserID("")
    color: Color = Color.RED
    tag: Tag = Tag("")
    level: uint8 = 0
"""


class TestIdentifiers:
    """NewTypes, enums and builtin subclasses"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(IDENTIFIERS)

    def test_roundtrip_keeps_types(self, unit):
        value = unit.Account(owner=unit.UserID("u-1"), color=unit.Color.GREEN, tag=unit.Tag("t"), level=200)
        left = roundtrip(unit, "account", value)
        assert left == value
        assert left.color is unit.Color.GREEN
        assert type(left.tag) is unit.Tag

    def test_enum_root_functions(self, unit):
        assert unit.marshal_color(unit.Color.GREEN) == b"\x02"
        assert unit.unmarshal_color(b"\x02") == (unit.Color.GREEN, b"")
        assert unit._new_color() is unit.Color.RED

    def test_newtype_root_functions(self, unit):
        assert unit.unmarshal_user_id(bytes(unit.marshal_user_id(unit.UserID("x")))) == ("x", b"")

    def test_invalid_enum_value(self, unit):
        with pytest.raises(errors.ConversionError) as exc_info:
            unit.unmarshal_account(msgpack.packb({"color": 9}))
        assert exc_info.value.path == ["color"]

    def test_sized_int_overflow(self, unit):
        with pytest.raises(errors.IntOverflowError):
            unit.marshal_account(unit.Account(level=300))
        with pytest.raises(errors.IntOverflowError) as exc_info:
            unit.unmarshal_account(msgpack.packb({"level": 300}))
        assert exc_info.value.path == ["level"]


CAPABILITIES = """
from dataclasses import dataclass, field
from decimal import Decimal

from msgpack_codegen.runtime import sizes, wire

# msgp:intercept Money using:MoneyCodec
# msgp:textmarshal Semver as:string
# msgp:binmarshal Digest
# msgp:shim Decimal as:str using:str/Decimal witherr:true


@dataclass
class Money:
    cents: int = 0


class MoneyCodec:
    def encode_msg(self, value, en):
        en.write_int(value.cents)

    def decode_msg(self, dc):
        return Money(dc.read_int())

    def marshal_msg(self, value, b):
        en = wire.Appender(b)
        en.write_int(value.cents)
        return en.buffer

    def unmarshal_msg(self, bts):
        dc = wire.BytesReader(bts)
        return Money(dc.read_int()), dc.remaining()

    def msgsize(self, value):
        return sizes.INT_SIZE


class Semver:
    def __init__(self, major=0, minor=0):
        self.major = major
        self.minor = minor

    def __eq__(self, other):
        return isinstance(other, Semver) and (self.major, self.minor) == (other.major, other.minor)

    def marshal_text(self):
        return f"{self.major}.{self.minor}"

    @classmethod
    def unmarshal_text(cls, text):
        major, minor = text.split(".")
        return cls(int(major), int(minor))


class Digest:
    def __init__(self, raw=b""):
        self.raw = raw

    def __eq__(self, other):
        return isinstance(other, Digest) and self.raw == other.raw

    def marshal_binary(self):
        return self.raw

    @classmethod
    def unmarshal_binary(cls, data):
        return cls(data)


class Stamp:
    def __init__(self, ticks=0):
        self.ticks = ticks

    def __eq__(self, other):
        return isinstance(other, Stamp) and self.ticks == other.ticks

    def encode_msg(self, en):
        en.write_int(self.ticks)

    @classmethod
    def decode_msg(cls, dc):
        return cls(dc.read_int())

    def marshal_msg(self, b):
        en = wire.Appender(b)
        en.write_int(self.ticks)
        return en.buffer

    @classmethod
    def unmarshal_msg(cls, bts):
        dc = wire.BytesReader(bts)
        return cls(dc.read_int()), dc.remaining()

    def msgsize(self):
        return sizes.INT_SIZE


@dataclass
class Wallet:
    balance: Money | None = None
    price: Money = field(default_factory=Money)
    version: Semver | None = None
    digest: Digest | None = None
    stamp: Stamp | None = None
    amount: Decimal | None = None
"""


class TestCapabilities:
    """Interception, self-serializing types and shims"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(CAPABILITIES)

    def test_wire_form(self, unit):
        value = unit.Wallet(
            balance=unit.Money(250),
            price=unit.Money(99),
            version=unit.Semver(1, 2),
            digest=unit.Digest(b"\xde\xad"),
            stamp=unit.Stamp(42),
            amount=Decimal("12.50"),
        )
        assert msgpack.unpackb(bytes(unit.marshal_wallet(value))) == {
            "balance": 250,
            "price": 99,
            "version": "1.2",
            "digest": b"\xde\xad",
            "stamp": 42,
            "amount": "12.50",
        }

    def test_roundtrip(self, unit):
        value = unit.Wallet(
            balance=unit.Money(1),
            price=unit.Money(2),
            version=unit.Semver(3, 4),
            digest=unit.Digest(b"x"),
            stamp=unit.Stamp(5),
            amount=Decimal("-0.01"),
        )
        assert roundtrip(unit, "wallet", value) == value

    def test_nil_values(self, unit):
        value = unit.Wallet(price=None)
        left = roundtrip(unit, "wallet", value)
        assert left == value

    def test_capability_types_have_no_generated_functions(self, unit):
        for name in ("money", "semver", "digest", "stamp", "decimal", "money_codec"):
            assert not hasattr(unit.serializers, f"marshal_{name}")

    def test_fallible_shim_failure(self, unit):
        with pytest.raises(errors.ConversionError) as exc_info:
            unit.unmarshal_wallet(msgpack.packb({"amount": "twelve"}))
        assert exc_info.value.path == ["amount"]

    def test_external_type_without_directive(self, compile_unit):
        unit = compile_unit(
            """
            from dataclasses import dataclass
            from decimal import Decimal


            @dataclass
            class Invoice:
                amount: Decimal | None = None


            @dataclass
            class Note:
                text: str = ""
            """
        )
        assert "replace, shim or intercept" in unit.generator.ir.errors["Invoice"]
        assert hasattr(unit.serializers, "marshal_note")


TIMES = """
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class Event:
    at: datetime | None = None
    created: datetime = field(default_factory=lambda: datetime(1, 1, 1, tzinfo=timezone.utc))
"""

FLOATS = """
from dataclasses import dataclass

from msgpack_codegen.runtime import float32


@dataclass
class Reading:
    value: float = 0.0
    exact: float32 = 0.0
"""


class TestTimesAndFloats:
    """Time representations and float narrowing"""

    AT = datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=timezone.utc)

    def test_default_time_extension(self, compile_unit):
        unit = compile_unit(TIMES)
        value = unit.Event(at=self.AT)
        wire_form = msgpack.unpackb(bytes(unit.marshal_event(value)))
        assert isinstance(wire_form["at"], msgpack.ExtType)
        assert wire_form["at"].code == wire.TIME_EXT
        assert roundtrip(unit, "event", value) == value

    def test_newtime_uses_timestamps(self, compile_unit):
        unit = compile_unit("# msgp:newtime\n" + TIMES)
        value = unit.Event(at=self.AT)
        wire_form = msgpack.unpackb(bytes(unit.marshal_event(value)))
        assert isinstance(wire_form["at"], msgpack.Timestamp)
        assert wire_form["at"].to_datetime() == self.AT
        assert roundtrip(unit, "event", value) == value

    def test_naive_time_comes_back_in_utc(self, compile_unit):
        unit = compile_unit(TIMES)
        naive = datetime(2020, 1, 2, 3, 4, 5, 6)
        left = roundtrip(unit, "event", unit.Event(at=naive))
        assert left.at.tzinfo is timezone.utc
        assert left.at == naive.replace(tzinfo=timezone.utc)

    def test_zero_time_roundtrip(self, compile_unit):
        unit = compile_unit(TIMES)
        assert roundtrip(unit, "event", unit.Event()).created == wire.ZERO_TIME

    def test_compact_floats(self, compile_unit):
        unit = compile_unit("# msgp:compactfloats\n" + FLOATS)
        bts = bytes(unit.marshal_reading(unit.Reading(value=0.5, exact=0.5)))
        assert bts == msgpack.packb({"value": 0.5, "exact": 0.5}, use_single_float=True)

        precise = unit.Reading(value=0.1)
        bts = bytes(unit.marshal_reading(precise))
        assert b"\xcb" in bts
        assert unit.unmarshal_reading(bts)[0] == precise

    def test_floats_are_wide_by_default(self, compile_unit):
        unit = compile_unit(FLOATS)
        bts = bytes(unit.marshal_reading(unit.Reading(value=0.5)))
        assert msgpack.packb(0.5) in bts


STRUCTURE = """
from __future__ import annotations

from dataclasses import dataclass, field
from typing import NewType

# msgp:tag json Record
# msgp:ignore Secret regex:Tmp.*
# msgp:replace Celsius with:float
# msgp:clearomitted

Celsius = NewType("Celsius", float)


@dataclass
class Audit:
    created_by: str = ""
    version: int = 0


@dataclass
class Document:
    title: str = ""
    audit: Audit = field(default_factory=Audit, metadata={"msg": ",flatten"})
    version: int = 0
    draft: str = field(default="", metadata={"msg": "-"})


@dataclass
class Record:
    name: str = field(default="", metadata={"json": "n", "msg": "ignored"})
    temp: Celsius = 0.0


@dataclass
class Secret:
    key: str = ""


@dataclass
class TmpBuffer:
    data: bytes = b""


@dataclass
class Vault:
    secret: Secret | None = None
"""


class TestStructureDirectives:
    """flatten, tag, ignore, replace and clearomitted"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(STRUCTURE)

    def test_flattened_fields_are_spliced(self, unit):
        value = unit.Document(title="t", audit=unit.Audit("me", 2), version=5, draft=None)
        bts = bytes(unit.marshal_document(value))
        assert msgpack.unpackb(bts) == {"title": "t", "created_by": "me", "version": 5}
        assert bts[0] == 0x84

    def test_shadowed_field_last_wins(self, unit):
        value = unit.Document(title="t", audit=unit.Audit("me", 2), version=5)
        left, _ = unit.unmarshal_document(bytes(unit.marshal_document(value)))
        assert left.version == 5
        assert left.audit.version == 0
        assert left.audit.created_by == "me"
        assert left.draft is None

    def test_custom_tag(self, unit):
        value = unit.Record(name="x", temp=21.5)
        assert msgpack.unpackb(bytes(unit.marshal_record(value))) == {"n": "x", "temp": 21.5}
        assert roundtrip(unit, "record", value) == value

    def test_replaced_type_has_no_functions(self, unit):
        assert not hasattr(unit.serializers, "marshal_celsius")

    def test_ignored_types(self, unit):
        ir = unit.generator.ir
        assert "Secret" in ir.skipped
        assert "TmpBuffer" in ir.skipped
        assert "ignored" in ir.errors["Vault"]
        assert not hasattr(unit.serializers, "marshal_secret")
        assert not hasattr(unit.serializers, "marshal_tmp_buffer")

    def test_clear_omitted_resets_missing_fields(self, unit):
        target = unit.Document(title="old", audit=unit.Audit("someone", 1), version=3)
        left, _ = unit.unmarshal_document(msgpack.packb({"version": 9}), target)
        assert left is target
        assert target.version == 9
        assert target.title == ""
        assert target.audit.created_by == ""


class TestFixtureUnit:
    """End to end over the fixture source unit"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit((TEST_DATA / "geometry.py").read_text(encoding="utf-8"))

    def test_drawing_roundtrip(self, unit):
        drawing = unit.Drawing(
            name="plan",
            owner=unit.UserID("u1"),
            color=unit.Color.BLUE,
            shapes=[
                unit.Circle(unit.Vec2(1.5, -2.0), 3.25),
                unit.Polygon([unit.Vec2(0.0, 0.0), unit.Vec2(1.0, 0.5)]),
            ],
            layers={"base": 1, "top": -2},
            thumbnail=b"\x89PNG",
            created=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            opacity=128,
            parent=unit.Drawing(name="root", notes=None),
            notes="local",
        )
        left = roundtrip(unit, "drawing", drawing)
        assert left == dataclasses.replace(drawing, notes=None)

        wire_form = msgpack.unpackb(bytes(unit.marshal_drawing(drawing)))
        assert wire_form["shapes"][0] == ["Circle", {"center": [1.5, -2.0], "radius": 3.25}]
        assert wire_form["shapes"][1][0] == "poly"
        assert "notes" not in wire_form
        assert wire_form["thumb"] == b"\x89PNG"

    def test_ignored_type(self, unit):
        assert "Scratch" in unit.generator.ir.skipped
        assert not hasattr(unit.serializers, "marshal_scratch")

    def test_companion_tests_pass(self, unit, tmp_path):
        generated = unit.serializers.__name__
        code = unit.generator.generate_tests(generated)
        (tmp_path / f"test_{generated}.py").write_text(code, encoding="utf-8")
        importlib.invalidate_caches()
        companion = importlib.import_module(f"test_{generated}")

        tests = [getattr(companion, name) for name in dir(companion) if name.startswith("test_")]
        assert len(tests) == 3 * len(unit.generator.ir.types)
        for test in tests:
            test()


if __name__ == "__main__":
    pytest.main([__file__])
