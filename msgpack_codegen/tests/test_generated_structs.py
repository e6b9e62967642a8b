"""
Behavior of generated serializers for plain structs: wire layout, nil and
empty containers, omission, cardinality limits and error paths.
"""

import io

import msgpack
import pytest

from msgpack_codegen.runtime import errors, wire

POINTS = """
from __future__ import annotations

from dataclasses import dataclass, field

# msgp:tuple Pair


@dataclass
class Point:
    x: int = 0
    y: int = 0


@dataclass
class Line:
    start: Point = field(default_factory=Point)
    end: Point = field(default_factory=Point)


@dataclass
class Path:
    points: list[Point] = field(default_factory=list)


@dataclass
class Pair:
    x: str = field(default="", metadata={"msg": ",omitempty"})
    y: str = ""
"""


@pytest.fixture
def points(compile_unit):
    return compile_unit(POINTS)


class TestMapLayout:
    """Structs without a tuple directive are written as name-keyed maps"""

    def test_wire_form(self, points):
        bts = points.marshal_point(points.Point(3, -4))
        assert msgpack.unpackb(bytes(bts)) == {"x": 3, "y": -4}

    def test_marshal_unmarshal(self, points):
        p = points.Point(3, -4)
        left, rest = points.unmarshal_point(bytes(points.marshal_point(p)))
        assert left == p
        assert rest == b""

    def test_encode_decode_stream(self, points):
        line = points.Line(points.Point(1, 2), points.Point(-3, 400))
        buf = io.BytesIO()
        en = wire.Writer(buf)
        points.encode_line(line, en)
        en.flush()

        decoded = points.decode_line(wire.Reader(io.BytesIO(buf.getvalue())))
        assert decoded == line
        # streaming and buffer forms produce the same bytes
        assert buf.getvalue() == bytes(points.marshal_line(line))

    def test_stream_read_in_small_chunks(self, points):
        path = points.Path([points.Point(i, -i) for i in range(40)])
        data = bytes(points.marshal_path(path))
        assert points.decode_path(wire.Reader(io.BytesIO(data), read_size=4)) == path

    def test_marshal_appends_to_buffer(self, points):
        buf = bytearray(b"\x01")
        out = points.marshal_point(points.Point(1, 1), buf)
        assert out is buf
        assert out[:1] == b"\x01"
        assert msgpack.unpackb(bytes(out[1:])) == {"x": 1, "y": 1}

    def test_unmarshal_into_existing_value(self, points):
        existing = points.Point(7, 8)
        left, _ = points.unmarshal_point(msgpack.packb({"x": 1}), existing)
        assert left is existing
        assert existing == points.Point(1, 8)

    def test_nil_struct(self, points):
        assert points.marshal_point(None) == b"\xc0"
        assert points.unmarshal_point(b"\xc0") == (None, b"")

    def test_trailing_bytes_are_returned(self, points):
        bts = bytes(points.marshal_point(points.Point(1, 2))) + b"\x93\x01\x02\x03"
        left, rest = points.unmarshal_point(bts)
        assert left == points.Point(1, 2)
        assert rest == b"\x93\x01\x02\x03"

    def test_unknown_keys_are_skipped(self, points):
        bts = msgpack.packb({"x": 1, "junk": [1, {"a": 2}, None], "y": 2, "z": "more"})
        left, rest = points.unmarshal_point(bts)
        assert left == points.Point(1, 2)
        assert rest == b""

    def test_keys_in_any_order(self, points):
        bts = msgpack.packb({"y": 2, "x": 1})
        assert points.unmarshal_point(bts)[0] == points.Point(1, 2)

    def test_size_estimate_is_an_upper_bound(self, points):
        for value in (points.Point(), points.Point(2**40, -(2**40)), points.Point(1, -1)):
            assert points.msgsize_point(value) >= len(points.marshal_point(value))
        path = points.Path([points.Point(i * 1000, i) for i in range(20)])
        assert points.msgsize_path(path) >= len(points.marshal_path(path))


class TestTupleLayout:
    """Tuple structs are positional arrays and never omit a slot"""

    def test_omitempty_slot_is_still_written(self, points):
        bts = bytes(points.marshal_pair(points.Pair(x="", y="v")))
        assert bts == msgpack.packb(["", "v"])
        assert bts == b"\x92\xa0\xa1v"

    def test_roundtrip(self, points):
        pair = points.Pair(x="left", y="right")
        assert points.unmarshal_pair(bytes(points.marshal_pair(pair)))[0] == pair

    def test_wrong_arity_fails(self, points):
        with pytest.raises(errors.ArraySizeError) as exc_info:
            points.unmarshal_pair(msgpack.packb(["only"]))
        assert exc_info.value.wanted == 2
        assert exc_info.value.got == 1

    def test_map_is_rejected(self, points):
        with pytest.raises(errors.TypeMismatchError):
            points.unmarshal_pair(msgpack.packb({"x": "a", "y": "b"}))


class TestErrorPaths:
    """Decode errors report where in the payload they happened"""

    def test_type_mismatch_names_the_field(self, points):
        with pytest.raises(errors.TypeMismatchError) as exc_info:
            points.unmarshal_point(msgpack.packb({"x": "oops"}))
        assert exc_info.value.path == ["x"]
        assert str(exc_info.value).endswith(" at x")

    def test_nested_path(self, points):
        bts = msgpack.packb({"start": {"x": 1}, "end": {"y": "bad"}})
        with pytest.raises(errors.TypeMismatchError) as exc_info:
            points.unmarshal_line(bts)
        assert exc_info.value.path == ["end", "y"]
        assert "at end/y" in str(exc_info.value)

    def test_array_index_in_path(self, points):
        bts = msgpack.packb({"points": [{"x": 1}, {"x": 2.5}]})
        with pytest.raises(errors.TypeMismatchError) as exc_info:
            points.unmarshal_path(bts)
        assert exc_info.value.path == ["points", "1", "x"]

    def test_short_buffer(self, points):
        bts = bytes(points.marshal_point(points.Point(3, -4)))
        with pytest.raises(errors.ShortBufferError):
            points.unmarshal_point(bts[:-1])

    def test_short_stream(self, points):
        bts = bytes(points.marshal_line(points.Line()))
        with pytest.raises(errors.ShortBufferError):
            points.decode_line(wire.Reader(io.BytesIO(bts[:5])))


NILS = """
from dataclasses import dataclass, field


@dataclass
class Lists:
    a: list[str] = field(default_factory=list)
    b: list[str] = field(default_factory=list, metadata={"msg": "b,allownil"})
    m: dict[str, int] = field(default_factory=dict, metadata={"msg": "m,allownil"})
    plain: dict[str, int] = field(default_factory=dict)
    data: bytes = field(default=b"", metadata={"msg": "data,allownil"})
    raw: bytes = b""
"""


class TestNilSemantics:
    """Nil and empty containers, with and without allownil"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(NILS)

    def test_nil_without_allownil_decodes_empty(self, unit):
        value = unit.Lists(a=None, b=None)
        left, _ = unit.unmarshal_lists(bytes(unit.marshal_lists(value)))
        assert left.a == []
        assert left.b is None

    def test_wire_form_of_nil_fields(self, unit):
        value = unit.Lists(a=None, b=None, m=None, plain=None, data=None, raw=None)
        assert msgpack.unpackb(bytes(unit.marshal_lists(value))) == {
            "a": [],
            "b": None,
            "m": None,
            "plain": {},
            "data": None,
            "raw": b"",
        }

    def test_allownil_keeps_empty_and_nil_apart(self, unit):
        empty, _ = unit.unmarshal_lists(bytes(unit.marshal_lists(unit.Lists(b=[], m={}, data=b""))))
        assert empty.b == []
        assert empty.m == {}
        assert empty.data == b""

        nil, _ = unit.unmarshal_lists(bytes(unit.marshal_lists(unit.Lists(b=None, m=None, data=None))))
        assert nil.b is None
        assert nil.m is None
        assert nil.data is None

    def test_wire_nil_keeps_a_nil_target(self, unit):
        bts = msgpack.packb({"a": None, "plain": None})
        target = unit.Lists(a=None, plain=None)
        left, _ = unit.unmarshal_lists(bts, target)
        assert left.a is None
        assert left.plain is None

    def test_wire_nil_into_fresh_value_allocates(self, unit):
        left, _ = unit.unmarshal_lists(msgpack.packb({"a": None, "plain": None}))
        assert left.a == []
        assert left.plain == {}

    def test_empty_wire_map_allocates_even_for_nil_target(self, unit):
        target = unit.Lists(m=None)
        left, _ = unit.unmarshal_lists(msgpack.packb({"m": {}}), target)
        assert left.m == {}

    def test_populated_roundtrip(self, unit):
        value = unit.Lists(a=["x", "y"], b=["z"], m={"k": 1}, plain={"p": -2}, data=b"\x00\x01", raw=b"r")
        assert unit.unmarshal_lists(bytes(unit.marshal_lists(value)))[0] == value


OMISSION = """
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Point:
    x: int = 0
    y: int = 0


@dataclass
class Profile:
    name: str = field(default="", metadata={"msg": "name,omitempty"})
    tags: list[str] = field(default_factory=list, metadata={"msg": "tags,omitempty"})
    score: float = field(default=0.0, metadata={"msg": "score,omitempty"})
    home: Point | None = field(default=None, metadata={"msg": "home,omitempty"})
    origin: Point = field(default_factory=Point, metadata={"msg": "origin,omitempty"})
    id: int = 0


@dataclass
class Window:
    start: int = 0
    end: int = 0

    def is_zero(self):
        return self.end <= self.start


@dataclass
class Schedule:
    window: Window = field(default_factory=Window, metadata={"msg": "window,omitzero"})
    plain: Window = field(default_factory=Window, metadata={"msg": "plain,omitempty"})
    count: int = field(default=0, metadata={"msg": "count,omitisempty"})
"""


class TestOmission:
    """omitempty, omitzero and omitisempty in map layout"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(OMISSION)

    def test_zero_fields_are_omitted(self, unit):
        bts = bytes(unit.marshal_profile(unit.Profile()))
        assert msgpack.unpackb(bts) == {"id": 0}
        assert bts[0] == 0x81

    def test_populated_fields_are_written(self, unit):
        value = unit.Profile(
            name="ann", tags=["a"], score=1.5, home=unit.Point(), origin=unit.Point(1, 0), id=7
        )
        wire_form = msgpack.unpackb(bytes(unit.marshal_profile(value)))
        assert set(wire_form) == {"name", "tags", "score", "home", "origin", "id"}
        assert wire_form["home"] == {"x": 0, "y": 0}

    def test_roundtrip_of_partially_empty_value(self, unit):
        value = unit.Profile(name="bob", origin=unit.Point(0, 3))
        assert unit.unmarshal_profile(bytes(unit.marshal_profile(value)))[0] == value
        assert unit.unmarshal_profile(bytes(unit.marshal_profile(unit.Profile())))[0] == unit.Profile()

    def test_size_of_omitted_value(self, unit):
        for value in (unit.Profile(), unit.Profile(name="x" * 300, tags=["t"] * 20, home=unit.Point(5, 5))):
            assert unit.msgsize_profile(value) >= len(unit.marshal_profile(value))

    def test_custom_zero_method(self, unit):
        value = unit.Schedule(window=unit.Window(5, 2), plain=unit.Window(5, 2))
        assert msgpack.unpackb(bytes(unit.marshal_schedule(value))) == {"plain": {"start": 5, "end": 2}}

    def test_custom_zero_keeps_non_zero_value(self, unit):
        value = unit.Schedule(window=unit.Window(1, 9), count=3)
        assert msgpack.unpackb(bytes(unit.marshal_schedule(value))) == {
            "window": {"start": 1, "end": 9},
            "count": 3,
        }

    def test_omitisempty_falls_back_to_zero_value(self, unit):
        assert msgpack.unpackb(bytes(unit.marshal_schedule(unit.Schedule()))) == {}

    def test_encode_matches_marshal(self, unit):
        value = unit.Profile(tags=["q"], id=2)
        buf = io.BytesIO()
        unit.encode_profile(value, wire.Writer(buf))
        assert buf.getvalue() == bytes(unit.marshal_profile(value))


def wide_source(count: int) -> str:
    lines = ["from dataclasses import dataclass, field", "", "", "@dataclass", "class Wide:"]
    for i in range(count):
        lines.append(f'    f{i}: int = field(default=0, metadata={{"msg": "f{i},omitempty"}})')
    return "\n".join(lines) + "\n"


class TestWideStructs:
    """More omittable fields than one bitmask word holds"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(wide_source(70))

    def test_bitmask_spans_words(self, unit):
        assert "[0] * 2" in unit.code

    def test_only_set_fields_are_written(self, unit):
        value = unit.Wide()
        value.f3 = 1
        value.f64 = -64
        value.f69 = 69
        wire_form = msgpack.unpackb(bytes(unit.marshal_wide(value)))
        assert wire_form == {"f3": 1, "f64": -64, "f69": 69}

    def test_roundtrip(self, unit):
        value = unit.Wide(**{f"f{i}": i for i in range(0, 70, 3)})
        assert unit.unmarshal_wide(bytes(unit.marshal_wide(value)))[0] == value

    def test_all_fields_set(self, unit):
        value = unit.Wide(**{f"f{i}": i + 1 for i in range(70)})
        assert len(msgpack.unpackb(bytes(unit.marshal_wide(value)))) == 70


LIMITS = """
from dataclasses import dataclass, field

# msgp:limit arrays:3 maps:4


@dataclass
class Bag:
    items: list[int] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    few: list[int] = field(default_factory=list, metadata={"msg": "few,limit=1"})
    many: list[int] = field(default_factory=list, metadata={"msg": "many,limit=10"})
"""

MARSHAL_LIMITS = """
from dataclasses import dataclass, field

# msgp:limit arrays:2 marshal:true


@dataclass
class Bag:
    items: list[int] = field(default_factory=list)
"""


BLOB_LIMITS = """
from dataclasses import dataclass, field

# msgp:limit arrays:4 maps:4 marshal:true


@dataclass
class Blob:
    data: bytes = b""
    raw: bytes = field(default=b"", metadata={"msg": "raw,allownil"})
    big: bytes = field(default=b"", metadata={"msg": "big,limit=64"})
"""


class TestLimits:
    """Cardinality limits are checked before anything is allocated"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(LIMITS)

    def test_count_at_limit_succeeds(self, unit):
        value = unit.Bag(items=[1, 2, 3], labels={str(i): "v" for i in range(4)}, few=[1], many=list(range(10)))
        assert unit.unmarshal_bag(bytes(unit.marshal_bag(value)))[0] == value

    def test_array_over_file_limit(self, unit):
        bts = bytes(unit.marshal_bag(unit.Bag(items=[1, 2, 3, 4])))
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_bag(bts)
        assert exc_info.value.count == 4
        assert exc_info.value.limit == 3
        assert exc_info.value.kind == "array"
        assert exc_info.value.path == ["items"]

    def test_map_over_file_limit(self, unit):
        bts = msgpack.packb({"labels": {str(i): "v" for i in range(5)}})
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_bag(bts)
        assert exc_info.value.kind == "map"
        assert exc_info.value.limit == 4

    def test_field_limit_is_stricter(self, unit):
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_bag(msgpack.packb({"few": [1, 2]}))
        assert exc_info.value.limit == 1
        assert exc_info.value.path == ["few"]

    def test_field_limit_overrides_a_stricter_file_limit(self, unit):
        left, _ = unit.unmarshal_bag(msgpack.packb({"many": list(range(10))}))
        assert left.many == list(range(10))
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_bag(msgpack.packb({"many": list(range(11))}))
        assert exc_info.value.limit == 10

    def test_huge_header_fails_before_allocation(self, unit):
        bts = b"\x81\xa5items\xdd\xff\xff\xff\xff"
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_bag(bts)
        assert exc_info.value.count == 0xFFFFFFFF

    def test_struct_map_header_is_limited(self, unit):
        bts = msgpack.packb({"items": [], "labels": {}, "few": [], "many": [], "extra": 1})
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_bag(bts)
        assert exc_info.value.path == []

    def test_stream_decode_is_limited(self, unit):
        bts = bytes(unit.marshal_bag(unit.Bag(items=[1, 2, 3, 4])))
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.decode_bag(wire.Reader(io.BytesIO(bts)))

    def test_marshal_is_not_limited_by_default(self, unit):
        unit.marshal_bag(unit.Bag(items=list(range(100))))

    def test_marshal_limit(self, compile_unit):
        unit = compile_unit(MARSHAL_LIMITS)
        unit.marshal_bag(unit.Bag(items=[1, 2]))
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.marshal_bag(unit.Bag(items=[1, 2, 3]))
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.encode_bag(unit.Bag(items=[1, 2, 3]), wire.Writer(io.BytesIO()))


class TestBytesLimits:
    """Byte strings are held to the array limit"""

    @pytest.fixture
    def unit(self, compile_unit):
        return compile_unit(BLOB_LIMITS)

    def test_at_limit_round_trips(self, unit):
        value = unit.Blob(data=b"abcd", raw=b"wxyz", big=b"b" * 64)
        assert unit.unmarshal_blob(bytes(unit.marshal_blob(value)))[0] == value

    def test_large_blob_is_rejected(self, unit):
        bts = msgpack.packb({"data": b"x" * 100000}, use_bin_type=True)
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_blob(bts)
        assert exc_info.value.count == 100000
        assert exc_info.value.limit == 4
        assert exc_info.value.path == ["data"]

    def test_nil_allowed_field_is_limited(self, unit):
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_blob(msgpack.packb({"raw": b"12345"}, use_bin_type=True))
        assert exc_info.value.path == ["raw"]
        value, _ = unit.unmarshal_blob(msgpack.packb({"raw": None}))
        assert value.raw is None

    def test_field_limit_applies_to_bytes(self, unit):
        value, _ = unit.unmarshal_blob(msgpack.packb({"big": b"b" * 64}, use_bin_type=True))
        assert value.big == b"b" * 64
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.unmarshal_blob(msgpack.packb({"big": b"b" * 65}, use_bin_type=True))

    def test_huge_bin_header_fails_before_allocation(self, unit):
        bts = b"\x81\xa4data\xc6\xff\xff\xff\xff"
        with pytest.raises(errors.CardinalityLimitExceeded) as exc_info:
            unit.unmarshal_blob(bts)
        assert exc_info.value.count == 0xFFFFFFFF

    def test_stream_decode_is_limited(self, unit):
        bts = msgpack.packb({"data": b"x" * 10}, use_bin_type=True)
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.decode_blob(wire.Reader(io.BytesIO(bts)))

    def test_marshal_limit(self, unit):
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.marshal_blob(unit.Blob(data=b"12345"))
        with pytest.raises(errors.CardinalityLimitExceeded):
            unit.encode_blob(unit.Blob(raw=b"12345"), wire.Writer(io.BytesIO()))


if __name__ == "__main__":
    pytest.main([__file__])
