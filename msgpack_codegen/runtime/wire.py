"""
Wire primitives called by generated serializers.

``Writer`` and ``Appender`` emit one MessagePack value per call, to a stream
or to a growable ``bytearray``. ``Reader`` and ``BytesReader`` read them
back from a stream or an in-memory buffer. The bit-level work is done by
the ``msgpack`` library; this module adds what generated code needs on top
of it: typed reads that check the wire kind, header-first container reads,
peeking at the next value, and the extension formats for complex numbers
and times.
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, BinaryIO

import msgpack

from .errors import (
    CardinalityLimitExceeded,
    ConversionError,
    ExtensionTypeError,
    IntOverflowError,
    ShortBufferError,
    TypeMismatchError,
    WireError,
)

COMPLEX64_EXT = 3
COMPLEX128_EXT = 4
TIME_EXT = 5
TIMESTAMP_EXT = -1

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

INT_BOUNDS = {bits: (-(1 << (bits - 1)), (1 << (bits - 1)) - 1) for bits in (8, 16, 32, 64)}
UINT_BOUNDS = {bits: (0, (1 << bits) - 1) for bits in (8, 16, 32, 64)}

# Width of the length field after a str8/16/32 or bin8/16/32 type byte
_LENGTH_WIDTHS = {0xC4: 1, 0xC5: 2, 0xC6: 4, 0xD9: 1, 0xDA: 2, 0xDB: 4}


class Kind(str, Enum):
    """Wire kind of a MessagePack value, from its first byte."""

    NIL = "nil"
    BOOL = "bool"
    INT = "int"
    UINT = "uint"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    STR = "str"
    BIN = "bin"
    ARRAY = "array"
    MAP = "map"
    EXT = "ext"
    INVALID = "invalid"


_KINDS: dict[int, Kind] = {0xC0: Kind.NIL, 0xC2: Kind.BOOL, 0xC3: Kind.BOOL, 0xCA: Kind.FLOAT32, 0xCB: Kind.FLOAT64}
_KINDS.update({b: Kind.BIN for b in (0xC4, 0xC5, 0xC6)})
_KINDS.update({b: Kind.EXT for b in (0xC7, 0xC8, 0xC9, 0xD4, 0xD5, 0xD6, 0xD7, 0xD8)})
_KINDS.update({b: Kind.UINT for b in (0xCC, 0xCD, 0xCE, 0xCF)})
_KINDS.update({b: Kind.INT for b in (0xD0, 0xD1, 0xD2, 0xD3)})
_KINDS.update({b: Kind.STR for b in (0xD9, 0xDA, 0xDB)})
_KINDS.update({0xDC: Kind.ARRAY, 0xDD: Kind.ARRAY, 0xDE: Kind.MAP, 0xDF: Kind.MAP})


def kind_of(first_byte: int) -> Kind:
    """Classify a value by its type byte."""
    if first_byte <= 0x7F:
        return Kind.UINT
    if first_byte <= 0x8F:
        return Kind.MAP
    if first_byte <= 0x9F:
        return Kind.ARRAY
    if first_byte <= 0xBF:
        return Kind.STR
    if first_byte >= 0xE0:
        return Kind.INT
    return _KINDS.get(first_byte, Kind.INVALID)


def check_int(value: int, bits: int = 64, signed: bool = True) -> int:
    """Raise IntOverflowError if ``value`` does not fit the sized integer."""
    low, high = INT_BOUNDS[bits] if signed else UINT_BOUNDS[bits]
    if value < low or value > high:
        raise IntOverflowError(value, bits, signed)
    return value


def is_zero_time(value: datetime | None) -> bool:
    return value is None or value == ZERO_TIME


def convert(fn: Callable[[Any], Any], value: Any) -> Any:
    """Call a fallible user conversion, reporting failures as ConversionError."""
    try:
        return fn(value)
    except WireError:
        raise
    except Exception as err:
        raise ConversionError(f"msgp: conversion {getattr(fn, '__name__', fn)!r} failed: {err}") from err


def _split_time(value: datetime) -> tuple[int, int]:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    return delta.days * 86400 + delta.seconds, delta.microseconds * 1000


def _join_time(seconds: int, nanoseconds: int) -> datetime:
    return _EPOCH + timedelta(seconds=seconds, microseconds=nanoseconds // 1000)


def _fits_float32(value: float) -> bool:
    try:
        return struct.unpack(">f", struct.pack(">f", value))[0] == value
    except OverflowError:
        return False


class Writer:
    """Streams MessagePack values to a binary file-like object."""

    def __init__(self, stream: BinaryIO | None):
        self._stream = stream
        self._packer = msgpack.Packer(use_bin_type=True, autoreset=True, datetime=True)
        self._single = msgpack.Packer(use_bin_type=True, use_single_float=True, autoreset=True)

    def _put(self, data: bytes) -> None:
        self._stream.write(data)

    def flush(self) -> None:
        if self._stream is not None and hasattr(self._stream, "flush"):
            self._stream.flush()

    def write_nil(self) -> None:
        self._put(b"\xc0")

    def write_bool(self, value: bool) -> None:
        self._put(b"\xc3" if value else b"\xc2")

    def write_int(self, value: int, bits: int = 64) -> None:
        self._put(self._packer.pack(check_int(value, bits)))

    def write_uint(self, value: int, bits: int = 64) -> None:
        self._put(self._packer.pack(check_int(value, bits, signed=False)))

    def write_float32(self, value: float) -> None:
        self._put(self._single.pack(float(value)))

    def write_float64(self, value: float) -> None:
        self._put(self._packer.pack(float(value)))

    def write_float64_compact(self, value: float) -> None:
        """Write a float64, narrowed to float32 when that loses nothing."""
        value = float(value)
        if _fits_float32(value):
            self._put(self._single.pack(value))
        else:
            self._put(self._packer.pack(value))

    def write_complex64(self, value: complex) -> None:
        value = complex(value)
        self.write_ext(COMPLEX64_EXT, struct.pack(">ff", value.real, value.imag))

    def write_complex128(self, value: complex) -> None:
        value = complex(value)
        self.write_ext(COMPLEX128_EXT, struct.pack(">dd", value.real, value.imag))

    def write_string(self, value: str) -> None:
        self._put(self._packer.pack(value))

    def write_bytes(self, value: bytes | bytearray) -> None:
        self._put(self._packer.pack(bytes(value)))

    def write_array_header(self, size: int) -> None:
        self._put(self._packer.pack_array_header(size))

    def write_map_header(self, size: int) -> None:
        self._put(self._packer.pack_map_header(size))

    def write_ext(self, code: int, data: bytes) -> None:
        self._put(self._packer.pack(msgpack.ExtType(code, bytes(data))))

    def write_time(self, value: datetime) -> None:
        """Write a time as extension 5: int64 seconds and int32 nanoseconds."""
        seconds, nanoseconds = _split_time(value)
        self.write_ext(TIME_EXT, struct.pack(">qi", seconds, nanoseconds))

    def write_timestamp(self, value: datetime) -> None:
        """Write a time using the standard MessagePack timestamp extension."""
        seconds, nanoseconds = _split_time(value)
        self._put(self._packer.pack(msgpack.Timestamp(seconds, nanoseconds)))

    def write_any(self, value: Any) -> None:
        self._put(self._packer.pack(value))


class Appender(Writer):
    """Appends MessagePack values to a ``bytearray``."""

    def __init__(self, buffer: bytearray | None = None):
        super().__init__(None)
        self.buffer = bytearray() if buffer is None else buffer

    def _put(self, data: bytes) -> None:
        self.buffer += data


class Reader:
    """Reads MessagePack values from a binary file-like object.

    Bytes pulled from the stream are fed to a ``msgpack.Unpacker`` and kept
    in a local window, so the type byte of the next value can be inspected
    before it is consumed. Running out of input raises ShortBufferError.
    """

    READ_SIZE = 64 * 1024

    def __init__(self, stream: BinaryIO | None, read_size: int = READ_SIZE):
        self._stream = stream
        self._read_size = read_size
        self._window = bytearray()
        # stream offset of self._window[0]
        self._offset = 0
        self._unpacker = msgpack.Unpacker(raw=False, strict_map_key=False, max_buffer_size=0)

    def _feed(self, data: bytes) -> None:
        self._unpacker.feed(data)
        self._window += data

    def _position(self) -> int:
        return self._unpacker.tell() - self._offset

    def _fill(self) -> bool:
        if self._stream is None:
            return False
        data = self._stream.read(self._read_size)
        if not data:
            return False
        consumed = self._position()
        if consumed > self._read_size:
            del self._window[:consumed]
            self._offset += consumed
        self._feed(data)
        return True

    def _ensure(self, count: int) -> None:
        while len(self._window) - self._position() < count:
            if not self._fill():
                raise ShortBufferError()

    def _call(self, fn: Callable[[], Any]) -> Any:
        while True:
            try:
                return fn()
            except msgpack.OutOfData:
                if not self._fill():
                    raise ShortBufferError() from None

    def _expect(self, *kinds: Kind) -> Kind:
        kind = self.peek_kind()
        if kind not in kinds:
            raise TypeMismatchError(kinds[0].value, kind.value)
        return kind

    def _unpack(self) -> Any:
        return self._call(self._unpacker.unpack)

    def peek_kind(self) -> Kind:
        """Return the kind of the next value without consuming it."""
        self._ensure(1)
        return kind_of(self._window[self._position()])

    def is_nil(self) -> bool:
        return self.peek_kind() is Kind.NIL

    def skip(self) -> None:
        """Skip the next value, whatever its kind."""
        self._ensure(1)
        self._call(self._unpacker.skip)

    def read_raw(self, count: int) -> bytes:
        self._ensure(count)
        return self._unpacker.read_bytes(count)

    def read_nil(self) -> None:
        self._expect(Kind.NIL)
        self._call(self._unpacker.skip)

    def read_bool(self) -> bool:
        self._expect(Kind.BOOL)
        return self._unpack()

    def read_int(self, bits: int = 64) -> int:
        self._expect(Kind.INT, Kind.UINT)
        return check_int(self._unpack(), bits)

    def read_uint(self, bits: int = 64) -> int:
        self._expect(Kind.UINT, Kind.INT)
        return check_int(self._unpack(), bits, signed=False)

    def read_float32(self) -> float:
        self._expect(Kind.FLOAT32)
        return self._unpack()

    def read_float64(self) -> float:
        self._expect(Kind.FLOAT64, Kind.FLOAT32)
        return self._unpack()

    def read_string(self) -> str:
        self._expect(Kind.STR)
        return self._unpack()

    def _peek_length(self) -> int:
        """Length declared by the header of the next str or bin value, which stays unread."""
        self._ensure(1)
        first = self._window[self._position()]
        if 0xA0 <= first <= 0xBF:
            return first & 0x1F
        width = _LENGTH_WIDTHS[first]
        self._ensure(1 + width)
        start = self._position() + 1
        return int.from_bytes(self._window[start : start + width], "big")

    def read_bytes(self, limit: int | None = None) -> bytes:
        """Read binary (or string) data; with ``limit``, longer data fails before it is read."""
        kind = self._expect(Kind.BIN, Kind.STR)
        if limit is not None:
            size = self._peek_length()
            if size > limit:
                raise CardinalityLimitExceeded(size, limit, "array")
        value = self._unpack()
        if kind is Kind.STR:
            return value.encode("utf-8")
        return value

    def read_text(self) -> str:
        """Read a string stored either as a wire string or as binary."""
        kind = self._expect(Kind.STR, Kind.BIN)
        value = self._unpack()
        if kind is Kind.BIN:
            return value.decode("utf-8")
        return value

    def read_map_key(self) -> str:
        return self.read_text()

    def read_array_header(self) -> int:
        """Read an array header; the elements are left unread."""
        self._expect(Kind.ARRAY)
        return self._call(self._unpacker.read_array_header)

    def read_map_header(self) -> int:
        """Read a map header; the key/value pairs are left unread."""
        self._expect(Kind.MAP)
        return self._call(self._unpacker.read_map_header)

    def _read_ext_value(self) -> Any:
        self._expect(Kind.EXT)
        return self._unpack()

    def read_ext(self, code: int) -> bytes:
        value = self._read_ext_value()
        got = TIMESTAMP_EXT if isinstance(value, msgpack.Timestamp) else value.code
        if got != code:
            raise ExtensionTypeError(code, got)
        return value.data

    def read_complex64(self) -> complex:
        real, imag = struct.unpack(">ff", self.read_ext(COMPLEX64_EXT))
        return complex(real, imag)

    def read_complex128(self) -> complex:
        real, imag = struct.unpack(">dd", self.read_ext(COMPLEX128_EXT))
        return complex(real, imag)

    def _read_any_time(self, preferred: int) -> datetime:
        value = self._read_ext_value()
        if isinstance(value, msgpack.Timestamp):
            return _join_time(value.seconds, value.nanoseconds)
        if value.code != TIME_EXT or len(value.data) != 12:
            raise ExtensionTypeError(preferred, value.code)
        seconds, nanoseconds = struct.unpack(">qi", value.data)
        return _join_time(seconds, nanoseconds)

    def read_time(self) -> datetime:
        """Read a time written by write_time (timestamps are accepted too)."""
        return self._read_any_time(TIME_EXT)

    def read_timestamp(self) -> datetime:
        return self._read_any_time(TIMESTAMP_EXT)

    def read_any(self) -> Any:
        value = self._unpack()
        if isinstance(value, msgpack.Timestamp):
            return _join_time(value.seconds, value.nanoseconds)
        return value


class BytesReader(Reader):
    """Reads values from an in-memory buffer."""

    def __init__(self, data: bytes | bytearray | memoryview):
        super().__init__(None)
        self._feed(bytes(data))

    def remaining(self) -> bytes:
        """Bytes not consumed yet."""
        return bytes(self._window[self._position() :])

    def unmarshal_with(self, fn: Callable[[bytes], tuple[Any, bytes]]) -> Any:
        """Hand the remaining bytes to a ``(value, rest)`` style function."""
        data = self.remaining()
        value, rest = fn(data)
        self.read_raw(len(data) - len(rest))
        return value
