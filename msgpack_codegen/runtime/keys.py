"""
Conversions for map keys that are not native wire strings.

Binary keys turn fixed-width numbers into big-endian binary blobs;
auto-shimmed keys turn numbers and booleans into their decimal text.
"""

from __future__ import annotations

import struct

from .errors import ConversionError
from .wire import check_int

_BINARY_FORMATS = {
    "bool": ">?",
    "int": ">q",
    "int8": ">b",
    "int16": ">h",
    "int32": ">i",
    "int64": ">q",
    "uint": ">Q",
    "uint8": ">B",
    "byte": ">B",
    "uint16": ">H",
    "uint32": ">I",
    "uint64": ">Q",
    "float": ">d",
    "float32": ">f",
    "float64": ">d",
}

_INT_BITS = {
    "int": (64, True),
    "int8": (8, True),
    "int16": (16, True),
    "int32": (32, True),
    "int64": (64, True),
    "uint": (64, False),
    "uint8": (8, False),
    "byte": (8, False),
    "uint16": (16, False),
    "uint32": (32, False),
    "uint64": (64, False),
}

_FLOATS = {"float", "float32", "float64"}

BINARY_KEY_KINDS = frozenset(_BINARY_FORMATS) | {"bytes"}
AUTO_SHIM_KEY_KINDS = frozenset(_INT_BITS) | _FLOATS | {"bool"}


def binary_key(value, kind: str) -> bytes:
    if kind == "bytes":
        return bytes(value)
    try:
        return struct.pack(_BINARY_FORMATS[kind], value)
    except struct.error as err:
        raise ConversionError(f"msgp: cannot encode {value!r} as {kind} key: {err}") from err


def from_binary_key(data: bytes, kind: str):
    if kind == "bytes":
        return bytes(data)
    fmt = _BINARY_FORMATS[kind]
    if len(data) != struct.calcsize(fmt):
        raise ConversionError(f"msgp: {kind} key must be {struct.calcsize(fmt)} bytes, got {len(data)}")
    return struct.unpack(fmt, data)[0]


def auto_shim_key(value, kind: str) -> str:
    if kind == "bool":
        return "true" if value else "false"
    if kind in _FLOATS:
        return repr(float(value))
    return str(int(value))


def from_auto_shim_key(text: str, kind: str):
    if kind == "bool":
        if text not in ("true", "false"):
            raise ConversionError(f"msgp: invalid bool key {text!r}")
        return text == "true"
    try:
        if kind in _FLOATS:
            return float(text)
        value = int(text, 10)
    except ValueError as err:
        raise ConversionError(f"msgp: invalid {kind} key {text!r}") from err
    bits, signed = _INT_BITS[kind]
    return check_int(value, bits, signed)
