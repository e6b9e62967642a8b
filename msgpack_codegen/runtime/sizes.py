"""
Worst-case wire sizes used by generated ``msgsize_*`` functions.

Each constant is the largest number of bytes the corresponding value can
take on the wire, header included.
"""

from __future__ import annotations

from typing import Any

import msgpack

NIL_SIZE = 1
BOOL_SIZE = 1

INT_SIZE = 9
INT8_SIZE = 2
INT16_SIZE = 3
INT32_SIZE = 5
INT64_SIZE = 9

UINT_SIZE = 9
UINT8_SIZE = 2
UINT16_SIZE = 3
UINT32_SIZE = 5
UINT64_SIZE = 9
BYTE_SIZE = UINT8_SIZE

FLOAT32_SIZE = 5
FLOAT64_SIZE = 9

# fixext8 / fixext16
COMPLEX64_SIZE = 10
COMPLEX128_SIZE = 18

# ext8 with a 12 byte payload; also bounds the timestamp96 form
TIME_SIZE = 15

ARRAY_HEADER_SIZE = 5
MAP_HEADER_SIZE = 5
STR_PREFIX_SIZE = 5
BYTES_PREFIX_SIZE = 5


def str_size(value: str | None) -> int:
    """Upper bound for a string, using its UTF-8 length."""
    if value is None:
        return NIL_SIZE
    return STR_PREFIX_SIZE + len(value.encode("utf-8"))


def bytes_size(value: bytes | bytearray | None) -> int:
    if value is None:
        return NIL_SIZE
    return BYTES_PREFIX_SIZE + len(value)


def any_size(value: Any) -> int:
    """Exact size of a dynamically typed value, measured by packing it."""
    return len(msgpack.packb(value, use_bin_type=True, datetime=True))
