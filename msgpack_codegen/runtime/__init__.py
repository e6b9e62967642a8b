"""
Runtime support imported by generated serializers.

Sized numeric aliases (``int8`` ... ``uint64``, ``float32``, ``complex64``)
are plain ``NewType`` names: annotate dataclass fields with them to select
the narrower wire width.
"""

from __future__ import annotations

from typing import NewType

from .errors import (
    ArraySizeError,
    CardinalityLimitExceeded,
    ConversionError,
    ExtensionTypeError,
    IntOverflowError,
    ShortBufferError,
    TypeMismatchError,
    UnknownVariantError,
    WireError,
)
from .wire import Appender, BytesReader, Kind, Reader, Writer

int8 = NewType("int8", int)
int16 = NewType("int16", int)
int32 = NewType("int32", int)
int64 = NewType("int64", int)
uint = NewType("uint", int)
uint8 = NewType("uint8", int)
uint16 = NewType("uint16", int)
uint32 = NewType("uint32", int)
uint64 = NewType("uint64", int)
byte = NewType("byte", int)
float32 = NewType("float32", float)
float64 = NewType("float64", float)
complex64 = NewType("complex64", complex)
complex128 = NewType("complex128", complex)

__all__ = [
    "Appender",
    "ArraySizeError",
    "BytesReader",
    "CardinalityLimitExceeded",
    "ConversionError",
    "ExtensionTypeError",
    "IntOverflowError",
    "Kind",
    "Reader",
    "ShortBufferError",
    "TypeMismatchError",
    "UnknownVariantError",
    "WireError",
    "Writer",
    "byte",
    "complex64",
    "complex128",
    "float32",
    "float64",
    "int8",
    "int16",
    "int32",
    "int64",
    "uint",
    "uint8",
    "uint16",
    "uint32",
    "uint64",
]
