"""
Errors raised by generated serializers.

Every error carries a structural ``path``: generated code prepends the
struct field, array index or map key it was working on before re-raising,
so an error deep inside a payload reports where it happened.
"""

from __future__ import annotations


class WireError(Exception):
    """Base class for encode/decode failures."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message
        self.path: list[str] = []

    def add_context(self, part: object) -> WireError:
        """Prepend a path element (field name, index or key)."""
        self.path.insert(0, str(part))
        return self

    def __str__(self) -> str:
        if not self.path:
            return self.message
        return f"{self.message} at {'/'.join(self.path)}"


class ShortBufferError(WireError):
    """The buffer or stream ended in the middle of a value."""

    def __init__(self, message: str = "msgp: too few bytes left to read object"):
        super().__init__(message)


class TypeMismatchError(WireError):
    """The wire type does not match the kind the field expects."""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"msgp: attempted to decode type {actual!r} with method for {expected!r}")
        self.expected = expected
        self.actual = actual


class CardinalityLimitExceeded(WireError):
    """A wire header declares more elements than the effective limit."""

    def __init__(self, count: int, limit: int, kind: str = "array"):
        super().__init__(f"msgp: {kind} size {count} exceeds limit of {limit}")
        self.count = count
        self.limit = limit
        self.kind = kind


class ArraySizeError(WireError):
    """A fixed-arity sequence (tuple struct, fixed array) has the wrong length."""

    def __init__(self, wanted: int, got: int):
        super().__init__(f"msgp: wanted array of size {wanted}; got {got}")
        self.wanted = wanted
        self.got = got


class UnknownVariantError(WireError):
    """A polymorphic value names an implementer outside the closed set."""

    def __init__(self, discriminator: str):
        super().__init__(f"msgp: unknown variant {discriminator!r}")
        self.discriminator = discriminator


class ConversionError(WireError):
    """A fallible user conversion (shim or provider) failed."""


class IntOverflowError(WireError):
    """An integer does not fit the sized type it is decoded into."""

    def __init__(self, value: int, bits: int, signed: bool = True):
        kind = "int" if signed else "uint"
        super().__init__(f"msgp: {value} overflows {kind}{bits}")
        self.value = value
        self.bits = bits
        self.signed = signed


class ExtensionTypeError(WireError):
    """An extension block carries an unexpected type code."""

    def __init__(self, wanted: int, got: int):
        super().__init__(f"msgp: error decoding extension: wanted type {wanted}; got type {got}")
        self.wanted = wanted
        self.got = got
