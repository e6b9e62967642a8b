"""
IR (Intermediate Representation) node definitions.

These nodes represent the resolved type graph, ready for code generation.
All names are resolved, generic types are monomorphized, flattened embeds
are spliced into their parent, and every field carries its effective
directive configuration.

Nodes compare by identity: the graph may be cyclic through pointer, slice
and map indirection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, Flag, auto


class PrimitiveKind(str, Enum):
    """Kind of a primitive wire value."""

    BOOL = "bool"
    INT = "int"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT = "uint"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    BYTE = "byte"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    COMPLEX64 = "complex64"
    COMPLEX128 = "complex128"
    STR = "str"
    BYTES = "bytes"
    TIME = "time"
    ANY = "any"

    @property
    def is_signed_int(self) -> bool:
        return self in (PrimitiveKind.INT, PrimitiveKind.INT8, PrimitiveKind.INT16, PrimitiveKind.INT32, PrimitiveKind.INT64)

    @property
    def is_unsigned_int(self) -> bool:
        return self in (
            PrimitiveKind.UINT,
            PrimitiveKind.UINT8,
            PrimitiveKind.UINT16,
            PrimitiveKind.UINT32,
            PrimitiveKind.UINT64,
            PrimitiveKind.BYTE,
        )

    @property
    def bits(self) -> int:
        """Width of a sized integer (64 for the unsized ones)."""
        digits = "".join(c for c in self.value if c.isdigit())
        if self is PrimitiveKind.BYTE:
            return 8
        return int(digits) if digits else 64


# Source spellings of primitive types
PRIMITIVE_NAMES: dict[str, PrimitiveKind] = {
    "bool": PrimitiveKind.BOOL,
    "int": PrimitiveKind.INT,
    "float": PrimitiveKind.FLOAT64,
    "complex": PrimitiveKind.COMPLEX128,
    "str": PrimitiveKind.STR,
    "bytes": PrimitiveKind.BYTES,
    "bytearray": PrimitiveKind.BYTES,
    "datetime": PrimitiveKind.TIME,
    "Any": PrimitiveKind.ANY,
    "object": PrimitiveKind.ANY,
}

# Sized aliases exported by msgpack_codegen.runtime
SIZED_NAMES: dict[str, PrimitiveKind] = {
    kind.value: kind
    for kind in PrimitiveKind
    if kind.value not in ("bool", "int", "str", "bytes", "time", "any")
}


class EmptinessPolicy(Enum):
    """When a map-layout field is left out of the encoded map."""

    ALWAYS = "always"  # never omitted
    OMIT_IF_DEFAULT = "omitempty"  # structural zero value
    OMIT_IF_CUSTOM_ZERO = "omitzero"  # is_zero(), else structural
    OMIT_IF_CUSTOM_EMPTY = "omitisempty"  # is_empty(), else structural


class KeyStrategy(Enum):
    """How a map key reaches the wire."""

    NATIVE = "native"
    BINARY_KEY = "binary"
    SHIMMED_KEY = "shim"
    AUTO_SHIMMED_KEY = "autoshim"
    UNSUPPORTED = "unsupported"


class Capability(Flag):
    """Custom behavior a type exposes or is assumed to expose."""

    NONE = 0
    MSGP = auto()  # encode_msg / decode_msg / marshal_msg / unmarshal_msg / msgsize
    BINARY = auto()  # marshal_binary / unmarshal_binary
    BINARY_APPEND = auto()  # append_binary
    TEXT = auto()  # marshal_text / unmarshal_text
    TEXT_AS_STRING = auto()  # text stored as a wire string
    ZERO = auto()  # is_zero
    EMPTY = auto()  # is_empty
    INTERCEPT = auto()  # an external provider handles everything

    @property
    def is_custom_codec(self) -> bool:
        """Whether the type brings its own wire representation."""
        return bool(self & (Capability.MSGP | Capability.BINARY | Capability.TEXT | Capability.INTERCEPT))


@dataclass
class LimitSpec:
    """Cardinality ceilings for decoded slices and maps."""

    arrays: int | None = None
    maps: int | None = None
    # Also enforce while encoding / marshaling
    marshal: bool = False

    def effective(self, fld: Field | None, kind: str) -> int | None:
        """Limit for ``kind`` ("arrays" or "maps") inside ``fld``; the field scope wins."""
        if fld is not None and fld.limit is not None:
            return fld.limit
        return getattr(self, kind)


@dataclass(eq=False)
class TypeNode:
    """Base of the resolved type graph."""

    capabilities: Capability = field(default=Capability.NONE, kw_only=True)

    @property
    def label(self) -> str:
        """Identifier-friendly name, used to name generic instantiations."""
        return str(self)


@dataclass(eq=False)
class Primitive(TypeNode):
    kind: PrimitiveKind = PrimitiveKind.INT

    def __str__(self) -> str:
        return self.kind.value


@dataclass(eq=False)
class Pointer(TypeNode):
    """An optional value: ``T | None``."""

    elem: TypeNode = None

    def __str__(self) -> str:
        return f"{self.elem} | None"

    @property
    def label(self) -> str:
        return f"opt_{self.elem.label}"


@dataclass(eq=False)
class Slice(TypeNode):
    elem: TypeNode = None

    def __str__(self) -> str:
        return f"list[{self.elem}]"

    @property
    def label(self) -> str:
        return f"list_{self.elem.label}"


@dataclass(eq=False)
class Array(TypeNode):
    """A fixed-length homogeneous tuple."""

    elem: TypeNode = None
    length: int = 0

    def __str__(self) -> str:
        return f"tuple[{', '.join([str(self.elem)] * self.length)}]"

    @property
    def label(self) -> str:
        return f"array{self.length}_{self.elem.label}"


@dataclass(eq=False)
class Map(TypeNode):
    key: TypeNode = None
    value: TypeNode = None
    key_strategy: KeyStrategy = KeyStrategy.NATIVE
    # Primitive kind used by binary and auto-shimmed keys
    key_kind: str = ""

    def __str__(self) -> str:
        return f"dict[{self.key}, {self.value}]"

    @property
    def label(self) -> str:
        return f"dict_{self.key.label}_{self.value.label}"


@dataclass(eq=False)
class Field:
    """A struct field with its effective configuration."""

    name: str
    node: TypeNode
    owner: str = ""
    wire_name: str = ""
    ordinal: int = 0
    # Attribute chain from the owning struct (longer for flattened embeds)
    path: tuple[str, ...] = ()
    emptiness: EmptinessPolicy = EmptinessPolicy.ALWAYS
    allow_nil: bool = False
    # Field-scope cardinality limit; overrides the file scope
    limit: int | None = None
    # Raw field tag, kept so spliced fields can be re-resolved in a new owner
    tag: object = None

    @property
    def accessor(self) -> str:
        return ".".join(self.path or (self.name,))


@dataclass(eq=False)
class Struct(TypeNode):
    """A dataclass (or a monomorphized generic instantiation)."""

    name: str = ""
    # Python class to instantiate (differs from name for generic instances)
    class_name: str = ""
    fields: list[Field] = field(default_factory=list, repr=False)
    is_tuple: bool = False
    # Flattened embeds that must be allocated before their fields are set
    holders: list[tuple[tuple[str, ...], str]] = field(default_factory=list)
    # Attributes that are never serialized (ignored or unsupported fields)
    skipped_fields: list[tuple[str, ...]] = field(default_factory=list)
    discriminator: str = ""
    # False while the struct is a placeholder for recursive references
    is_complete: bool = False
    type_args: list[TypeNode] = field(default_factory=list)

    def __str__(self) -> str:
        return self.name

    @property
    def label(self) -> str:
        return self.name if not self.type_args else f"{self.class_name}_{'_'.join(a.label for a in self.type_args)}"


@dataclass(eq=False)
class Identifier(TypeNode):
    """A named alias (``NewType`` or a builtin subclass) with its own name."""

    name: str = ""
    underlying: TypeNode = None
    # "newtype" (no runtime wrapper), "class" (builtin subclass) or "enum"
    kind: str = "newtype"

    def __str__(self) -> str:
        return self.name


@dataclass(eq=False)
class GenericParameter(TypeNode):
    """A TypeVar of a generic class, with the bound or constraints its arguments must meet."""

    name: str = ""
    bound: str | None = None
    constraints: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return self.name


@dataclass(eq=False)
class GenericInstance(TypeNode):
    """A use of a generic class with concrete arguments; ``resolved`` is its monomorph."""

    base: str = ""
    type_args: list[TypeNode] = field(default_factory=list)
    # Parameters of the base class, in the order of type_args
    params: list[GenericParameter] = field(default_factory=list)
    resolved: Struct | None = None

    def __str__(self) -> str:
        return f"{self.base}[{', '.join(str(a) for a in self.type_args)}]"


@dataclass(eq=False)
class ExternalOpaque(TypeNode):
    """A type the generator cannot see into; usable only through its capabilities."""

    name: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(eq=False)
class Shimmed(TypeNode):
    """A type converted to and from a primitive wire value by user functions."""

    name: str = ""
    wire: PrimitiveKind = PrimitiveKind.STR
    to_fn: str = ""
    from_fn: str = ""
    fallible: bool = False

    def __str__(self) -> str:
        return self.name


@dataclass(eq=False)
class Intercepted(TypeNode):
    """A type whose serialization is delegated to a provider."""

    name: str = ""
    provider: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(eq=False)
class Polymorphic(TypeNode):
    """A closed set of struct implementers, written as ``[discriminator, payload]``."""

    name: str = ""
    variants: list[Struct] = field(default_factory=list, repr=False)

    def __str__(self) -> str:
        return self.name


@dataclass
class IR:
    """Complete intermediate representation for one source unit."""

    # Import path of the source unit
    module: str = ""

    # Emitted root types (structs and identifiers), in declaration order
    types: list[TypeNode] = field(default_factory=list)

    # Types that failed to resolve: name -> message
    errors: dict[str, str] = field(default_factory=dict)

    # Types skipped without error (unsupported map keys, capabilities)
    skipped: list[str] = field(default_factory=list)

    limits: LimitSpec = field(default_factory=LimitSpec)
    compact_floats: bool = False
    new_time: bool = False
    clear_omitted: bool = False

    generation_comment: str = ""
