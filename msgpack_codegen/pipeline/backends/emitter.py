"""
Code generation engine.

Walks the resolved type graph and emits the bodies of the per-type
functions: ``encode`` / ``decode`` (streaming), ``marshal`` / ``unmarshal``
(in-memory buffer) and ``msgsize`` (size estimate), plus the zero
constructor and zero test of structs. Every node kind has one strategy per
family. Structs are always reached through their own functions, so
recursive types are emitted as calls and never inlined.

Bodies are lists of source lines without the ``def`` line; the templates
of :mod:`python_backend` wrap them into functions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace

from ...utils import pascal_to_snake, python_string
from ..analyzer.ir_nodes import (
    IR,
    Array,
    Capability,
    EmptinessPolicy,
    Field,
    Identifier,
    Intercepted,
    KeyStrategy,
    Map,
    Pointer,
    Polymorphic,
    Primitive,
    PrimitiveKind,
    Shimmed,
    Slice,
    Struct,
    TypeNode,
)
from ..errors import CodeGenerationError

logger = logging.getLogger(__name__)

ENCODE = "encode"
MARSHAL = "marshal"
DECODE = "decode"
UNMARSHAL = "unmarshal"

# Omission bitmask word width
MASK_BITS = 64

_READS = {
    PrimitiveKind.BOOL: "dc.read_bool()",
    PrimitiveKind.INT: "dc.read_int()",
    PrimitiveKind.UINT: "dc.read_uint()",
    PrimitiveKind.FLOAT32: "dc.read_float32()",
    PrimitiveKind.FLOAT64: "dc.read_float64()",
    PrimitiveKind.COMPLEX64: "dc.read_complex64()",
    PrimitiveKind.COMPLEX128: "dc.read_complex128()",
    PrimitiveKind.STR: "dc.read_string()",
    PrimitiveKind.BYTES: "dc.read_bytes()",
    PrimitiveKind.ANY: "dc.read_any()",
}

_ZEROS = {
    PrimitiveKind.BOOL: "False",
    PrimitiveKind.FLOAT32: "0.0",
    PrimitiveKind.FLOAT64: "0.0",
    PrimitiveKind.COMPLEX64: "0j",
    PrimitiveKind.COMPLEX128: "0j",
    PrimitiveKind.STR: '""',
    PrimitiveKind.BYTES: 'b""',
    PrimitiveKind.TIME: "wire.ZERO_TIME",
    PrimitiveKind.ANY: "None",
}

# Kinds whose encoded size does not depend on the value
_FIXED_SIZE_KINDS = {
    kind
    for kind in PrimitiveKind
    if kind not in (PrimitiveKind.STR, PrimitiveKind.BYTES, PrimitiveKind.ANY, PrimitiveKind.TIME)
}


@dataclass
class TypeCode:
    """Generated function bodies of one root type."""

    node: TypeNode
    # Python name of the type, used in hints
    type_name: str
    # Function name suffix: encode_<suffix>, decode_<suffix>, ...
    suffix: str
    is_struct: bool
    new_body: list[str]
    is_zero_body: list[str]
    encode_body: list[str]
    decode_body: list[str]
    marshal_body: list[str]
    unmarshal_body: list[str]
    size_body: list[str]


@dataclass(frozen=True)
class _Site:
    """Where a value is being emitted."""

    mode: str
    fld: Field | None = None
    allow_nil: bool = False

    def inner(self) -> _Site:
        # Elements never inherit the nil policy of their container
        return replace(self, allow_nil=False)


class _Body:
    """Indented source lines of one function body."""

    def __init__(self):
        self.lines: list[str] = []
        self._depth = 0
        self._counter = 0

    def __call__(self, text: str) -> None:
        self.lines.append("    " * self._depth + text)

    @contextmanager
    def block(self, header: str) -> Iterator[None]:
        self(header)
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1

    def var(self, prefix: str = "za") -> str:
        self._counter += 1
        return f"{prefix}{self._counter:04d}"


class CodeEmitter:
    """Emits serializer function bodies for the types of one IR."""

    def __init__(self, ir: IR):
        self.ir = ir
        # Names the generated code takes from the source module
        self.names: set[str] = set()
        self._suffixes: dict[int, str] = {}
        taken: set[str] = set()
        for node in ir.types:
            base = pascal_to_snake(node.label) or "type"
            suffix = base
            counter = 2
            while suffix in taken:
                suffix = f"{base}_{counter}"
                counter += 1
            taken.add(suffix)
            self._suffixes[id(node)] = suffix

    # -- helpers ------------------------------------------------------------

    def suffix(self, node: TypeNode) -> str:
        try:
            return self._suffixes[id(node)]
        except KeyError:
            raise CodeGenerationError(f"{node} has no generated functions") from None

    def _name(self, name: str) -> str:
        self.names.add(name)
        return name

    def _call(self, mode: str, node: Struct, value: str) -> str:
        suffix = self.suffix(node)
        if mode == ENCODE:
            return f"encode_{suffix}({value}, en)"
        if mode == MARSHAL:
            return f"_marshal_{suffix}({value}, en)"
        if mode == DECODE:
            return f"decode_{suffix}(dc, {value})"
        if mode == UNMARSHAL:
            return f"_unmarshal_{suffix}(dc, {value})"
        return f"msgsize_{suffix}({value})"

    def _convert(self, fn: str, fallible: bool, value: str) -> str:
        fn = self._name(fn)
        if fallible:
            return f"wire.convert({fn}, {value})"
        return f"{fn}({value})"

    def _has_codec(self, node: TypeNode) -> bool:
        return not isinstance(node, Struct) and node.capabilities.is_custom_codec

    def _unwrap(self, node: TypeNode) -> TypeNode:
        while isinstance(node, Identifier) and not self._has_codec(node):
            node = node.underlying
        return node

    def _wrap_identifier(self, node: TypeNode, value: str) -> str:
        """Rebuild an identifier value from its underlying value."""
        if not isinstance(node, Identifier) or self._has_codec(node):
            return value
        inner = self._wrap_identifier(node.underlying, value)
        if node.kind == "class":
            return f"{self._name(node.name)}({inner})"
        if node.kind == "enum":
            return f"wire.convert({self._name(node.name)}, {inner})"
        return inner

    def _shim_of(self, node: TypeNode) -> Shimmed:
        node = self._unwrap(node)
        if not isinstance(node, Shimmed):
            raise CodeGenerationError(f"map key {node} is not shimmed")
        return node

    # -- entry point --------------------------------------------------------

    def emit(self, node: TypeNode) -> TypeCode:
        """
        Emit every function body of a root type.

        Args:
            node: A root Struct or Identifier of the IR

        Returns:
            TypeCode with one body per operation family
        """
        if isinstance(node, Struct):
            type_name = self._name(node.class_name)
            code = TypeCode(
                node=node,
                type_name=type_name,
                suffix=self.suffix(node),
                is_struct=True,
                new_body=self._struct_new(node),
                is_zero_body=self._struct_is_zero(node),
                encode_body=self._struct_write(node, ENCODE),
                decode_body=self._struct_read(node, DECODE),
                marshal_body=self._struct_write(node, MARSHAL),
                unmarshal_body=self._struct_read(node, UNMARSHAL),
                size_body=self._struct_size(node),
            )
        elif isinstance(node, Identifier):
            type_name = self._name(node.name)
            code = TypeCode(
                node=node,
                type_name=type_name,
                suffix=self.suffix(node),
                is_struct=False,
                new_body=[f"return {self.zero(node)}"],
                is_zero_body=[],
                encode_body=self._root_write(node, ENCODE),
                decode_body=self._root_read(node, DECODE),
                marshal_body=self._root_write(node, MARSHAL),
                unmarshal_body=self._root_read(node, UNMARSHAL),
                size_body=self._root_size(node),
            )
        else:
            raise CodeGenerationError(f"{node} is not a root type")
        logger.debug("emitted %s as %s", node, code.suffix)
        return code

    # -- zero values --------------------------------------------------------

    def zero(self, node: TypeNode) -> str:
        """Expression building the zero value of ``node``."""
        if isinstance(node, Primitive):
            if node.kind.is_signed_int or node.kind.is_unsigned_int:
                return "0"
            return _ZEROS[node.kind]
        if isinstance(node, Slice):
            return "[]"
        if isinstance(node, Map):
            return "{}"
        if isinstance(node, Array):
            elem = self.zero(node.elem)
            if isinstance(self._unwrap(node.elem), (Primitive, Pointer, Shimmed, Polymorphic)):
                return f"({elem},) * {node.length}"
            return f"tuple({elem} for _ in range({node.length}))"
        if isinstance(node, Struct):
            return f"_new_{self.suffix(node)}()"
        if isinstance(node, Identifier) and not self._has_codec(node):
            if node.kind == "enum":
                return f"next(iter({self._name(node.name)}))"
            if node.kind == "class":
                return f"{self._name(node.name)}({self.zero(node.underlying)})"
            return self.zero(node.underlying)
        return "None"

    def _struct_new(self, node: Struct) -> list[str]:
        b = _Body()
        cls = self._name(node.class_name)
        b(f"z = {cls}.__new__({cls})")
        for path, holder in node.holders:
            holder = self._name(holder)
            b(f"z.{'.'.join(path)} = {holder}.__new__({holder})")
        for path in node.skipped_fields:
            b(f"z.{'.'.join(path)} = None")
        for fld in node.fields:
            b(f"z.{fld.accessor} = {self.zero(fld.node)}")
        b("return z")
        return b.lines

    # -- emptiness ----------------------------------------------------------

    def empty_test(self, node: TypeNode, value: str, policy: EmptinessPolicy) -> str:
        """Expression that is true when ``value`` is omitted under ``policy``."""
        custom = {
            EmptinessPolicy.OMIT_IF_CUSTOM_ZERO: (Capability.ZERO, "is_zero"),
            EmptinessPolicy.OMIT_IF_CUSTOM_EMPTY: (Capability.EMPTY, "is_empty"),
        }.get(policy)
        if custom is not None:
            capability, method = custom
            target = node
            while isinstance(target, Pointer):
                target = target.elem
            if target.capabilities & capability:
                return f"{value} is None or {value}.{method}()"
            logger.debug("%s has no %s(); omission falls back to the zero value", target, method)
        return self._default_empty(node, value)

    def _default_empty(self, node: TypeNode, value: str) -> str:
        if isinstance(node, Identifier):
            if self._has_codec(node):
                return f"{value} is None"
            return self._default_empty(node.underlying, value)
        if isinstance(node, Primitive):
            if node.kind is PrimitiveKind.TIME:
                return f"wire.is_zero_time({value})"
            if node.kind is PrimitiveKind.ANY:
                return f"{value} is None"
            return f"not {value}"
        if isinstance(node, (Slice, Map, Array)):
            return f"not {value}"
        if isinstance(node, Struct):
            return f"{value} is None or _is_zero_{self.suffix(node)}({value})"
        return f"{value} is None"

    def _struct_is_zero(self, node: Struct) -> list[str]:
        tests = [self._default_empty(fld.node, f"z.{fld.accessor}") for fld in node.fields]
        if not tests:
            return ["return True"]
        if len(tests) == 1:
            return [f"return {tests[0]}"]
        parts = [f"({t})" if " or " in t else t for t in tests]
        lines = ["return ("]
        lines.extend(f"    {part}" + (" and" if i < len(parts) - 1 else "") for i, part in enumerate(parts))
        lines.append(")")
        return lines

    # -- encode / marshal ---------------------------------------------------

    def write(self, b: _Body, node: TypeNode, value: str, site: _Site) -> None:
        """Emit statements writing ``value`` of type ``node``."""
        if self._has_codec(node):
            self._write_capability(b, node, value, site)
        elif isinstance(node, Primitive):
            self._write_primitive(b, node, value, site)
        elif isinstance(node, Pointer):
            with b.block(f"if {value} is None:"):
                b("en.write_nil()")
            with b.block("else:"):
                self.write(b, node.elem, value, site.inner())
        elif isinstance(node, Slice):
            self._write_slice(b, node, value, site)
        elif isinstance(node, Array):
            self._write_array(b, node, value, site)
        elif isinstance(node, Map):
            self._write_map(b, node, value, site)
        elif isinstance(node, Struct):
            b(self._call(site.mode, node, value))
        elif isinstance(node, Identifier):
            self.write(b, node.underlying, value, site)
        elif isinstance(node, Shimmed):
            with b.block(f"if {value} is None:"):
                b("en.write_nil()")
            with b.block("else:"):
                converted = b.var()
                b(f"{converted} = {self._convert(node.to_fn, node.fallible, value)}")
                self.write(b, Primitive(kind=node.wire), converted, site.inner())
        elif isinstance(node, Polymorphic):
            self._write_polymorphic(b, node, value, site)
        else:
            raise CodeGenerationError(f"cannot encode {node}: it has no wire representation")

    def write_primitive_call(self, kind: PrimitiveKind, value: str) -> str:
        if kind.is_signed_int:
            return f"en.write_int({value})" if kind is PrimitiveKind.INT else f"en.write_int({value}, {kind.bits})"
        if kind.is_unsigned_int:
            return f"en.write_uint({value})" if kind is PrimitiveKind.UINT else f"en.write_uint({value}, {kind.bits})"
        if kind is PrimitiveKind.FLOAT64 and self.ir.compact_floats:
            return f"en.write_float64_compact({value})"
        if kind is PrimitiveKind.TIME:
            return f"en.write_timestamp({value})" if self.ir.new_time else f"en.write_time({value})"
        method = {
            PrimitiveKind.BOOL: "write_bool",
            PrimitiveKind.FLOAT32: "write_float32",
            PrimitiveKind.FLOAT64: "write_float64",
            PrimitiveKind.COMPLEX64: "write_complex64",
            PrimitiveKind.COMPLEX128: "write_complex128",
            PrimitiveKind.STR: "write_string",
            PrimitiveKind.BYTES: "write_bytes",
            PrimitiveKind.ANY: "write_any",
        }[kind]
        return f"en.{method}({value})"

    def _write_primitive(self, b: _Body, node: Primitive, value: str, site: _Site) -> None:
        if node.kind is PrimitiveKind.BYTES:
            if site.allow_nil:
                with b.block(f"if {value} is None:"):
                    b("en.write_nil()")
                with b.block("else:"):
                    self._check_encode_limit(b, f"len({value})", site, "arrays")
                    b(self.write_primitive_call(node.kind, value))
            else:
                self._check_encode_limit(b, f'len({value} or b"")', site, "arrays")
                b(self.write_primitive_call(node.kind, f'{value} or b""'))
            return
        b(self.write_primitive_call(node.kind, value))

    def _check_encode_limit(self, b: _Body, count: str, site: _Site, kind: str) -> None:
        if not self.ir.limits.marshal:
            return
        limit = self.ir.limits.effective(site.fld, kind)
        if limit is not None:
            with b.block(f"if {count} > {limit}:"):
                b(f'raise errors.CardinalityLimitExceeded({count}, {limit}, "{kind[:-1]}")')

    def _write_slice(self, b: _Body, node: Slice, value: str, site: _Site) -> None:
        with b.block(f"if {value} is None:"):
            b("en.write_nil()" if site.allow_nil else "en.write_array_header(0)")
        with b.block("else:"):
            self._check_encode_limit(b, f"len({value})", site, "arrays")
            b(f"en.write_array_header(len({value}))")
            item = b.var()
            with b.block(f"for {item} in {value}:"):
                self.write(b, node.elem, item, site.inner())

    def _write_array(self, b: _Body, node: Array, value: str, site: _Site) -> None:
        with b.block(f"if len({value}) != {node.length}:"):
            b(f"raise errors.ArraySizeError({node.length}, len({value}))")
        b(f"en.write_array_header({node.length})")
        item = b.var()
        with b.block(f"for {item} in {value}:"):
            self.write(b, node.elem, item, site.inner())

    def _write_map(self, b: _Body, node: Map, value: str, site: _Site) -> None:
        with b.block(f"if {value} is None:"):
            b("en.write_nil()" if site.allow_nil else "en.write_map_header(0)")
        with b.block("else:"):
            self._check_encode_limit(b, f"len({value})", site, "maps")
            b(f"en.write_map_header(len({value}))")
            key, item = b.var(), b.var()
            with b.block(f"for {key}, {item} in {value}.items():"):
                b(self._write_key(node, key))
                self.write(b, node.value, item, site.inner())

    def _write_key(self, node: Map, key: str) -> str:
        strategy = node.key_strategy
        if strategy is KeyStrategy.NATIVE:
            return f"en.write_string({key})"
        if strategy is KeyStrategy.BINARY_KEY:
            return f'en.write_bytes(keys.binary_key({key}, "{node.key_kind}"))'
        if strategy is KeyStrategy.AUTO_SHIMMED_KEY:
            return f'en.write_string(keys.auto_shim_key({key}, "{node.key_kind}"))'
        if strategy is KeyStrategy.SHIMMED_KEY:
            shim = self._shim_of(node.key)
            converted = self._convert(shim.to_fn, shim.fallible, key)
            if shim.wire is PrimitiveKind.BYTES:
                return f"en.write_bytes({converted})"
            return f"en.write_string({converted})"
        raise CodeGenerationError(f"map key {node.key} has no wire form")

    def _write_polymorphic(self, b: _Body, node: Polymorphic, value: str, site: _Site) -> None:
        with b.block(f"if {value} is None:"):
            b("en.write_nil()")
        for variant in node.variants:
            with b.block(f"elif type({value}) is {self._name(variant.class_name)}:"):
                b("en.write_array_header(2)")
                b(f"en.write_string({python_string(variant.discriminator)})")
                b(self._call(site.mode, variant, value))
        with b.block("else:"):
            b(f"raise errors.UnknownVariantError(type({value}).__name__)")

    def _write_capability(self, b: _Body, node: TypeNode, value: str, site: _Site) -> None:
        caps = node.capabilities
        with b.block(f"if {value} is None:"):
            b("en.write_nil()")
        with b.block("else:"):
            if isinstance(node, Intercepted):
                provider = self._name(node.provider)
                if site.mode == MARSHAL:
                    b(f"en.buffer = {provider}().marshal_msg({value}, en.buffer)")
                else:
                    b(f"{provider}().encode_msg({value}, en)")
            elif caps & Capability.MSGP:
                if site.mode == MARSHAL:
                    b(f"en.buffer = {value}.marshal_msg(en.buffer)")
                else:
                    b(f"{value}.encode_msg(en)")
            elif caps & Capability.BINARY:
                if site.mode == MARSHAL and caps & Capability.BINARY_APPEND:
                    b(f"en.write_bytes({value}.append_binary(bytearray()))")
                else:
                    b(f"en.write_bytes({value}.marshal_binary())")
            elif caps & Capability.TEXT_AS_STRING:
                b(f"en.write_string({value}.marshal_text())")
            else:
                b(f'en.write_bytes({value}.marshal_text().encode("utf-8"))')

    def _struct_write(self, node: Struct, mode: str) -> list[str]:
        b = _Body()
        with b.block("if z is None:"):
            b("en.write_nil()")
            b("return")
        if node.is_tuple:
            b(f"en.write_array_header({len(node.fields)})")
            for fld in node.fields:
                self.write(b, fld.node, f"z.{fld.accessor}", _Site(mode, fld, fld.allow_nil))
            return b.lines

        omittable = [fld for fld in node.fields if fld.emptiness is not EmptinessPolicy.ALWAYS]
        if not omittable:
            b(f"en.write_map_header({len(node.fields)})")
            for fld in node.fields:
                b(f"en.write_string({python_string(fld.wire_name)})")
                self.write(b, fld.node, f"z.{fld.accessor}", _Site(mode, fld, fld.allow_nil))
            return b.lines

        # Omission is decided once: the header needs the retained count
        bits = self._mask_bits(b, omittable)
        count = b.var("zb")
        b(f"{count} = {len(node.fields)}")
        for fld in omittable:
            test = self.empty_test(fld.node, f"z.{fld.accessor}", fld.emptiness)
            with b.block(f"if {test}:"):
                b(f"{bits[fld]} |= {bits[fld, 'bit']}")
                b(f"{count} -= 1")
        b(f"en.write_map_header({count})")
        for fld in node.fields:
            site = _Site(mode, fld, fld.allow_nil)
            if fld.emptiness is EmptinessPolicy.ALWAYS:
                b(f"en.write_string({python_string(fld.wire_name)})")
                self.write(b, fld.node, f"z.{fld.accessor}", site)
                continue
            with b.block(f"if not {bits[fld]} & {bits[fld, 'bit']}:"):
                b(f"en.write_string({python_string(fld.wire_name)})")
                self.write(b, fld.node, f"z.{fld.accessor}", site)
        return b.lines

    def _mask_bits(self, b: _Body, fields: list[Field]) -> dict:
        """Declare a field bitmask and map each field to its mask word and bit."""
        mask = b.var("zb")
        words = (len(fields) + MASK_BITS - 1) // MASK_BITS
        b(f"{mask} = 0" if words == 1 else f"{mask} = [0] * {words}")
        bits: dict = {}
        for index, fld in enumerate(fields):
            bits[fld] = mask if words == 1 else f"{mask}[{index // MASK_BITS}]"
            bits[fld, "bit"] = hex(1 << (index % MASK_BITS))
        return bits

    def _root_write(self, node: Identifier, mode: str) -> list[str]:
        b = _Body()
        with b.block("if z is None:"):
            b("en.write_nil()")
            b("return")
        self.write(b, node, "z", _Site(mode, allow_nil=True))
        return b.lines

    # -- decode / unmarshal -------------------------------------------------

    def read(self, b: _Body, node: TypeNode, target: str, site: _Site) -> None:
        """Emit statements reading a value of type ``node`` into ``target``."""
        if self._has_codec(node):
            self._read_capability(b, node, target, site)
        elif isinstance(node, Primitive):
            self._read_primitive(b, node, target, site)
        elif isinstance(node, Pointer):
            with b.block("if dc.is_nil():"):
                b("dc.read_nil()")
                b(f"{target} = None")
            with b.block("else:"):
                self.read(b, node.elem, target, site.inner())
        elif isinstance(node, Slice):
            self._read_slice(b, node, target, site)
        elif isinstance(node, Array):
            self._read_array(b, node, target, site)
        elif isinstance(node, Map):
            self._read_map(b, node, target, site)
        elif isinstance(node, Struct):
            b(f"{target} = {self._call(site.mode, node, target)}")
        elif isinstance(node, Identifier):
            self._read_identifier(b, node, target, site)
        elif isinstance(node, Shimmed):
            with b.block("if dc.is_nil():"):
                b("dc.read_nil()")
                b(f"{target} = None")
            with b.block("else:"):
                raw = b.var()
                self.read(b, Primitive(kind=node.wire), raw, site.inner())
                b(f"{target} = {self._convert(node.from_fn, node.fallible, raw)}")
        elif isinstance(node, Polymorphic):
            self._read_polymorphic(b, node, target, site)
        else:
            raise CodeGenerationError(f"cannot decode {node}: it has no wire representation")

    def read_primitive_call(self, kind: PrimitiveKind) -> str:
        if kind.is_signed_int and kind is not PrimitiveKind.INT:
            return f"dc.read_int({kind.bits})"
        if kind.is_unsigned_int and kind is not PrimitiveKind.UINT:
            return f"dc.read_uint({kind.bits})"
        if kind is PrimitiveKind.TIME:
            return "dc.read_timestamp()" if self.ir.new_time else "dc.read_time()"
        return _READS[kind]

    def _read_primitive(self, b: _Body, node: Primitive, target: str, site: _Site) -> None:
        call = self.read_primitive_call(node.kind)
        if node.kind is PrimitiveKind.BYTES:
            # Byte strings share the array limit, checked against the header
            limit = self.ir.limits.effective(site.fld, "arrays")
            if limit is not None:
                call = f"dc.read_bytes({limit})"
            if site.allow_nil:
                with b.block("if dc.is_nil():"):
                    b("dc.read_nil()")
                    b(f"{target} = None")
                with b.block("else:"):
                    b(f"{target} = {call}")
                return
        b(f"{target} = {call}")

    def _check_decode_limit(self, b: _Body, count: str, site: _Site, kind: str) -> None:
        limit = self.ir.limits.effective(site.fld, kind)
        if limit is not None:
            with b.block(f"if {count} > {limit}:"):
                b(f'raise errors.CardinalityLimitExceeded({count}, {limit}, "{kind[:-1]}")')

    def _read_with_context(self, b: _Body, node: TypeNode, target: str, context: str, site: _Site) -> None:
        with b.block("try:"):
            self.read(b, node, target, site)
        with b.block("except errors.WireError as err:"):
            b(f"err.add_context({context})")
            b("raise")

    def _read_slice(self, b: _Body, node: Slice, target: str, site: _Site) -> None:
        with b.block("if dc.is_nil():"):
            b("dc.read_nil()")
            if site.allow_nil:
                b(f"{target} = None")
            else:
                b(f"{target} = None if {target} is None else []")
        with b.block("else:"):
            count = b.var("zb")
            b(f"{count} = dc.read_array_header()")
            self._check_decode_limit(b, count, site, "arrays")
            items, index = b.var(), b.var()
            b(f"{items} = [None] * {count}")
            with b.block(f"for {index} in range({count}):"):
                self._read_with_context(b, node.elem, f"{items}[{index}]", index, site.inner())
            b(f"{target} = {items}")

    def _read_array(self, b: _Body, node: Array, target: str, site: _Site) -> None:
        count = b.var("zb")
        b(f"{count} = dc.read_array_header()")
        with b.block(f"if {count} != {node.length}:"):
            b(f"raise errors.ArraySizeError({node.length}, {count})")
        items, index = b.var(), b.var()
        b(f"{items} = [None] * {node.length}")
        with b.block(f"for {index} in range({node.length}):"):
            self._read_with_context(b, node.elem, f"{items}[{index}]", index, site.inner())
        b(f"{target} = tuple({items})")

    def _read_map(self, b: _Body, node: Map, target: str, site: _Site) -> None:
        with b.block("if dc.is_nil():"):
            b("dc.read_nil()")
            if site.allow_nil:
                b(f"{target} = None")
            else:
                b(f"{target} = None if {target} is None else {{}}")
        with b.block("else:"):
            count = b.var("zb")
            b(f"{count} = dc.read_map_header()")
            self._check_decode_limit(b, count, site, "maps")
            items, key, item = b.var(), b.var(), b.var()
            b(f"{items} = {{}}")
            with b.block(f"for _ in range({count}):"):
                b(f"{key} = {self._read_key(node)}")
                b(f"{item} = None")
                self._read_with_context(b, node.value, item, key, site.inner())
                b(f"{items}[{key}] = {item}")
            b(f"{target} = {items}")

    def _read_key(self, node: Map) -> str:
        strategy = node.key_strategy
        if strategy is KeyStrategy.NATIVE:
            raw = "dc.read_map_key()"
        elif strategy is KeyStrategy.BINARY_KEY:
            raw = f'keys.from_binary_key(dc.read_bytes(), "{node.key_kind}")'
        elif strategy is KeyStrategy.AUTO_SHIMMED_KEY:
            raw = f'keys.from_auto_shim_key(dc.read_map_key(), "{node.key_kind}")'
        elif strategy is KeyStrategy.SHIMMED_KEY:
            shim = self._shim_of(node.key)
            read = "dc.read_bytes()" if shim.wire is PrimitiveKind.BYTES else "dc.read_map_key()"
            return self._wrap_identifier(node.key, self._convert(shim.from_fn, shim.fallible, read))
        else:
            raise CodeGenerationError(f"map key {node.key} has no wire form")
        return self._wrap_identifier(node.key, raw)

    def _read_identifier(self, b: _Body, node: Identifier, target: str, site: _Site) -> None:
        if node.kind == "newtype":
            self.read(b, node.underlying, target, site)
            return
        raw = b.var()
        nullable = isinstance(self._unwrap(node.underlying), (Slice, Map, Pointer, Struct, Polymorphic)) or site.allow_nil
        if nullable:
            b(f"{raw} = {target}")
        self.read(b, node.underlying, raw, site)
        wrapped = self._wrap_identifier(node, raw)
        b(f"{target} = None if {raw} is None else {wrapped}" if nullable else f"{target} = {wrapped}")

    def _read_polymorphic(self, b: _Body, node: Polymorphic, target: str, site: _Site) -> None:
        with b.block("if dc.is_nil():"):
            b("dc.read_nil()")
            b(f"{target} = None")
        with b.block("else:"):
            count, tag = b.var("zb"), b.var()
            b(f"{count} = dc.read_array_header()")
            with b.block(f"if {count} != 2:"):
                b(f"raise errors.ArraySizeError(2, {count})")
            b(f"{tag} = dc.read_string()")
            keyword = "if"
            for variant in node.variants:
                with b.block(f"{keyword} {tag} == {python_string(variant.discriminator)}:"):
                    b(f"{target} = {self._call(site.mode, variant, 'None')}")
                keyword = "elif"
            with b.block("else:"):
                b(f"raise errors.UnknownVariantError({tag})")

    def _read_capability(self, b: _Body, node: TypeNode, target: str, site: _Site) -> None:
        caps = node.capabilities
        with b.block("if dc.is_nil():"):
            b("dc.read_nil()")
            b(f"{target} = None")
        with b.block("else:"):
            if isinstance(node, Intercepted):
                provider = self._name(node.provider)
                if site.mode == UNMARSHAL:
                    b(f"{target} = dc.unmarshal_with({provider}().unmarshal_msg)")
                else:
                    b(f"{target} = {provider}().decode_msg(dc)")
                return
            name = self._name(node.name)
            if caps & Capability.MSGP:
                if site.mode == UNMARSHAL:
                    b(f"{target} = dc.unmarshal_with({name}.unmarshal_msg)")
                else:
                    b(f"{target} = {name}.decode_msg(dc)")
            elif caps & Capability.BINARY:
                b(f"{target} = {name}.unmarshal_binary(dc.read_bytes())")
            else:
                b(f"{target} = {name}.unmarshal_text(dc.read_text())")

    def _struct_read(self, node: Struct, mode: str) -> list[str]:
        b = _Body()
        with b.block("if dc.is_nil():"):
            b("dc.read_nil()")
            b("return None")
        with b.block("if z is None:"):
            b(f"z = _new_{self.suffix(node)}()")
        if node.is_tuple:
            self._struct_read_tuple(b, node, mode)
        else:
            self._struct_read_map(b, node, mode)
        b("return z")
        return b.lines

    def _struct_read_tuple(self, b: _Body, node: Struct, mode: str) -> None:
        count = b.var("zb")
        b(f"{count} = dc.read_array_header()")
        with b.block(f"if {count} != {len(node.fields)}:"):
            b(f"raise errors.ArraySizeError({len(node.fields)}, {count})")
        if not node.fields:
            return
        b('key = ""')
        with b.block("try:"):
            for fld in node.fields:
                b(f"key = {python_string(fld.wire_name)}")
                self.read(b, fld.node, f"z.{fld.accessor}", _Site(mode, fld, fld.allow_nil))
        with b.block("except errors.WireError as err:"):
            b("err.add_context(key)")
            b("raise")

    def _struct_read_map(self, b: _Body, node: Struct, mode: str) -> None:
        count = b.var("zb")
        b(f"{count} = dc.read_map_header()")
        if self.ir.limits.maps is not None:
            self._check_decode_limit(b, count, _Site(mode), "maps")

        # The last field with a given wire key wins
        dispatch: dict[str, Field] = {}
        for fld in node.fields:
            dispatch.pop(fld.wire_name, None)
            dispatch[fld.wire_name] = fld

        seen = None
        if self.ir.clear_omitted and dispatch:
            seen = self._mask_bits(b, list(dispatch.values()))

        with b.block(f"for _ in range({count}):"):
            b("key = dc.read_map_key()")
            if not dispatch:
                b("dc.skip()")
            else:
                with b.block("try:"):
                    keyword = "if"
                    for wire_name, fld in dispatch.items():
                        with b.block(f"{keyword} key == {python_string(wire_name)}:"):
                            self.read(b, fld.node, f"z.{fld.accessor}", _Site(mode, fld, fld.allow_nil))
                            if seen is not None:
                                b(f"{seen[fld]} |= {seen[fld, 'bit']}")
                        keyword = "elif"
                    with b.block("else:"):
                        b("dc.skip()")
                with b.block("except errors.WireError as err:"):
                    b("err.add_context(key)")
                    b("raise")

        if seen is not None:
            for fld in dispatch.values():
                with b.block(f"if not {seen[fld]} & {seen[fld, 'bit']}:"):
                    b(f"z.{fld.accessor} = {self.zero(fld.node)}")

    def _root_read(self, node: Identifier, mode: str) -> list[str]:
        b = _Body()
        with b.block("if dc.is_nil():"):
            b("dc.read_nil()")
            b("return None")
        self.read(b, node, "z", _Site(mode, allow_nil=True))
        b("return z")
        return b.lines

    # -- size ---------------------------------------------------------------

    def size_const(self, node: TypeNode) -> str | None:
        """Size expression of a node whose encoded size never depends on the value."""
        if self._has_codec(node):
            return None
        if isinstance(node, Primitive):
            if node.kind in _FIXED_SIZE_KINDS:
                return f"sizes.{node.kind.value.upper()}_SIZE"
            if node.kind is PrimitiveKind.TIME:
                return "sizes.TIME_SIZE"
            return None
        if isinstance(node, Identifier):
            return self.size_const(node.underlying)
        if isinstance(node, Pointer):
            # every value takes at least as much room as nil
            return self.size_const(node.elem)
        if isinstance(node, Array):
            elem = self.size_const(node.elem)
            if elem is not None:
                return f"sizes.ARRAY_HEADER_SIZE + {node.length} * {elem}"
        return None

    def size(self, b: _Body, node: TypeNode, value: str) -> None:
        """Emit statements adding the size bound of ``value`` to ``s``."""
        const = self.size_const(node)
        if const is not None:
            b(f"s += {const}")
        elif self._has_codec(node):
            self._size_capability(b, node, value)
        elif isinstance(node, Primitive):
            function = {PrimitiveKind.STR: "str_size", PrimitiveKind.BYTES: "bytes_size"}.get(node.kind, "any_size")
            b(f"s += sizes.{function}({value})")
        elif isinstance(node, Pointer):
            with b.block(f"if {value} is None:"):
                b("s += sizes.NIL_SIZE")
            with b.block("else:"):
                self.size(b, node.elem, value)
        elif isinstance(node, Slice):
            elem = self.size_const(node.elem)
            if elem is not None:
                b(f"s += sizes.ARRAY_HEADER_SIZE + len({value} or ()) * {elem}")
            else:
                b("s += sizes.ARRAY_HEADER_SIZE")
                item = b.var()
                with b.block(f"for {item} in {value} or ():"):
                    self.size(b, node.elem, item)
        elif isinstance(node, Array):
            b("s += sizes.ARRAY_HEADER_SIZE")
            item = b.var()
            with b.block(f"for {item} in {value}:"):
                self.size(b, node.elem, item)
        elif isinstance(node, Map):
            b("s += sizes.MAP_HEADER_SIZE")
            key, item = b.var(), b.var()
            with b.block(f"for {key}, {item} in ({value} or {{}}).items():"):
                b(f"s += {self._key_size(node, key)}")
                self.size(b, node.value, item)
        elif isinstance(node, Struct):
            b(f"s += {self._call('size', node, value)}")
        elif isinstance(node, Identifier):
            self.size(b, node.underlying, value)
        elif isinstance(node, Shimmed):
            with b.block(f"if {value} is None:"):
                b("s += sizes.NIL_SIZE")
            with b.block("else:"):
                converted = b.var()
                b(f"{converted} = {self._convert(node.to_fn, node.fallible, value)}")
                self.size(b, Primitive(kind=node.wire), converted)
        elif isinstance(node, Polymorphic):
            with b.block(f"if {value} is None:"):
                b("s += sizes.NIL_SIZE")
            for variant in node.variants:
                with b.block(f"elif type({value}) is {self._name(variant.class_name)}:"):
                    tag_size = len(variant.discriminator.encode("utf-8"))
                    call = self._call("size", variant, value)
                    b(f"s += sizes.ARRAY_HEADER_SIZE + sizes.STR_PREFIX_SIZE + {tag_size} + {call}")
            with b.block("else:"):
                b(f"raise errors.UnknownVariantError(type({value}).__name__)")
        else:
            raise CodeGenerationError(f"cannot size {node}: it has no wire representation")

    def _key_size(self, node: Map, key: str) -> str:
        strategy = node.key_strategy
        if strategy is KeyStrategy.NATIVE:
            return f"sizes.str_size({key})"
        if strategy is KeyStrategy.BINARY_KEY:
            return f'sizes.bytes_size(keys.binary_key({key}, "{node.key_kind}"))'
        if strategy is KeyStrategy.AUTO_SHIMMED_KEY:
            return f'sizes.str_size(keys.auto_shim_key({key}, "{node.key_kind}"))'
        shim = self._shim_of(node.key)
        converted = self._convert(shim.to_fn, shim.fallible, key)
        if shim.wire is PrimitiveKind.BYTES:
            return f"sizes.bytes_size({converted})"
        return f"sizes.str_size({converted})"

    def _size_capability(self, b: _Body, node: TypeNode, value: str) -> None:
        caps = node.capabilities
        with b.block(f"if {value} is None:"):
            b("s += sizes.NIL_SIZE")
        with b.block("else:"):
            if isinstance(node, Intercepted):
                b(f"s += {self._name(node.provider)}().msgsize({value})")
            elif caps & Capability.MSGP:
                b(f"s += {value}.msgsize()")
            elif caps & Capability.BINARY:
                b(f"s += sizes.bytes_size({value}.marshal_binary())")
            else:
                b(f"s += sizes.str_size({value}.marshal_text())")

    def _struct_size(self, node: Struct) -> list[str]:
        b = _Body()
        with b.block("if z is None:"):
            b("return sizes.NIL_SIZE")
        terms = ["sizes.ARRAY_HEADER_SIZE" if node.is_tuple else "sizes.MAP_HEADER_SIZE"]
        if not node.is_tuple and node.fields:
            name_bytes = sum(len(fld.wire_name.encode("utf-8")) for fld in node.fields)
            terms.append(f"{len(node.fields)} * sizes.STR_PREFIX_SIZE + {name_bytes}")
        dynamic = []
        for fld in node.fields:
            const = self.size_const(fld.node)
            if const is not None:
                terms.append(const)
            else:
                dynamic.append(fld)
        b(f"s = {' + '.join(terms)}")
        for fld in dynamic:
            self.size(b, fld.node, f"z.{fld.accessor}")
        b("return s")
        return b.lines

    def _root_size(self, node: Identifier) -> list[str]:
        b = _Body()
        with b.block("if z is None:"):
            b("return sizes.NIL_SIZE")
        const = self.size_const(node)
        if const is not None:
            b(f"return {const}")
            return b.lines
        b("s = 0")
        self.size(b, node, "z")
        b("return s")
        return b.lines
