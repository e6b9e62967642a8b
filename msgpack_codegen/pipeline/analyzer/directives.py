"""
Directive resolution.

Parses the file-scope ``# msgp:`` directives and the field-scope tags
(``dataclasses.field(metadata={"msg": "name,omitempty"})``) and merges them
into the effective configuration of every field, in strict precedence
order: innate type defaults, then file scope, then field scope.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from ...runtime.keys import AUTO_SHIM_KEY_KINDS, BINARY_KEY_KINDS
from ..errors import DirectiveError
from ..schema_ast.nodes import ClassDecl, Directive, FieldDecl, TypeExpr
from .ir_nodes import (
    PRIMITIVE_NAMES,
    SIZED_NAMES,
    Array,
    Capability,
    EmptinessPolicy,
    Field,
    Identifier,
    Intercepted,
    KeyStrategy,
    LimitSpec,
    Map,
    Pointer,
    Primitive,
    PrimitiveKind,
    Shimmed,
    Slice,
    Struct,
    TypeNode,
)

logger = logging.getLogger(__name__)

DEFAULT_TAG = "msg"

MAP_KEY_MODES = ("native", "binkeys", "shim", "autoshim")

# Capability names accepted by "# msgp:assume"
ASSUMABLE_CAPABILITIES = {
    "msgp": Capability.MSGP,
    "binary": Capability.BINARY,
    "binary_append": Capability.BINARY | Capability.BINARY_APPEND,
    "text": Capability.TEXT,
    "zero": Capability.ZERO,
    "empty": Capability.EMPTY,
}


@dataclass
class ShimSpec:
    """``# msgp:shim T as:str using:to_fn/from_fn witherr:true``"""

    type_name: str
    wire: PrimitiveKind
    to_fn: str
    from_fn: str
    fallible: bool = False


@dataclass
class FileDirectives:
    """File-scope directives of one source unit."""

    ignore: set[str] = field(default_factory=set)
    ignore_patterns: list[re.Pattern] = field(default_factory=list)
    tuples: set[str] = field(default_factory=set)
    tag_name: str = DEFAULT_TAG
    # Types the custom tag applies to (empty = every type)
    tag_types: set[str] = field(default_factory=set)
    flatten: set[str] = field(default_factory=set)
    replacements: dict[str, TypeExpr] = field(default_factory=dict)
    shims: dict[str, ShimSpec] = field(default_factory=dict)
    intercepts: dict[str, str] = field(default_factory=dict)
    limits: LimitSpec = field(default_factory=LimitSpec)
    map_keys: str = "native"
    compact_floats: bool = False
    new_time: bool = False
    clear_omitted: bool = False
    capabilities: dict[str, Capability] = field(default_factory=dict)

    def is_ignored(self, name: str) -> bool:
        return name in self.ignore or any(p.fullmatch(name) for p in self.ignore_patterns)

    def tag_for(self, type_name: str) -> str:
        """Metadata key holding the field tags of ``type_name``."""
        if self.tag_types and type_name not in self.tag_types:
            return DEFAULT_TAG
        return self.tag_name


@dataclass
class FieldTag:
    """Field-scope directives parsed from one tag string."""

    name: str | None = None
    ignore: bool = False
    emptiness: EmptinessPolicy = EmptinessPolicy.ALWAYS
    allow_nil: bool = False
    limit: int | None = None
    flatten: bool = False


def _options(args: list[str]) -> tuple[list[str], dict[str, str]]:
    """Split directive arguments into positional words and ``key:value`` options."""
    positional = []
    options = {}
    for arg in args:
        key, sep, value = arg.partition(":")
        if sep and key and not key.startswith("regex"):
            options[key] = value
        else:
            positional.append(arg)
    return positional, options


def _parse_bool(value: str, directive: Directive) -> bool:
    if value.lower() in ("true", "1", "yes"):
        return True
    if value.lower() in ("false", "0", "no"):
        return False
    raise DirectiveError(f"line {directive.lineno}: {directive}: expected a boolean, got {value!r}")


def _parse_int(value: str, directive: Directive) -> int:
    try:
        number = int(value)
    except ValueError:
        raise DirectiveError(f"line {directive.lineno}: {directive}: expected an integer, got {value!r}") from None
    if number < 0:
        raise DirectiveError(f"line {directive.lineno}: {directive}: limit must not be negative")
    return number


class DirectiveResolver:
    """Builds the effective directive configuration of types and fields."""

    def __init__(self, type_parser: Callable[[str], TypeExpr] | None = None):
        """
        Initialize the resolver.

        Args:
            type_parser: Parses a type expression string (used by ``replace``)
        """
        self._type_parser = type_parser or (lambda text: TypeExpr(text))
        self.directives = FileDirectives()

    # -- file scope ---------------------------------------------------------

    def parse_file_directives(self, directives: list[Directive]) -> FileDirectives:
        """
        Parse every file-scope directive.

        Malformed or unknown directives are logged and skipped; they never
        abort generation.
        """
        result = FileDirectives()
        for directive in directives:
            handler = getattr(self, f"_directive_{directive.name}", None)
            if handler is None:
                logger.warning("line %d: unknown directive %r ignored", directive.lineno, directive.name)
                continue
            try:
                handler(directive, result)
            except DirectiveError as e:
                logger.warning("%s (directive ignored)", e)
        self.directives = result
        return result

    def _directive_ignore(self, directive: Directive, result: FileDirectives) -> None:
        for arg in directive.args:
            if arg.startswith("regex:"):
                try:
                    result.ignore_patterns.append(re.compile(arg[len("regex:") :]))
                except re.error as e:
                    raise DirectiveError(f"line {directive.lineno}: bad pattern {arg!r}: {e}") from e
            else:
                result.ignore.add(arg)

    def _directive_tuple(self, directive: Directive, result: FileDirectives) -> None:
        result.tuples.update(directive.args)

    def _directive_tag(self, directive: Directive, result: FileDirectives) -> None:
        if not directive.args:
            raise DirectiveError(f"line {directive.lineno}: tag directive needs a tag name")
        result.tag_name = directive.args[0]
        result.tag_types.update(directive.args[1:])

    def _directive_flatten(self, directive: Directive, result: FileDirectives) -> None:
        result.flatten.update(directive.args)

    def _directive_replace(self, directive: Directive, result: FileDirectives) -> None:
        positional, options = _options(directive.args)
        if len(positional) != 1 or "with" not in options:
            raise DirectiveError(f"line {directive.lineno}: expected 'replace Type with:Replacement'")
        result.replacements[positional[0]] = self._type_parser(options["with"])

    def _directive_shim(self, directive: Directive, result: FileDirectives) -> None:
        positional, options = _options(directive.args)
        if len(positional) != 1 or "as" not in options or "using" not in options:
            raise DirectiveError(f"line {directive.lineno}: expected 'shim Type as:wire using:to/from'")
        wire = PRIMITIVE_NAMES.get(options["as"]) or SIZED_NAMES.get(options["as"])
        if wire is None or wire in (PrimitiveKind.ANY, PrimitiveKind.TIME):
            raise DirectiveError(f"line {directive.lineno}: cannot shim to {options['as']!r}")
        to_fn, sep, from_fn = options["using"].partition("/")
        if not sep or not to_fn or not from_fn:
            raise DirectiveError(f"line {directive.lineno}: 'using' needs two functions separated by '/'")
        fallible = _parse_bool(options["witherr"], directive) if "witherr" in options else False
        result.shims[positional[0]] = ShimSpec(positional[0], wire, to_fn, from_fn, fallible)

    def _directive_intercept(self, directive: Directive, result: FileDirectives) -> None:
        positional, options = _options(directive.args)
        if not positional or "using" not in options:
            raise DirectiveError(f"line {directive.lineno}: expected 'intercept Type using:provider'")
        for name in positional:
            result.intercepts[name] = options["using"]

    def _directive_limit(self, directive: Directive, result: FileDirectives) -> None:
        _, options = _options(directive.args)
        limits = LimitSpec()
        if "arrays" in options:
            limits.arrays = _parse_int(options["arrays"], directive)
        if "maps" in options:
            limits.maps = _parse_int(options["maps"], directive)
        if "marshal" in options:
            limits.marshal = _parse_bool(options["marshal"], directive)
        result.limits = limits

    def _directive_maps(self, directive: Directive, result: FileDirectives) -> None:
        if len(directive.args) != 1 or directive.args[0] not in MAP_KEY_MODES:
            raise DirectiveError(f"line {directive.lineno}: maps mode must be one of {', '.join(MAP_KEY_MODES)}")
        result.map_keys = directive.args[0]

    def _directive_compactfloats(self, directive: Directive, result: FileDirectives) -> None:
        result.compact_floats = True

    def _directive_newtime(self, directive: Directive, result: FileDirectives) -> None:
        result.new_time = True

    def _directive_clearomitted(self, directive: Directive, result: FileDirectives) -> None:
        result.clear_omitted = True

    def _add_capability(self, result: FileDirectives, names: list[str], capability: Capability) -> None:
        for name in names:
            result.capabilities[name] = result.capabilities.get(name, Capability.NONE) | capability

    def _directive_binmarshal(self, directive: Directive, result: FileDirectives) -> None:
        self._add_capability(result, directive.args, Capability.BINARY)

    def _directive_textmarshal(self, directive: Directive, result: FileDirectives) -> None:
        positional, options = _options(directive.args)
        capability = Capability.TEXT
        if options.get("as") == "string":
            capability |= Capability.TEXT_AS_STRING
        elif "as" in options:
            raise DirectiveError(f"line {directive.lineno}: textmarshal only supports as:string")
        self._add_capability(result, positional, capability)

    def _directive_assume(self, directive: Directive, result: FileDirectives) -> None:
        if len(directive.args) != 2:
            raise DirectiveError(f"line {directive.lineno}: expected 'assume Type cap,cap'")
        capability = Capability.NONE
        for name in directive.args[1].split(","):
            if name not in ASSUMABLE_CAPABILITIES:
                raise DirectiveError(f"line {directive.lineno}: unknown capability {name!r}")
            capability |= ASSUMABLE_CAPABILITIES[name]
        self._add_capability(result, [directive.args[0]], capability)

    # -- field scope --------------------------------------------------------

    def parse_field_tag(self, tag: str | None) -> FieldTag:
        """Parse ``"name,omitempty,allownil,limit=10"`` (or ``"-"``)."""
        result = FieldTag()
        if tag is None:
            return result
        if tag.strip() == "-":
            result.ignore = True
            return result

        name, *options = [part.strip() for part in tag.split(",")]
        result.name = name or None
        for option in options:
            if option == "omitempty":
                result.emptiness = EmptinessPolicy.OMIT_IF_DEFAULT
            elif option == "omitzero":
                result.emptiness = EmptinessPolicy.OMIT_IF_CUSTOM_ZERO
            elif option == "omitisempty":
                result.emptiness = EmptinessPolicy.OMIT_IF_CUSTOM_EMPTY
            elif option == "allownil":
                result.allow_nil = True
            elif option == "flatten":
                result.flatten = True
            elif option.startswith("limit="):
                try:
                    result.limit = int(option[len("limit=") :])
                except ValueError:
                    logger.warning("bad limit in field tag %r ignored", tag)
            elif option:
                logger.warning("unknown option %r in field tag %r ignored", option, tag)
        return result

    def field_tag(self, owner: ClassDecl, decl: FieldDecl) -> FieldTag:
        """Read the field tag of ``decl`` under the tag name active for ``owner``."""
        return self.parse_field_tag(decl.metadata.get(self.directives.tag_for(owner.name)))

    # -- effective configuration -------------------------------------------

    def resolve_fields(self, struct: Struct) -> None:
        """Compute wire names, omission, nil and limit policy of every field."""
        struct.is_tuple = struct.class_name in self.directives.tuples or struct.name in self.directives.tuples
        for ordinal, fld in enumerate(struct.fields):
            fld.ordinal = ordinal
            self.resolve_field(struct, fld)

    def resolve_field(self, struct: Struct, fld: Field) -> Field:
        """Apply the field tag of ``fld`` on top of the type and file defaults."""
        tag = fld.tag if isinstance(fld.tag, FieldTag) else FieldTag()
        fld.owner = struct.name
        fld.wire_name = tag.name or fld.name
        fld.limit = tag.limit
        fld.allow_nil = tag.allow_nil and self._accepts_nil(fld.node)
        if tag.allow_nil and not fld.allow_nil:
            logger.debug("allownil has no effect on %s.%s (%s)", struct.name, fld.name, fld.node)
        # Tuple layout and interception veto omission silently
        if struct.is_tuple or isinstance(fld.node, Intercepted):
            fld.emptiness = EmptinessPolicy.ALWAYS
        else:
            fld.emptiness = tag.emptiness
        return fld

    def _accepts_nil(self, node: TypeNode) -> bool:
        if isinstance(node, Identifier):
            return self._accepts_nil(node.underlying)
        if isinstance(node, Primitive):
            return node.kind is PrimitiveKind.BYTES
        return isinstance(node, (Slice, Map))

    def effective_limit(self, fld: Field | None, kind: str) -> int | None:
        """Limit for a slice or bytes (``kind="arrays"``) or map inside ``fld``: field scope wins."""
        return self.directives.limits.effective(fld, kind)

    def key_strategy(self, key: TypeNode) -> tuple[KeyStrategy, str]:
        """Pick how keys of type ``key`` are written under the file's map mode."""
        mode = self.directives.map_keys
        node = key
        while isinstance(node, Identifier):
            node = node.underlying

        if isinstance(node, Shimmed) and node.wire in (PrimitiveKind.STR, PrimitiveKind.BYTES):
            if mode != "native":
                return KeyStrategy.SHIMMED_KEY, node.wire.value
            return KeyStrategy.UNSUPPORTED, ""
        if not isinstance(node, Primitive):
            return KeyStrategy.UNSUPPORTED, ""
        if node.kind is PrimitiveKind.STR:
            return KeyStrategy.NATIVE, "str"

        kind = node.kind.value
        if mode == "binkeys" and kind in BINARY_KEY_KINDS:
            return KeyStrategy.BINARY_KEY, kind
        if mode == "autoshim" and kind in AUTO_SHIM_KEY_KINDS:
            return KeyStrategy.AUTO_SHIMMED_KEY, kind
        return KeyStrategy.UNSUPPORTED, ""


def contains_unsupported_map(node: TypeNode) -> bool:
    """Whether a field type holds a map whose keys cannot be written."""
    if isinstance(node, Map):
        return node.key_strategy is KeyStrategy.UNSUPPORTED or contains_unsupported_map(node.value)
    if isinstance(node, (Pointer, Slice, Array)):
        return contains_unsupported_map(node.elem)
    if isinstance(node, Identifier) and not node.capabilities.is_custom_codec:
        return contains_unsupported_map(node.underlying)
    return False
