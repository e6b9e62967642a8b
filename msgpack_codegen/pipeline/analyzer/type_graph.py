"""
Type graph construction.

Resolves the declarations of a source unit into a closed graph of
:mod:`ir_nodes`. Resolution is memoized by name; a struct registers a
placeholder before its fields are resolved so that recursive references
find a stable node. Flattened embeds and dataclass inheritance are spliced
into the owning struct, and generic classes are monomorphized: every
distinct instantiation gets its own concrete struct.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import ResolutionError
from ..schema_ast.nodes import ClassDecl, SourceUnit, TypeExpr
from .directives import DirectiveResolver, contains_unsupported_map
from .ir_nodes import (
    PRIMITIVE_NAMES,
    SIZED_NAMES,
    Array,
    Capability,
    ExternalOpaque,
    Field,
    GenericInstance,
    GenericParameter,
    Identifier,
    Intercepted,
    Map,
    Pointer,
    Polymorphic,
    Primitive,
    Shimmed,
    Slice,
    Struct,
    TypeNode,
)

logger = logging.getLogger(__name__)

MSGP_METHODS = frozenset({"encode_msg", "decode_msg", "marshal_msg", "unmarshal_msg", "msgsize"})

# Builtin bases that turn a class into a named alias
BUILTIN_BASES = {
    "str": "str",
    "int": "int",
    "float": "float",
    "complex": "complex",
    "bytes": "bytes",
    "list": "list",
    "dict": "dict",
    "IntEnum": "int",
    "IntFlag": "int",
    "StrEnum": "str",
}

ENUM_BASES = frozenset({"Enum", "IntEnum", "IntFlag", "StrEnum", "Flag"})


@dataclass
class TypeGraph:
    """Resolved types of one source unit."""

    # Declared root types that resolved, in declaration order
    roots: dict[str, TypeNode] = field(default_factory=dict)
    # Generic instantiations used anywhere, in discovery order
    instances: dict[str, GenericInstance] = field(default_factory=dict)
    # Types that failed: name -> message
    errors: dict[str, str] = field(default_factory=dict)
    # Types left out on purpose
    skipped: list[str] = field(default_factory=list)

    @property
    def types(self) -> list[TypeNode]:
        """Every type that gets generated code."""
        return list(self.roots.values()) + [inst.resolved for inst in self.instances.values()]


class TypeGraphBuilder:
    """Builds a :class:`TypeGraph` from a parsed source unit."""

    def __init__(
        self,
        unit: SourceUnit,
        resolver: DirectiveResolver,
        ignore_types: list[str] | None = None,
        unexported: bool = False,
    ):
        self.unit = unit
        self.resolver = resolver
        self.directives = resolver.directives
        self.ignore_types = set(ignore_types or [])
        self.unexported = unexported

        self._cache: dict[str, TypeNode] = {}
        self._failed: dict[str, str] = {}
        self._instances: dict[str, GenericInstance] = {}
        self._alias_stack: list[str] = []
        self._type_params = {p for c in unit.classes.values() for p in c.type_params} | set(unit.type_vars)

    # -- entry point --------------------------------------------------------

    def build(self) -> TypeGraph:
        """
        Resolve every eligible declared type.

        Returns:
            TypeGraph; failed types are reported in ``errors`` and do not
            stop the others
        """
        graph = TypeGraph()
        for name in self._root_names(graph):
            try:
                node = self.resolve(TypeExpr(name), {})
                if isinstance(node, Struct):
                    self._check_value_cycles(node)
            except ResolutionError as e:
                self._record_error(graph, name, str(e))
                continue

            if isinstance(node, Identifier) and contains_unsupported_map(node.underlying):
                logger.warning("%s: map key type has no wire form; type skipped", name)
                graph.skipped.append(name)
                continue
            if isinstance(node, (Struct, Identifier)):
                graph.roots[name] = node
                logger.debug("resolved %s -> %s", name, type(node).__name__)
            else:
                graph.skipped.append(name)

        graph.instances = {key: inst for key, inst in self._instances.items() if key not in self._failed}
        self._prune(graph)
        return graph

    def _record_error(self, graph: TypeGraph, name: str, message: str) -> None:
        graph.errors[name] = message
        logger.warning("cannot generate %s: %s", name, message)

    def _root_names(self, graph: TypeGraph) -> list[str]:
        names = []
        for name, decl in self.unit.classes.items():
            if self._is_excluded(name, graph):
                continue
            if decl.type_params or decl.is_abstract:
                continue
            if not decl.is_dataclass and self._builtin_base(decl) is None:
                continue
            if self._class_capabilities(decl).is_custom_codec:
                continue
            names.append(name)
        for name, alias in self.unit.aliases.items():
            if alias.is_newtype and not self._is_excluded(name, graph):
                if not self.directives.capabilities.get(name, Capability.NONE).is_custom_codec:
                    names.append(name)
        return names

    def _is_excluded(self, name: str, graph: TypeGraph) -> bool:
        if self.directives.is_ignored(name) or name in self.ignore_types:
            graph.skipped.append(name)
            return True
        if name.startswith("_") and not self.unexported:
            return True
        d = self.directives
        return name in d.shims or name in d.intercepts or name in d.replacements

    # -- resolution ---------------------------------------------------------

    def resolve(self, expr: TypeExpr, bindings: dict[str, TypeNode]) -> TypeNode:
        """
        Resolve a type expression.

        Args:
            expr: The annotation to resolve
            bindings: Generic parameter name -> concrete node

        Returns:
            The resolved node

        Raises:
            ResolutionError: If the expression cannot be resolved
        """
        name = expr.name
        if name == "Union":
            return self._resolve_union(expr, bindings)
        if name in bindings:
            return bindings[name]
        if name == "list":
            self._check_arity(expr, 1)
            return Slice(elem=self.resolve(expr.args[0], bindings))
        if name == "dict":
            self._check_arity(expr, 2)
            key = self.resolve(expr.args[0], bindings)
            value = self.resolve(expr.args[1], bindings)
            strategy, key_kind = self.resolver.key_strategy(key)
            return Map(key=key, value=value, key_strategy=strategy, key_kind=key_kind)
        if name == "tuple":
            return self._resolve_tuple(expr, bindings)

        d = self.directives
        if name in d.intercepts:
            return Intercepted(name=name, provider=d.intercepts[name], capabilities=Capability.INTERCEPT)
        if name in d.shims:
            shim = d.shims[name]
            return Shimmed(name=name, wire=shim.wire, to_fn=shim.to_fn, from_fn=shim.from_fn, fallible=shim.fallible)
        if name in d.replacements:
            return self._resolve_replacement(name, bindings)

        if not self.unit.declares(name):
            if name in PRIMITIVE_NAMES:
                return Primitive(kind=PRIMITIVE_NAMES[name])
            if name in SIZED_NAMES:
                return Primitive(kind=SIZED_NAMES[name])

        if name in self._type_params:
            raise ResolutionError(f"generic parameter {name} has no binding here", name)
        if name in self.unit.classes:
            return self._resolve_class(self.unit.classes[name], expr.args, bindings)
        if name in self.unit.aliases:
            return self._resolve_alias(name, bindings)
        if name in d.capabilities and d.capabilities[name].is_custom_codec:
            return ExternalOpaque(name=name, capabilities=d.capabilities[name])
        if name in self.unit.imports or "." in name:
            raise ResolutionError(f"external type {name} needs a replace, shim or intercept directive", name)
        raise ResolutionError(f"cannot resolve type {name!r}", name)

    def _check_arity(self, expr: TypeExpr, count: int) -> None:
        if len(expr.args) != count:
            raise ResolutionError(f"{expr.name} needs {count} type argument(s), got {str(expr)!r}", expr.name)

    def _resolve_tuple(self, expr: TypeExpr, bindings: dict[str, TypeNode]) -> Array:
        args = expr.args
        if len(args) == 2 and args[1].name == "...":
            raise ResolutionError(f"variable-length {expr} is not supported, use list[T]", "tuple")
        if not args or any(str(arg) != str(args[0]) for arg in args):
            raise ResolutionError(f"only homogeneous fixed-length tuples are supported, got {expr}", "tuple")
        return Array(elem=self.resolve(args[0], bindings), length=len(args))

    def _resolve_union(self, expr: TypeExpr, bindings: dict[str, TypeNode]) -> TypeNode:
        options = [arg for arg in expr.args if not arg.is_none]
        nullable = len(options) != len(expr.args)
        if not options:
            raise ResolutionError("None alone is not a serializable type", "None")
        if len(options) == 1:
            inner = self.resolve(options[0], bindings)
            return Pointer(elem=inner) if nullable else inner

        variants: list[Struct] = []
        for option in options:
            node = self.resolve(option, bindings)
            if isinstance(node, Struct):
                variants.append(node)
            elif isinstance(node, Polymorphic):
                variants.extend(node.variants)
            else:
                raise ResolutionError(f"union member {node} is not a dataclass; only unions of dataclasses are supported", str(expr))
        return self._polymorphic(" | ".join(str(o) for o in options), variants)

    def _polymorphic(self, name: str, variants: list[Struct]) -> Polymorphic:
        seen: dict[str, str] = {}
        for variant in variants:
            if variant.discriminator in seen:
                raise ResolutionError(
                    f"{variant.name} and {seen[variant.discriminator]} share the discriminator {variant.discriminator!r}",
                    name,
                )
            seen[variant.discriminator] = variant.name
        return Polymorphic(name=name, variants=variants)

    def _resolve_replacement(self, name: str, bindings: dict[str, TypeNode]) -> TypeNode:
        if name in self._alias_stack:
            raise ResolutionError(f"replacement of {name} refers to itself", name)
        self._alias_stack.append(name)
        try:
            return self.resolve(self.directives.replacements[name], bindings)
        finally:
            self._alias_stack.pop()

    def _resolve_alias(self, name: str, bindings: dict[str, TypeNode]) -> TypeNode:
        alias = self.unit.aliases[name]
        if name in self._alias_stack:
            raise ResolutionError(f"alias {name} refers to itself", name)
        if alias.is_newtype:
            if name not in self._cache:
                capabilities = self.directives.capabilities.get(name, Capability.NONE)
                self._alias_stack.append(name)
                try:
                    underlying = self.resolve(alias.target, {})
                finally:
                    self._alias_stack.pop()
                self._cache[name] = Identifier(name=name, underlying=underlying, capabilities=capabilities)
            return self._cache[name]

        self._alias_stack.append(name)
        try:
            return self.resolve(alias.target, bindings)
        finally:
            self._alias_stack.pop()

    # -- classes ------------------------------------------------------------

    def _class_capabilities(self, decl: ClassDecl) -> Capability:
        capabilities = self.directives.capabilities.get(decl.name, Capability.NONE)
        if MSGP_METHODS <= decl.methods:
            capabilities |= Capability.MSGP
        if "is_zero" in decl.methods:
            capabilities |= Capability.ZERO
        if "is_empty" in decl.methods:
            capabilities |= Capability.EMPTY
        if capabilities & Capability.BINARY and "append_binary" in decl.methods:
            capabilities |= Capability.BINARY_APPEND
        return capabilities

    def _builtin_base(self, decl: ClassDecl) -> TypeExpr | None:
        for base in decl.bases:
            if base.name in BUILTIN_BASES and not self.unit.declares(base.name):
                if base.name in ("list", "dict"):
                    return base
                return TypeExpr(BUILTIN_BASES[base.name])
        return None

    def _is_subclass(self, decl: ClassDecl, ancestor: str) -> bool:
        for base in decl.bases:
            if base.name == ancestor:
                return True
            parent = self.unit.classes.get(base.name)
            if parent is not None and parent is not decl and self._is_subclass(parent, ancestor):
                return True
        return False

    def _resolve_class(self, decl: ClassDecl, args: list[TypeExpr], bindings: dict[str, TypeNode]) -> TypeNode:
        name = decl.name
        capabilities = self._class_capabilities(decl)

        if self.directives.is_ignored(name) or name in self.ignore_types or capabilities.is_custom_codec:
            if capabilities.is_custom_codec:
                return ExternalOpaque(name=name, capabilities=capabilities)
            raise ResolutionError(f"{name} is ignored but referenced; give it encode_msg/decode_msg methods", name)

        builtin = self._builtin_base(decl)
        if builtin is not None and not decl.is_dataclass:
            if name not in self._cache:
                kind = "enum" if any(b.name in ENUM_BASES for b in decl.bases) else "class"
                self._cache[name] = Identifier(
                    name=name, underlying=self.resolve(builtin, {}), kind=kind, capabilities=capabilities
                )
            return self._cache[name]

        if decl.is_dataclass and not decl.is_abstract:
            if decl.is_frozen:
                raise ResolutionError(f"{name} is a frozen dataclass and cannot be decoded in place", name)
            if decl.type_params:
                if not args:
                    raise ResolutionError(f"generic type {name} used without type arguments", name)
                return self._instantiate(decl, [self.resolve(arg, bindings) for arg in args])
            if args:
                raise ResolutionError(f"{name} is not generic", name)
            return self._resolve_struct(decl, name, {}, [])

        if decl.is_abstract or any(self._is_subclass(c, name) for c in self.unit.classes.values()):
            return self._resolve_interface(decl)
        raise ResolutionError(f"class {name} is not a dataclass", name)

    def _resolve_interface(self, decl: ClassDecl) -> Polymorphic:
        key = f"<interface {decl.name}>"
        if key in self._cache:
            return self._cache[key]
        node = Polymorphic(name=decl.name)
        self._cache[key] = node
        implementers = [
            c
            for c in self.unit.classes.values()
            if c.is_dataclass and not c.is_abstract and not c.type_params and self._is_subclass(c, decl.name)
        ]
        if not implementers:
            del self._cache[key]
            raise ResolutionError(f"{decl.name} has no concrete dataclass implementations", decl.name)
        try:
            variants = [self._resolve_class(c, [], {}) for c in implementers]
            for variant in variants:
                if not isinstance(variant, Struct):
                    raise ResolutionError(f"{decl.name}: implementation {variant} has its own codec", decl.name)
            node.variants = self._polymorphic(decl.name, variants).variants
        except ResolutionError:
            del self._cache[key]
            raise
        return node

    def _bind(self, decl: ClassDecl, args: list[TypeNode]) -> dict[str, TypeNode]:
        if len(args) != len(decl.type_params):
            raise ResolutionError(f"{decl.name} expects {len(decl.type_params)} type arguments, got {len(args)}", decl.name)
        bindings = {}
        for param, arg in zip(decl.type_params, args):
            type_var = self.unit.type_vars.get(param)
            if type_var is not None:
                if type_var.constraints and not any(self._satisfies(arg, c) for c in type_var.constraints):
                    allowed = ", ".join(str(c) for c in type_var.constraints)
                    raise ResolutionError(f"{decl.name}: {arg} is not one of {param}'s constraints ({allowed})", decl.name)
                if type_var.bound is not None and not self._satisfies(arg, type_var.bound):
                    raise ResolutionError(f"{decl.name}: {arg} does not satisfy the bound {type_var.bound} of {param}", decl.name)
            bindings[param] = arg
        return bindings

    def _satisfies(self, arg: TypeNode, requirement: TypeExpr) -> bool:
        """Whether ``arg`` meets a TypeVar bound or constraint."""
        name = requirement.name
        if name in ("Any", "object"):
            return True
        if name == "Union":
            return any(self._satisfies(arg, option) for option in requirement.args)
        kind = PRIMITIVE_NAMES.get(name) or SIZED_NAMES.get(name)
        if kind is not None and not self.unit.declares(name):
            node = arg.underlying if isinstance(arg, Identifier) else arg
            return isinstance(node, Primitive) and node.kind is kind
        if name in self.unit.classes:
            if isinstance(arg, Struct):
                decl = self.unit.classes.get(arg.class_name)
                return arg.class_name == name or (decl is not None and self._is_subclass(decl, name))
            if isinstance(arg, (Identifier, ExternalOpaque, Polymorphic)):
                return arg.name == name
            return False
        logger.debug("cannot check %s against %s; assuming it holds", arg, name)
        return True

    def _parameter(self, name: str) -> GenericParameter:
        type_var = self.unit.type_vars.get(name)
        if type_var is None:
            return GenericParameter(name=name)
        bound = str(type_var.bound) if type_var.bound is not None else None
        return GenericParameter(name=name, bound=bound, constraints=[str(c) for c in type_var.constraints])

    def _instantiate(self, decl: ClassDecl, args: list[TypeNode]) -> Struct:
        bindings = self._bind(decl, args)
        key = f"{decl.name}[{', '.join(str(a) for a in args)}]"
        struct = self._resolve_struct(decl, key, bindings, args)
        if key not in self._instances:
            params = [self._parameter(name) for name in decl.type_params]
            self._instances[key] = GenericInstance(base=decl.name, type_args=args, params=params, resolved=struct)
        return struct

    def _resolve_struct(self, decl: ClassDecl, key: str, bindings: dict[str, TypeNode], type_args: list[TypeNode]) -> Struct:
        if key in self._failed:
            raise ResolutionError(f"depends on {key}: {self._failed[key]}", key)
        if key in self._cache:
            return self._cache[key]

        struct = Struct(
            name=key,
            class_name=decl.name,
            type_args=type_args,
            discriminator=str(decl.class_vars.get("msgp_tag", decl.name)),
            capabilities=self._class_capabilities(decl),
        )
        # Placeholder: recursive references resolve to this node
        self._cache[key] = struct
        try:
            struct.fields, struct.holders, struct.skipped_fields = self._collect_fields(decl, bindings)
        except ResolutionError as e:
            del self._cache[key]
            self._failed[key] = str(e)
            raise
        self.resolver.resolve_fields(struct)
        struct.is_complete = True
        return struct

    def _collect_fields(self, decl: ClassDecl, bindings: dict[str, TypeNode]) -> tuple[list[Field], list, list]:
        """Fields of ``decl`` with inherited fields first and flattened embeds spliced."""
        fields: list[Field] = []
        holders: list[tuple[tuple[str, ...], str]] = []
        skipped: list[tuple[str, ...]] = []

        for base in decl.bases:
            base_decl = self.unit.classes.get(base.name)
            if base_decl is None or not base_decl.is_dataclass or base_decl is decl:
                continue
            base_bindings = bindings
            if base_decl.type_params:
                base_bindings = self._bind(base_decl, [self.resolve(arg, bindings) for arg in base.args])
            base_fields, base_holders, base_skipped = self._collect_fields(base_decl, base_bindings)
            for base_field in base_fields:
                self._place(fields, base_field)
            holders.extend(base_holders)
            skipped.extend(base_skipped)

        for decl_field in decl.fields:
            tag = self.resolver.field_tag(decl, decl_field)
            if tag.ignore:
                skipped.append((decl_field.name,))
                continue
            try:
                node = self.resolve(decl_field.annotation, bindings)
            except ResolutionError as e:
                raise ResolutionError(f"field {decl_field.name}: {e}", e.type_name) from e
            if contains_unsupported_map(node):
                logger.warning("%s.%s: map key type has no wire form; field skipped", decl.name, decl_field.name)
                skipped.append((decl_field.name,))
                continue

            flatten = tag.flatten or (isinstance(node, Struct) and node.class_name in self.directives.flatten)
            if flatten and not isinstance(node, Struct):
                logger.warning("%s.%s: only dataclass fields can be flattened", decl.name, decl_field.name)
                flatten = False
            if flatten:
                if not node.is_complete:
                    raise ResolutionError(f"field {decl_field.name}: cannot flatten recursive type {node.name}", node.name)
                holders.append(((decl_field.name,), node.class_name))
                holders.extend(((decl_field.name, *path), cls) for path, cls in node.holders)
                skipped.extend((decl_field.name, *path) for path in node.skipped_fields)
                for sub in node.fields:
                    fields.append(Field(name=sub.name, node=sub.node, path=(decl_field.name, *sub.path), tag=sub.tag))
                continue

            self._place(fields, Field(name=decl_field.name, node=node, path=(decl_field.name,), tag=tag))
        return fields, holders, skipped

    def _place(self, fields: list[Field], new: Field) -> None:
        # A redefined attribute keeps the position of the inherited one
        for index, existing in enumerate(fields):
            if existing.path == new.path:
                fields[index] = new
                return
        fields.append(new)

    # -- validation ---------------------------------------------------------

    def _check_value_cycles(self, root: Struct) -> None:
        """Reject structs that contain themselves without indirection."""
        active: set[int] = set()
        done: set[int] = set()

        def visit(node: TypeNode) -> None:
            if isinstance(node, Struct):
                if id(node) in active:
                    raise ResolutionError(f"{node.name} contains itself; use Optional, list or dict indirection", node.name)
                if id(node) in done:
                    return
                active.add(id(node))
                for fld in node.fields:
                    visit(fld.node)
                active.discard(id(node))
                done.add(id(node))
            elif isinstance(node, Array):
                visit(node.elem)
            elif isinstance(node, Identifier):
                visit(node.underlying)

        visit(root)

    def _prune(self, graph: TypeGraph) -> None:
        """Drop types that reference a struct without generated code."""
        while True:
            emitted = {id(node) for node in graph.types}
            dropped = False
            for name, node in list(graph.roots.items()):
                missing = self._missing_dependency(node, emitted)
                if missing:
                    del graph.roots[name]
                    self._record_error(graph, name, f"depends on {missing}, which is not generated")
                    dropped = True
            for key, inst in list(graph.instances.items()):
                missing = self._missing_dependency(inst.resolved, emitted)
                if missing:
                    del graph.instances[key]
                    self._record_error(graph, key, f"depends on {missing}, which is not generated")
                    dropped = True
            if not dropped:
                return

    def _missing_dependency(self, root: TypeNode, emitted: set[int]) -> str | None:
        seen: set[int] = set()
        stack = [root]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            if isinstance(node, Struct):
                if node is not root and id(node) not in emitted:
                    return node.name
                stack.extend(f.node for f in node.fields)
            elif isinstance(node, (Pointer, Slice, Array)):
                stack.append(node.elem)
            elif isinstance(node, Map):
                stack.extend((node.key, node.value))
            elif isinstance(node, Identifier):
                stack.append(node.underlying)
            elif isinstance(node, Polymorphic):
                stack.extend(node.variants)
        return None
