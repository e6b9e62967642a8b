"""
Python source parser that builds a declaration AST.

Phase 1 of the pipeline: read a Python module with :mod:`ast` and
:mod:`tokenize` without importing it, and collect dataclasses, aliases,
type variables, imports and ``# msgp:`` directive comments. No name is
resolved here.
"""

from __future__ import annotations

import ast
import io
import logging
import tokenize

from .nodes import (
    AliasDecl,
    ClassDecl,
    Directive,
    FieldDecl,
    SourceUnit,
    TypeExpr,
    TypeVarDecl,
)

logger = logging.getLogger(__name__)

DIRECTIVE_PREFIX = "msgp:"

RUNTIME_MODULE = "msgpack_codegen.runtime"


class SourceParser:
    """Parses a Python source unit into a :class:`SourceUnit`."""

    # typing spellings normalized to their builtin names
    TYPING_ALIASES = {
        "List": "list",
        "Dict": "dict",
        "Tuple": "tuple",
        "Type": "type",
    }

    # Wrappers whose first argument is the real annotation
    TRANSPARENT_WRAPPERS = {"Annotated", "Final", "Required", "NotRequired"}

    # Modules whose members are referred to by their bare name
    FLATTENED_MODULES = {"typing", "typing_extensions", "datetime", "abc", "dataclasses", RUNTIME_MODULE}

    def __init__(self):
        self._imports: dict[str, str] = {}

    def parse(self, source: str, module: str, path: str | None = None) -> SourceUnit:
        """
        Parse a source unit.

        Args:
            source: Python source text
            module: Import path of the unit (used by generated imports)
            path: Optional file path, for messages

        Returns:
            SourceUnit with declarations and directives

        Raises:
            SyntaxError: If the source is not valid Python
        """
        tree = ast.parse(source, filename=path or "<unit>")
        unit = SourceUnit(module=module, path=path)
        unit.directives = self.parse_directives(source)

        self._imports = unit.imports
        for node in tree.body:
            if isinstance(node, ast.Import):
                for alias in node.names:
                    unit.imports[alias.asname or alias.name.split(".")[0]] = alias.name if alias.asname else alias.name.split(".")[0]
            elif isinstance(node, ast.ImportFrom) and node.module:
                for alias in node.names:
                    unit.imports[alias.asname or alias.name] = f"{node.module}.{alias.name}"

        for node in tree.body:
            if isinstance(node, ast.ClassDef):
                class_decl = self._parse_class(node)
                unit.classes[class_decl.name] = class_decl
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                unit.functions.add(node.name)
            elif isinstance(node, ast.Assign):
                self._parse_assign(node, unit)
            elif isinstance(node, ast.AnnAssign):
                self._parse_ann_assign(node, unit)
            elif hasattr(ast, "TypeAlias") and isinstance(node, ast.TypeAlias):
                unit.aliases[node.name.id] = AliasDecl(
                    name=node.name.id,
                    target=self.type_expr(node.value),
                    lineno=node.lineno,
                )

        logger.debug(
            "parsed %s: %d classes, %d aliases, %d directives",
            module,
            len(unit.classes),
            len(unit.aliases),
            len(unit.directives),
        )
        return unit

    def parse_directives(self, source: str) -> list[Directive]:
        """Collect ``# msgp:`` comments, in source order."""
        directives = []
        tokens = tokenize.generate_tokens(io.StringIO(source).readline)
        for token in tokens:
            if token.type != tokenize.COMMENT:
                continue
            text = token.string.lstrip("#").strip()
            if not text.startswith(DIRECTIVE_PREFIX):
                continue
            parts = text[len(DIRECTIVE_PREFIX) :].split()
            if not parts:
                continue
            directives.append(Directive(name=parts[0], args=parts[1:], lineno=token.start[0]))
        return directives

    def parse_type(self, text: str, imports: dict[str, str] | None = None) -> TypeExpr:
        """Parse a type written in a directive, e.g. ``dict[str,int]``."""
        if imports is not None:
            self._imports = imports
        return self.type_expr(ast.parse(text, mode="eval").body)

    def _canonical(self, dotted: str) -> str:
        head, _, rest = dotted.partition(".")
        qualified = self._imports.get(head, head)
        if rest:
            qualified = f"{qualified}.{rest}"
        module, _, member = qualified.rpartition(".")
        if module in self.FLATTENED_MODULES:
            qualified = member
        elif "." in qualified and qualified == dotted:
            return dotted
        elif "." in qualified:
            # imported from another module: keep the local spelling
            qualified = dotted
        return self.TYPING_ALIASES.get(qualified, qualified)

    def type_expr(self, node: ast.expr) -> TypeExpr:
        """Convert an annotation expression to a :class:`TypeExpr`."""
        if isinstance(node, ast.Constant):
            if node.value is None:
                return TypeExpr("None")
            if node.value is Ellipsis:
                return TypeExpr("...")
            if isinstance(node.value, str):
                # Forward reference
                return self.type_expr(ast.parse(node.value, mode="eval").body)
            return TypeExpr(repr(node.value))

        if isinstance(node, (ast.Name, ast.Attribute)):
            return TypeExpr(self._canonical(ast.unparse(node)))

        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
            return self._union([self.type_expr(node.left), self.type_expr(node.right)])

        if isinstance(node, ast.Subscript):
            head = self._canonical(ast.unparse(node.value))
            if isinstance(node.slice, ast.Tuple):
                args = [self.type_expr(elt) for elt in node.slice.elts]
            else:
                args = [self.type_expr(node.slice)]

            if head in self.TRANSPARENT_WRAPPERS:
                return args[0]
            if head == "Optional":
                return self._union([args[0], TypeExpr("None")])
            if head == "Union":
                return self._union(args)
            return TypeExpr(head, args)

        return TypeExpr(ast.unparse(node))

    def _union(self, options: list[TypeExpr]) -> TypeExpr:
        flat: list[TypeExpr] = []
        for option in options:
            if option.name == "Union":
                flat.extend(option.args)
            else:
                flat.append(option)
        return TypeExpr("Union", flat)

    def _is_dataclass_decorator(self, node: ast.expr) -> tuple[bool, bool]:
        """Return (is_dataclass, is_frozen) for a decorator."""
        target = node.func if isinstance(node, ast.Call) else node
        if self._canonical(ast.unparse(target)) != "dataclass":
            return False, False
        frozen = False
        if isinstance(node, ast.Call):
            for keyword in node.keywords:
                if keyword.arg == "frozen" and isinstance(keyword.value, ast.Constant):
                    frozen = bool(keyword.value.value)
        return True, frozen

    def _parse_class(self, node: ast.ClassDef) -> ClassDecl:
        decl = ClassDecl(name=node.name, lineno=node.lineno)

        for decorator in node.decorator_list:
            is_dataclass, frozen = self._is_dataclass_decorator(decorator)
            if is_dataclass:
                decl.is_dataclass = True
                decl.is_frozen = frozen

        for base in node.bases:
            base_expr = self.type_expr(base)
            if base_expr.name in ("Generic", "Protocol") and base_expr.args:
                decl.type_params.extend(a.name for a in base_expr.args)
            if base_expr.name in ("ABC", "Protocol"):
                decl.is_abstract = True
            if base_expr.name not in ("Generic", "ABC", "Protocol", "object"):
                decl.bases.append(base_expr)

        for keyword in node.keywords:
            if keyword.arg == "metaclass" and self._canonical(ast.unparse(keyword.value)) == "ABCMeta":
                decl.is_abstract = True

        for param in getattr(node, "type_params", []):
            if isinstance(param, ast.TypeVar):
                decl.type_params.append(param.name)

        for item in node.body:
            if isinstance(item, ast.AnnAssign) and isinstance(item.target, ast.Name):
                self._parse_field(item, decl)
            elif isinstance(item, ast.Assign):
                for target in item.targets:
                    if isinstance(target, ast.Name) and isinstance(item.value, ast.Constant):
                        decl.class_vars[target.id] = item.value.value
            elif isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                decl.methods.add(item.name)
                for decorator in item.decorator_list:
                    if self._canonical(ast.unparse(decorator)) == "abstractmethod":
                        decl.is_abstract = True

        return decl

    def _parse_field(self, item: ast.AnnAssign, decl: ClassDecl) -> None:
        annotation = self.type_expr(item.annotation)
        name = item.target.id

        if annotation.name == "ClassVar":
            if isinstance(item.value, ast.Constant):
                decl.class_vars[name] = item.value.value
            return

        field_decl = FieldDecl(name=name, annotation=annotation, lineno=item.lineno)
        value = item.value
        if isinstance(value, ast.Call) and self._canonical(ast.unparse(value.func)) == "field":
            for keyword in value.keywords:
                if keyword.arg == "metadata" and isinstance(keyword.value, ast.Dict):
                    field_decl.metadata = self._string_dict(keyword.value)
        decl.fields.append(field_decl)

    def _string_dict(self, node: ast.Dict) -> dict[str, str]:
        result = {}
        for key, value in zip(node.keys, node.values):
            if isinstance(key, ast.Constant) and isinstance(value, ast.Constant) and isinstance(value.value, str):
                result[str(key.value)] = value.value
        return result

    def _parse_assign(self, node: ast.Assign, unit: SourceUnit) -> None:
        if len(node.targets) != 1 or not isinstance(node.targets[0], ast.Name):
            return
        name = node.targets[0].id
        value = node.value

        if isinstance(value, ast.Call):
            func = self._canonical(ast.unparse(value.func))
            if func == "NewType" and len(value.args) == 2:
                unit.aliases[name] = AliasDecl(
                    name=name,
                    target=self.type_expr(value.args[1]),
                    is_newtype=True,
                    lineno=node.lineno,
                )
            elif func == "TypeVar":
                unit.type_vars[name] = self._parse_type_var(name, value)
            return

        if isinstance(value, (ast.Subscript, ast.BinOp, ast.Name, ast.Attribute)):
            unit.aliases[name] = AliasDecl(name=name, target=self.type_expr(value), lineno=node.lineno)

    def _parse_ann_assign(self, node: ast.AnnAssign, unit: SourceUnit) -> None:
        if not isinstance(node.target, ast.Name) or node.value is None:
            return
        if self._canonical(ast.unparse(node.annotation)) == "TypeAlias":
            unit.aliases[node.target.id] = AliasDecl(
                name=node.target.id,
                target=self.type_expr(node.value),
                lineno=node.lineno,
            )

    def _parse_type_var(self, name: str, call: ast.Call) -> TypeVarDecl:
        decl = TypeVarDecl(name=name)
        decl.constraints = [self.type_expr(arg) for arg in call.args[1:]]
        for keyword in call.keywords:
            if keyword.arg == "bound":
                decl.bound = self.type_expr(keyword.value)
        return decl
