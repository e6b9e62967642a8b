"""
Declaration AST node definitions.

These nodes represent a parsed source unit before any name is resolved:
classes with their annotated fields, aliases, type variables, imports and
the ``# msgp:`` directive comments.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TypeExpr:
    """An unresolved type annotation.

    ``name`` is the (normalized) head of the expression: ``int``, ``list``,
    ``Foo``, ``Union``, ``None``, ``...``; ``args`` holds subscript arguments.
    """

    name: str
    args: list[TypeExpr] = field(default_factory=list)

    def __str__(self) -> str:
        if self.name == "Union":
            return " | ".join(str(a) for a in self.args)
        if not self.args:
            return self.name
        return f"{self.name}[{', '.join(str(a) for a in self.args)}]"

    @property
    def is_none(self) -> bool:
        return self.name == "None"


@dataclass
class FieldDecl:
    """An annotated attribute in a class body."""

    name: str
    annotation: TypeExpr
    # Field tags from dataclasses.field(metadata=...), keyed by tag name
    metadata: dict[str, str] = field(default_factory=dict)
    is_classvar: bool = False
    lineno: int = 0


@dataclass
class ClassDecl:
    """A class statement."""

    name: str
    bases: list[TypeExpr] = field(default_factory=list)
    fields: list[FieldDecl] = field(default_factory=list)
    methods: set[str] = field(default_factory=set)
    type_params: list[str] = field(default_factory=list)
    class_vars: dict[str, str] = field(default_factory=dict)
    is_dataclass: bool = False
    is_frozen: bool = False
    is_abstract: bool = False
    lineno: int = 0


@dataclass
class AliasDecl:
    """``X = NewType("X", base)`` (named) or ``X = list[int]`` (transparent)."""

    name: str
    target: TypeExpr
    is_newtype: bool = False
    lineno: int = 0


@dataclass
class TypeVarDecl:
    name: str
    bound: TypeExpr | None = None
    constraints: list[TypeExpr] = field(default_factory=list)


@dataclass
class Directive:
    """One ``# msgp:<name> arg arg`` comment."""

    name: str
    args: list[str] = field(default_factory=list)
    lineno: int = 0

    def __str__(self) -> str:
        return " ".join(["msgp:" + self.name, *self.args])


@dataclass
class SourceUnit:
    """Everything the parser extracted from one source file."""

    module: str
    path: str | None = None
    classes: dict[str, ClassDecl] = field(default_factory=dict)
    aliases: dict[str, AliasDecl] = field(default_factory=dict)
    type_vars: dict[str, TypeVarDecl] = field(default_factory=dict)
    # local name -> fully qualified import ("datetime.datetime", "uuid")
    imports: dict[str, str] = field(default_factory=dict)
    functions: set[str] = field(default_factory=set)
    directives: list[Directive] = field(default_factory=list)

    def declares(self, name: str) -> bool:
        return name in self.classes or name in self.aliases or name in self.type_vars
