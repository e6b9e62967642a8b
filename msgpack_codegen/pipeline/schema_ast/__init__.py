"""
Declaration AST of a Python source unit.
"""

from .nodes import AliasDecl, ClassDecl, Directive, FieldDecl, SourceUnit, TypeExpr, TypeVarDecl
from .parser import SourceParser

__all__ = [
    "AliasDecl",
    "ClassDecl",
    "Directive",
    "FieldDecl",
    "SourceParser",
    "SourceUnit",
    "TypeExpr",
    "TypeVarDecl",
]
