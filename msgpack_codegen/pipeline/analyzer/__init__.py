"""
Analyzer - resolves declarations and directives into the IR type graph.
"""

from .analyzer import SchemaAnalyzer
from .directives import DirectiveResolver, FileDirectives
from .type_graph import TypeGraph, TypeGraphBuilder

__all__ = [
    "DirectiveResolver",
    "FileDirectives",
    "SchemaAnalyzer",
    "TypeGraph",
    "TypeGraphBuilder",
]
