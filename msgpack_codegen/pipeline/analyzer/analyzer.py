"""
Schema analyzer that transforms the declaration AST to IR.

Phase 2 of the pipeline: parse the directives, resolve every declared type
into the type graph and compute the effective configuration of each field.
"""

from __future__ import annotations

import logging

from ..config import CodeGeneratorConfig
from ..schema_ast.nodes import SourceUnit
from ..schema_ast.parser import SourceParser
from .directives import DirectiveResolver
from .ir_nodes import IR
from .type_graph import TypeGraph, TypeGraphBuilder

logger = logging.getLogger(__name__)


class SchemaAnalyzer:
    """Analyzes a source unit and builds IR."""

    def __init__(self, config: CodeGeneratorConfig):
        """
        Initialize the analyzer.

        Args:
            config: Code generation configuration
        """
        self.config = config
        self.graph: TypeGraph | None = None

    def analyze(self, unit: SourceUnit) -> IR:
        """
        Analyze the unit and build IR.

        Args:
            unit: The parsed source unit

        Returns:
            IR ready for code generation; types that failed to resolve are
            listed in ``IR.errors`` instead of ``IR.types``
        """
        parser = SourceParser()
        resolver = DirectiveResolver(type_parser=lambda text: parser.parse_type(text, unit.imports))
        directives = resolver.parse_file_directives(unit.directives)

        builder = TypeGraphBuilder(
            unit,
            resolver,
            ignore_types=self.config.ignore_types,
            unexported=self.config.unexported,
        )
        self.graph = builder.build()

        ir = IR(
            module=unit.module,
            types=self.graph.types,
            errors=dict(self.graph.errors),
            skipped=list(self.graph.skipped),
            limits=directives.limits,
            compact_floats=directives.compact_floats,
            new_time=directives.new_time,
            clear_omitted=directives.clear_omitted,
        )
        logger.info(
            "%s: %d types to generate, %d failed, %d skipped",
            unit.module,
            len(ir.types),
            len(ir.errors),
            len(ir.skipped),
        )
        return ir
