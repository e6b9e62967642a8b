"""
Pipeline - dataclass declarations to MessagePack serializers.

1. Phase 1 (Parser): Parse the Python source into a declaration AST
2. Phase 2 (Analyzer): Resolve directives and types into the IR type graph
3. Phase 3 (Backend): Emit the serializer functions through jinja2 templates
4. Phase 4 (Formatter): Optional post-processing (ruff or black)
5. Phase 5 (Writer): Atomic, validated write of the module and its tests
"""

from __future__ import annotations

from .config import CodeGeneratorConfig, FormatterConfig, OutputConfig, OutputMode
from .errors import CodeGenerationError, DirectiveError, ResolutionError
from .generator import PipelineGenerator
from .writer import AtomicWriter

__all__ = [
    "PipelineGenerator",
    "CodeGeneratorConfig",
    "FormatterConfig",
    "OutputConfig",
    "OutputMode",
    "AtomicWriter",
    "CodeGenerationError",
    "DirectiveError",
    "ResolutionError",
]
