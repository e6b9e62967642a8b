"""msgpack_codegen

A Python package for generating MessagePack serializers from dataclass
declarations. For every dataclass of a source module it writes streaming
encode/decode functions, buffer marshal/unmarshal functions and a size
estimator, driven by ``# msgp:`` directives.
"""

__version__ = "1.0.0"
__author__ = "François Lagunas"

from .pipeline import (
    AtomicWriter,
    CodeGeneratorConfig,
    FormatterConfig,
    OutputConfig,
    OutputMode,
    PipelineGenerator,
)

__all__ = [
    "PipelineGenerator",
    "CodeGeneratorConfig",
    "FormatterConfig",
    "OutputConfig",
    "OutputMode",
    "AtomicWriter",
]
