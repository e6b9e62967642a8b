"""
Configuration for the serializer generator pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .schema_ast.parser import RUNTIME_MODULE


class OutputMode(str, Enum):
    """Output mode for file generation.

    Controls behavior when the output file already exists.
    """

    ERROR_IF_EXISTS = "error"  # Default: raise error if file exists
    FORCE = "force"  # Overwrite


@dataclass
class OutputConfig:
    """Configuration for output file handling.

    Attributes:
        mode: How to handle existing output files
        validate_before_write: Whether to parse generated code before writing
        atomic_write: Whether to use atomic file writes
    """

    mode: OutputMode = OutputMode.ERROR_IF_EXISTS
    validate_before_write: bool = True
    atomic_write: bool = True


@dataclass
class FormatterConfig:
    """Configuration for post-processing formatters."""

    # Whether formatting is enabled
    enabled: bool = False

    # "ruff" or "black"
    tool: str = "ruff"

    # Line length for the formatter
    line_length: int = 100

    # Python version target (e.g., "py312", "py313")
    target_version: str = "py312"


@dataclass
class CodeGeneratorConfig:
    """Configuration options for code generation."""

    # Import path of the source unit (derived from the file name when empty)
    module: str = ""

    # Import path of the runtime support package
    runtime_module: str = RUNTIME_MODULE

    # Operation families to emit
    generate_encode: bool = True
    generate_decode: bool = True
    generate_marshal: bool = True
    generate_unmarshal: bool = True
    generate_size: bool = True

    # Also write a pytest companion module
    generate_tests: bool = True

    # Add generation comment at top of file
    add_generation_comment: bool = True

    # Types never generated, in addition to "# msgp:ignore"
    ignore_types: list[str] = field(default_factory=list)

    # Also generate classes whose name starts with an underscore
    unexported: bool = False

    formatter: FormatterConfig = field(default_factory=FormatterConfig)

    output: OutputConfig = field(default_factory=OutputConfig)

    @staticmethod
    def from_dict(d: dict) -> CodeGeneratorConfig:
        """Create a config from a dictionary."""
        config = CodeGeneratorConfig()
        for k, v in d.items():
            if k == "formatter" and isinstance(v, dict):
                config.formatter = FormatterConfig(**v)
            elif k == "output" and isinstance(v, dict):
                mode = v.get("mode", OutputMode.ERROR_IF_EXISTS)
                if isinstance(mode, str):
                    mode = OutputMode(mode)
                config.output = OutputConfig(
                    mode=mode,
                    validate_before_write=v.get("validate_before_write", True),
                    atomic_write=v.get("atomic_write", True),
                )
            elif hasattr(config, k):
                setattr(config, k, v)
        return config

    def to_dict(self) -> dict:
        """Convert config to a dictionary."""
        return {
            "module": self.module,
            "runtime_module": self.runtime_module,
            "generate_encode": self.generate_encode,
            "generate_decode": self.generate_decode,
            "generate_marshal": self.generate_marshal,
            "generate_unmarshal": self.generate_unmarshal,
            "generate_size": self.generate_size,
            "generate_tests": self.generate_tests,
            "add_generation_comment": self.add_generation_comment,
            "ignore_types": self.ignore_types,
            "unexported": self.unexported,
            "formatter": {
                "enabled": self.formatter.enabled,
                "tool": self.formatter.tool,
                "line_length": self.formatter.line_length,
                "target_version": self.formatter.target_version,
            },
            "output": {
                "mode": self.output.mode.value,
                "validate_before_write": self.output.validate_before_write,
                "atomic_write": self.output.atomic_write,
            },
        }
