"""
Pipeline generator: runs every phase for one source unit.

1. Parser: Python source to declaration AST
2. Analyzer: directives and type graph to IR
3. Backend: IR to the serializer module (and its test module)
4. Formatter: optional ruff / black pass
5. Writer: atomic, validated write
"""

from __future__ import annotations

import logging
from pathlib import Path

from .analyzer.analyzer import SchemaAnalyzer
from .analyzer.ir_nodes import IR
from .backends.python_backend import PythonBackend
from .config import CodeGeneratorConfig
from .formatters import FORMATTERS
from .schema_ast.nodes import SourceUnit
from .schema_ast.parser import SourceParser
from .writer import AtomicWriter

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = "_msgp"


def default_output_path(source_path: Path) -> Path:
    """``models.py`` -> ``models_msgp.py`` in the same directory."""
    return source_path.with_name(f"{source_path.stem}{OUTPUT_SUFFIX}.py")


def default_tests_path(output_path: Path) -> Path:
    """``models_msgp.py`` -> ``test_models_msgp.py`` in the same directory."""
    return output_path.with_name(f"test_{output_path.name}")


class PipelineGenerator:
    """Generates MessagePack serializers for one Python source unit."""

    def __init__(
        self,
        source: str,
        config: CodeGeneratorConfig | None = None,
        module: str | None = None,
        path: str | None = None,
    ):
        """
        Initialize the generator.

        Args:
            source: Python source text of the unit
            config: Code generation configuration
            module: Import path of the unit; defaults to ``config.module``,
                then to the stem of ``path``
            path: File path of the unit, for messages
        """
        self.source = source
        self.config = config or CodeGeneratorConfig()
        self.path = path
        self.module = module or self.config.module or (Path(path).stem if path else "schema")
        self.backend = PythonBackend(self.config)
        self._unit: SourceUnit | None = None
        self._ir: IR | None = None

    @classmethod
    def from_file(cls, path: str | Path, config: CodeGeneratorConfig | None = None) -> PipelineGenerator:
        path = Path(path)
        return cls(path.read_text(encoding="utf-8"), config, path=str(path))

    @property
    def unit(self) -> SourceUnit:
        if self._unit is None:
            self._unit = SourceParser().parse(self.source, self.module, self.path)
        return self._unit

    @property
    def ir(self) -> IR:
        if self._ir is None:
            self._ir = SchemaAnalyzer(self.config).analyze(self.unit)
            self._ir.generation_comment = self._generate_command_comment()
            for name, message in sorted(self._ir.errors.items()):
                logger.warning("%s not generated: %s", name, message)
        return self._ir

    def generate(self) -> str:
        """Generate the serializer module."""
        return self._format(self.backend.generate(self.ir))

    def generate_tests(self, generated_module: str) -> str:
        """Generate the companion test module for ``generated_module``."""
        return self._format(self.backend.generate_tests(self.ir, generated_module))

    def write(self, output: Path, tests_output: Path | None = None) -> list[Path]:
        """
        Generate and write the outputs.

        Args:
            output: Path of the serializer module
            tests_output: Path of the test module; defaults to ``test_<output>``
                when tests are enabled

        Returns:
            The written paths
        """
        outputs = {output: self.generate()}
        if self.config.generate_tests:
            tests_output = tests_output or default_tests_path(output)
            outputs[tests_output] = self.generate_tests(output.stem)

        writer = AtomicWriter()
        # Every target is checked before the first one is written
        for path in outputs:
            writer.check_target(path, self.config.output)
        for path, content in outputs.items():
            writer.write_output(path, content, self.config.output)
            logger.info("wrote %s", path)
        return list(outputs)

    def _format(self, code: str) -> str:
        formatter_config = self.config.formatter
        if not formatter_config.enabled:
            return code
        formatter_cls = FORMATTERS.get(formatter_config.tool)
        if formatter_cls is None:
            logger.warning("unknown formatter %r; output left unformatted", formatter_config.tool)
            return code
        return formatter_cls().format(code, formatter_config)

    def _generate_command_comment(self) -> str:
        """Generate a simplified command line comment for the generated file"""
        if not self.config.add_generation_comment:
            return ""

        from .. import __version__
        from ..cli_utils import reconstruct_command_line

        # Reconstruct command line using CLI utilities
        try:
            from ..msgpack_codegen import msgpack_codegen as click_command  # noqa

            command_line = reconstruct_command_line(click_command)
        except (ImportError, AttributeError):
            command_line = "msgpack_codegen"

        return f"# Code generated by msgpack_codegen v{__version__} : {command_line}. DO NOT EDIT."
