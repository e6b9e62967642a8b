"""
Base class for code generation backends.

Defines the interface that all output backends must implement.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import jinja2

from ...utils import pascal_to_snake
from ..analyzer.ir_nodes import IR
from ..config import CodeGeneratorConfig
from .emitter import TypeCode


class CodeBackend(ABC):
    """Abstract base class for code generation backends."""

    # Template directory name
    TEMPLATE_LANG: str = ""

    # File extension
    FILE_EXTENSION: str = ""

    def __init__(self, config: CodeGeneratorConfig):
        """
        Initialize the backend.

        Args:
            config: Code generation configuration
        """
        self.config = config
        self._setup_templates()

    def _setup_templates(self) -> None:
        """Set up Jinja2 templates."""
        template_dir = Path(__file__).parent.parent.parent / "templates" / self.TEMPLATE_LANG
        self.jinja_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(template_dir)),
            lstrip_blocks=True,
            trim_blocks=True,
            keep_trailing_newline=True,
        )
        # Add custom filters
        self.jinja_env.filters["pascal_to_snake"] = pascal_to_snake
        self.jinja_env.filters["body"] = self._indent_body

        self.prefix_template = self.jinja_env.get_template(f"prefix.{self.FILE_EXTENSION}.jinja2")
        self.type_template = self.jinja_env.get_template(f"type.{self.FILE_EXTENSION}.jinja2")
        self.suffix_template = self.jinja_env.get_template(f"suffix.{self.FILE_EXTENSION}.jinja2")
        self.test_prefix_template = self.jinja_env.get_template(f"test_prefix.{self.FILE_EXTENSION}.jinja2")
        self.test_type_template = self.jinja_env.get_template(f"test_type.{self.FILE_EXTENSION}.jinja2")

    @abstractmethod
    def generate(self, ir: IR) -> str:
        """
        Generate the serializer module from IR.

        Args:
            ir: The intermediate representation

        Returns:
            Generated code as a string
        """

    @abstractmethod
    def generate_tests(self, ir: IR, generated_module: str) -> str:
        """
        Generate the companion test module.

        Args:
            ir: The intermediate representation
            generated_module: Import path of the generated serializer module

        Returns:
            Generated test code as a string
        """

    def _indent_body(self, lines: list[str], depth: int = 1) -> str:
        """Indent function body lines for a template."""
        pad = "    " * depth
        return "\n".join(pad + line if line else line for line in lines)

    def _get_comment_prefix(self) -> str:
        """Get the comment prefix for the language."""
        return "#" if self.TEMPLATE_LANG == "python" else "//"

    def _prepare_type_context(self, code: TypeCode) -> dict[str, Any]:
        """
        Prepare the template context for one root type.

        Args:
            code: The emitted function bodies of the type

        Returns:
            Dictionary of template variables
        """
        return {
            "TYPE_NAME": code.type_name,
            "SUFFIX": code.suffix,
            "IS_STRUCT": code.is_struct,
            "new_body": code.new_body,
            "is_zero_body": code.is_zero_body,
            "encode_body": code.encode_body,
            "decode_body": code.decode_body,
            "marshal_body": code.marshal_body,
            "unmarshal_body": code.unmarshal_body,
            "size_body": code.size_body,
            "ENCODE": self.config.generate_encode,
            "DECODE": self.config.generate_decode,
            "MARSHAL": self.config.generate_marshal,
            "UNMARSHAL": self.config.generate_unmarshal,
            "SIZE": self.config.generate_size,
        }
