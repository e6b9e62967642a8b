"""
Python code generation backend.

Generates the serializer module (and its pytest companion) from IR.
"""

from __future__ import annotations

import builtins
import collections
import logging
import re

from ..analyzer.ir_nodes import IR
from ..config import CodeGeneratorConfig
from .base import CodeBackend
from .emitter import CodeEmitter, TypeCode

logger = logging.getLogger(__name__)

_RUNTIME_USE = re.compile(r"\b(errors|keys|sizes|wire)\.")


class PythonBackend(CodeBackend):
    """Python code generation backend."""

    TEMPLATE_LANG = "python"
    FILE_EXTENSION = "py"

    def __init__(self, config: CodeGeneratorConfig):
        super().__init__(config)
        self.emitter: CodeEmitter | None = None
        self.codes: list[TypeCode] = []

    def _emit(self, ir: IR) -> list[TypeCode]:
        if self.emitter is None or self.emitter.ir is not ir:
            self.emitter = CodeEmitter(ir)
            self.codes = [self.emitter.emit(node) for node in ir.types]
        return self.codes

    def generate(self, ir: IR) -> str:
        """Generate the serializer module from IR."""
        codes = self._emit(ir)

        type_content = ""
        for code in codes:
            type_content += self.type_template.render(self._prepare_type_context(code))

        prefix = self.prefix_template.render(
            generation_comment=ir.generation_comment,
            comment_prefix=self._get_comment_prefix(),
            module=ir.module,
            required_imports=self._assemble_imports(ir, type_content),
            failed=sorted(ir.errors.items()),
            skipped=sorted(ir.skipped),
        )
        suffix = self.suffix_template.render(exported=self._exported(codes))

        logger.debug("rendered %d types for %s", len(codes), ir.module)
        return prefix + type_content + suffix

    def generate_tests(self, ir: IR, generated_module: str) -> str:
        """Generate a pytest module exercising every generated type."""
        codes = self._emit(ir)
        names = sorted({f"_new_{code.suffix}" for code in codes} | set(self._exported(codes)))

        content = ""
        for code in codes:
            content += self.test_type_template.render(self._prepare_type_context(code))

        prefix = self.test_prefix_template.render(
            generation_comment=ir.generation_comment,
            runtime_module=self.config.runtime_module,
            generated_module=generated_module,
            generated_names=names,
            needs_io=self.config.generate_encode and self.config.generate_decode,
        )
        return prefix + content

    def _exported(self, codes: list[TypeCode]) -> list[str]:
        """Public function names of the generated module."""
        families = [
            ("encode", self.config.generate_encode),
            ("decode", self.config.generate_decode),
            ("marshal", self.config.generate_marshal),
            ("unmarshal", self.config.generate_unmarshal),
            ("msgsize", self.config.generate_size),
        ]
        return [f"{family}_{code.suffix}" for code in codes for family, enabled in families if enabled]

    def _assemble_imports(self, ir: IR, body: str) -> list[str]:
        """Assemble the import statements of the generated module."""
        runtime = sorted(set(_RUNTIME_USE.findall(body)))

        import_groups: dict[str, set[str]] = collections.defaultdict(set)
        plain_imports: set[str] = set()
        for name in self.emitter.names if self.emitter else ():
            module, _, member = name.rpartition(".")
            if module:
                plain_imports.add(module)
            elif hasattr(builtins, member):
                continue
            else:
                import_groups[ir.module].add(member)

        assembled = ["from __future__ import annotations", ""]

        for module in sorted(plain_imports):
            assembled.append(f"import {module}")
        if plain_imports:
            assembled.append("")

        if runtime:
            assembled.append(f"from {self.config.runtime_module} import {', '.join(runtime)}")

        for module in sorted(import_groups.keys()):
            names = sorted(import_groups[module])
            assembled.append(f"from {module} import {', '.join(names)}")

        return assembled
