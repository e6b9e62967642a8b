import importlib
import sys
import textwrap
import uuid

import pytest

from msgpack_codegen.pipeline import CodeGeneratorConfig, PipelineGenerator


class CompiledUnit:
    """A source unit, its generated serializers and the generator that built them."""

    def __init__(self, models, serializers, generator, code):
        self.models = models
        self.serializers = serializers
        self.generator = generator
        self.code = code

    def __getattr__(self, name):
        if hasattr(self.serializers, name):
            return getattr(self.serializers, name)
        return getattr(self.models, name)


@pytest.fixture
def compile_unit(tmp_path, monkeypatch):
    """Write a source unit to disk, generate its serializers and import both."""
    monkeypatch.syspath_prepend(str(tmp_path))
    loaded = []

    def _compile(source: str, **config_values) -> CompiledUnit:
        module = f"unit_{uuid.uuid4().hex[:12]}"
        source = textwrap.dedent(source)
        (tmp_path / f"{module}.py").write_text(source, encoding="utf-8")

        config = CodeGeneratorConfig.from_dict({"module": module, "add_generation_comment": False, **config_values})
        generator = PipelineGenerator(source, config)
        code = generator.generate()
        (tmp_path / f"{module}_msgp.py").write_text(code, encoding="utf-8")

        importlib.invalidate_caches()
        models = importlib.import_module(module)
        serializers = importlib.import_module(f"{module}_msgp")
        loaded.extend([module, f"{module}_msgp"])
        return CompiledUnit(models, serializers, generator, code)

    yield _compile

    for name in loaded:
        sys.modules.pop(name, None)
