"""
Tests for the generator configuration.
"""

import pytest

from msgpack_codegen.pipeline import CodeGeneratorConfig, FormatterConfig, OutputMode, PipelineGenerator
from msgpack_codegen.pipeline.formatters import FORMATTERS, BlackFormatter, RuffFormatter


class TestCodeGeneratorConfig:
    """Building configs from dictionaries"""

    def test_defaults(self):
        config = CodeGeneratorConfig()
        assert config.generate_encode and config.generate_unmarshal and config.generate_size
        assert config.runtime_module == "msgpack_codegen.runtime"
        assert config.output.mode is OutputMode.ERROR_IF_EXISTS
        assert not config.formatter.enabled

    def test_from_dict(self):
        config = CodeGeneratorConfig.from_dict(
            {
                "module": "app.models",
                "generate_decode": False,
                "ignore_types": ["Draft"],
                "formatter": {"enabled": True, "tool": "black", "line_length": 88},
                "output": {"mode": "force", "atomic_write": False},
            }
        )
        assert config.module == "app.models"
        assert not config.generate_decode
        assert config.ignore_types == ["Draft"]
        assert config.formatter == FormatterConfig(enabled=True, tool="black", line_length=88)
        assert config.output.mode is OutputMode.FORCE
        assert not config.output.atomic_write
        assert config.output.validate_before_write

    def test_unknown_keys_are_ignored(self):
        config = CodeGeneratorConfig.from_dict({"no_such_option": 1})
        assert not hasattr(config, "no_such_option")

    def test_to_dict_round_trips(self):
        values = {
            "module": "m",
            "unexported": True,
            "generate_tests": False,
            "output": {"mode": "force", "validate_before_write": False, "atomic_write": True},
        }
        data = CodeGeneratorConfig.from_dict(values).to_dict()
        assert data["output"] == values["output"]
        assert CodeGeneratorConfig.from_dict(data).to_dict() == data


class TestFormatters:
    """Optional post-processing of generated code"""

    CODE = "def f( x ):\n    return x\n"

    def test_registry(self):
        assert FORMATTERS == {"ruff": RuffFormatter, "black": BlackFormatter}

    def test_black(self):
        formatter = BlackFormatter()
        if not formatter.is_available():
            pytest.skip("black not installed")
        assert formatter.format(self.CODE, FormatterConfig(enabled=True, tool="black")) == "def f(x):\n    return x\n"

    def test_ruff(self):
        formatter = RuffFormatter()
        if not formatter.is_available():
            pytest.skip("ruff not installed")
        assert formatter.format(self.CODE, FormatterConfig(enabled=True)) == "def f(x):\n    return x\n"

    def test_unknown_tool_leaves_code_alone(self):
        source = "from dataclasses import dataclass\n\n\n@dataclass\nclass P:\n    x: int = 0\n"
        plain = PipelineGenerator(source, CodeGeneratorConfig(module="m", add_generation_comment=False))
        config = CodeGeneratorConfig(module="m", add_generation_comment=False)
        config.formatter = FormatterConfig(enabled=True, tool="yapf")
        assert PipelineGenerator(source, config).generate() == plain.generate()


if __name__ == "__main__":
    pytest.main([__file__])
