import json
import logging
from pathlib import Path

import click

from .pipeline import CodeGeneratorConfig, OutputMode, PipelineGenerator
from .pipeline.errors import CodeGenerationError
from .pipeline.generator import default_output_path, default_tests_path


@click.command()
@click.option("--module", "-m", default=None, type=str, help="Import path of the source module")
@click.option("--config", "-c", default=None, type=click.Path(exists=True, resolve_path=True))
@click.option("--tests/--no-tests", default=None, help="Write a pytest companion module")
@click.option("--io/--no-io", "io_", default=None, help="Generate encode/decode (streaming) functions")
@click.option("--marshal/--no-marshal", default=None, help="Generate marshal/unmarshal (buffer) functions")
@click.option("--unexported", is_flag=True, default=False, help="Also generate _private classes")
@click.option("--force", is_flag=True, default=False, help="Overwrite existing output files")
@click.option("--format", "format_", is_flag=True, default=False, help="Format the output with ruff")
@click.option("--verbose", "-v", is_flag=True, default=False)
@click.option("--quiet", "-q", is_flag=True, default=False)
@click.argument("source", type=click.Path(exists=True, dir_okay=False, resolve_path=True))
@click.argument("output", default=None, required=False, type=click.Path(resolve_path=True))
def msgpack_codegen(module, config, tests, io_, marshal, unexported, force, format_, verbose, quiet, source, output):
    """Generate MessagePack serializers for the dataclasses of SOURCE."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.ERROR if quiet else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if config is not None:
        with open(config) as f:
            config = CodeGeneratorConfig.from_dict(json.load(f))
    else:
        config = CodeGeneratorConfig()

    # CLI flags override the config file
    if module is not None:
        config.module = module
    if tests is not None:
        config.generate_tests = tests
    if io_ is not None:
        config.generate_encode = config.generate_decode = io_
    if marshal is not None:
        config.generate_marshal = config.generate_unmarshal = marshal
    if unexported:
        config.unexported = True
    if force:
        config.output.mode = OutputMode.FORCE
    if format_:
        config.formatter.enabled = True

    output = Path(output) if output else default_output_path(Path(source))

    try:
        codegen = PipelineGenerator.from_file(source, config)
        written = codegen.write(output, default_tests_path(output))
    except SyntaxError as e:
        raise click.ClickException(f"{source} is not valid Python: {e}") from e
    except (CodeGenerationError, FileExistsError, OSError) as e:
        raise click.ClickException(str(e)) from e

    for path in written:
        click.echo(f">>> Wrote {path}")
