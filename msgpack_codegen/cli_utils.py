"""
CLI utilities for command line reconstruction and introspection.
"""

from pathlib import Path

import click

PROG_NAME = "msgpack_codegen"


def _format_value(value: object) -> str:
    """File paths are shown by name only."""
    if isinstance(value, (str, Path)):
        path_obj = Path(str(value))
        return path_obj.name if path_obj.exists() else str(value)
    return str(value)


def reconstruct_command_line(click_command: click.Command) -> str:
    """
    Reconstruct command line from current Click context using introspection.

    Args:
        click_command: Click command object for introspection

    Returns:
        Reconstructed command line string
    """
    try:
        ctx = click.get_current_context()
        cli_args = ctx.params
    except RuntimeError:
        # No active context, return basic command
        return PROG_NAME

    if not cli_args:
        return PROG_NAME

    cmd_parts = [PROG_NAME]
    arguments = []
    options = []

    for param in click_command.params:
        param_name = param.name
        if param_name not in cli_args:
            continue

        value = cli_args[param_name]
        if value is None:
            continue

        if isinstance(param, click.Argument):
            arguments.append(_format_value(value))

        elif isinstance(param, click.Option):
            # Skip if it's the default value
            if value == param.default:
                continue

            if param.is_flag:
                # --x/--no-x switches: pick the spelling matching the value
                if value or not param.secondary_opts:
                    options.append(param.opts[0])
                else:
                    options.append(param.secondary_opts[0])
                continue

            flag = param.opts[0] if param.opts else f"--{param_name}"
            options.extend([flag, _format_value(value)])

    cmd_parts.extend(arguments)
    cmd_parts.extend(options)

    return " ".join(cmd_parts)
