"""
Atomic file writer for generated modules.

Ensures that an interrupted or invalid generation never leaves a
half-written serializer behind.
"""

from __future__ import annotations

import ast
import logging
import tempfile
from collections.abc import Callable
from pathlib import Path

from .config import OutputConfig, OutputMode
from .errors import CodeGenerationError

logger = logging.getLogger(__name__)


class AtomicWriter:
    """Handles atomic file writes with validation.

    Uses a two-phase commit approach:
    1. Write to a temporary file in the same directory
    2. Validate the content
    3. Atomically replace the target file
    """

    def __init__(self, validate: Callable[[str], None] | None = None):
        """Initialize the atomic writer.

        Args:
            validate: Optional validation function for the generated code
        """
        self._validate = validate or self._default_validate

    def write(self, path: Path, content: str, validate: bool = True) -> None:
        """Write content to file atomically.

        Args:
            path: Target file path
            content: Content to write
            validate: Whether to validate before finalizing

        Raises:
            CodeGenerationError: If validation fails
            OSError: If file operations fail
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        # Same directory so the final rename stays on one filesystem
        temp_fd, temp_path_str = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            text=True,
        )
        temp_path = Path(temp_path_str)

        try:
            with open(temp_fd, "w", encoding="utf-8") as f:
                f.write(content)

            if validate:
                self._validate(content)

            temp_path.replace(path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        logger.debug("wrote %s (%d bytes)", path, len(content))

    def check_target(self, path: Path, config: OutputConfig) -> None:
        """Raise FileExistsError when ``config`` does not allow replacing ``path``."""
        if config.mode == OutputMode.ERROR_IF_EXISTS and path.exists():
            raise FileExistsError(f"Output file already exists: {path}. Use force mode to overwrite.")

    def write_output(self, path: Path, content: str, config: OutputConfig) -> None:
        """Write ``content`` following the output configuration.

        Raises:
            FileExistsError: If the file exists and the mode is ERROR_IF_EXISTS
            CodeGenerationError: If validation fails
        """
        self.check_target(path, config)

        if config.atomic_write:
            self.write(path, content, validate=config.validate_before_write)
            return

        if config.validate_before_write:
            self._validate(content)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def _default_validate(self, content: str) -> None:
        """Check that the generated code parses.

        Raises:
            CodeGenerationError: If the code is not valid Python
        """
        try:
            ast.parse(content)
        except SyntaxError as e:
            raise CodeGenerationError(f"Generated Python code is not valid: {e}") from e
