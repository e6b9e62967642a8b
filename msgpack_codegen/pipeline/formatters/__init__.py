"""
Post-processing formatters for generated code.
"""

from __future__ import annotations

from .base import Formatter
from .black_formatter import BlackFormatter
from .ruff_formatter import RuffFormatter

FORMATTERS: dict[str, type[Formatter]] = {
    "ruff": RuffFormatter,
    "black": BlackFormatter,
}

__all__ = [
    "FORMATTERS",
    "BlackFormatter",
    "Formatter",
    "RuffFormatter",
]
