"""
Base class for code formatters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..config import FormatterConfig


class Formatter(ABC):
    """Abstract base class for code formatters."""

    @abstractmethod
    def format(self, code: str, config: FormatterConfig) -> str:
        """
        Format the given code.

        Args:
            code: The generated source code
            config: Formatter configuration

        Returns:
            Formatted code, or ``code`` unchanged when the tool fails
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the formatting tool can be used here."""
