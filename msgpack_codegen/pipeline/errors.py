"""
Generation-time errors.
"""

from __future__ import annotations


class ResolutionError(Exception):
    """Raised when a type cannot be turned into a type graph node.

    This can happen when:
    - A referenced type is neither declared nor imported
    - An external type is used without a replace, shim or intercept directive
    - A generic parameter has no binding or its argument violates a bound
    - A struct contains itself without pointer, list or dict indirection

    Only the affected type is dropped from the output; generation continues.
    """

    def __init__(self, message: str, type_name: str = ""):
        super().__init__(message)
        self.type_name = type_name


class DirectiveError(Exception):
    """Raised for a malformed ``# msgp:`` directive. The directive is skipped."""


class CodeGenerationError(Exception):
    """Raised when generated code is invalid or cannot be written."""
