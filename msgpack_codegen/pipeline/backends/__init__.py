"""
Code generation backends.
"""

from .base import CodeBackend
from .emitter import CodeEmitter, TypeCode
from .python_backend import PythonBackend

__all__ = [
    "CodeBackend",
    "CodeEmitter",
    "PythonBackend",
    "TypeCode",
]
