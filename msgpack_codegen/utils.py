"""
Utility functions for the MessagePack serializer generator.
"""

import json
import re

# Regex pattern to split text into words, handling camelCase and acronym boundaries
_WORD_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")


def _normalize_separators(text: str) -> str:
    """Normalize separators (underscores, hyphens, brackets) to spaces."""
    return re.sub(r"[_\-\[\],. |]+", " ", text)


def _split_into_words(text: str) -> list[str]:
    """Split text into words, handling camelCase boundaries."""
    return _WORD_PATTERN.findall(text)


def pascal_to_snake(text: str) -> str:
    """Convert PascalCase, camelCase or bracketed generic names to snake_case.

    Examples:
        "Point" -> "point"
        "HTTPServer" -> "http_server"
        "orderItem" -> "order_item"
        "Pair[int, str]" -> "pair_int_str"
        "Vec3" -> "vec_3"

    Args:
        text: The name to convert

    Returns:
        snake_case string, suitable as a Python identifier suffix
    """
    if not text:
        return ""
    words = _split_into_words(_normalize_separators(text))
    return "_".join(word.lower() for word in words)


def python_string(text: str) -> str:
    """Quote ``text`` as a double-quoted Python string literal."""
    return json.dumps(text)
