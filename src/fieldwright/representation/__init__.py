"""Field source representations.

Example:
    >>> from fieldwright.representation import ArrayFieldSource, FieldSource
"""

from .base import FieldSource, FieldSourceWrapper
from .memory import ArrayFieldSource

__all__ = [
    "FieldSource",
    "FieldSourceWrapper",
    "ArrayFieldSource",
]
