"""
Change sources: the store-facing side of extraction.
"""

from .base import ChangeSource, row_to_record
from .memory_source import InMemoryChangeSource

__all__ = [
    "ChangeSource",
    "InMemoryChangeSource",
    "row_to_record",
]
