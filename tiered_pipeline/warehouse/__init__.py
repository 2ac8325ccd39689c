"""
Durable state: the PostgreSQL connection pool and the watermark stores.
"""

from .watermark_store import InMemoryWatermarkStore, WatermarkStore

__all__ = [
    "InMemoryWatermarkStore",
    "WatermarkStore",
]
