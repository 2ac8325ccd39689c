"""
tiered-pipeline: incremental, watermark-driven extraction through raw,
cleaned and aggregated tiers with validation gates between them.
"""

__version__ = "0.1.0"
