"""
Batch extraction: change sources, the windowed extractor, tier writers and
the run orchestrator.
"""

from .extractor import ChangeExtractor, TimeWindow, plan_windows
from .pipeline import IncrementalPipeline

__all__ = ["ChangeExtractor", "IncrementalPipeline", "TimeWindow", "plan_windows"]
