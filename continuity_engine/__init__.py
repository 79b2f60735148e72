"""Incremental manuscript continuity engine."""

from .config import AppConfig
from .pipeline import ContinuityPipeline

__all__ = ["AppConfig", "ContinuityPipeline"]
