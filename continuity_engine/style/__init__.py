"""Style metrics: repetition, tone drift, dialogue tics."""

from .runner import StyleAnalyzer, run_style_analysis

__all__ = ["StyleAnalyzer", "run_style_analysis"]
