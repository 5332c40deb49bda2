"""
Core module initialization
"""

from .config import PipelineConfig, config_summary
from .pipeline import AuthPipeline

__all__ = ["AuthPipeline", "PipelineConfig", "config_summary"]
