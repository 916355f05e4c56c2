"""Core models and configuration."""

from .task import CodingResult, CodingTask, PipelineState, Repository
from .config import WorkerConfig, load_config

__all__ = [
    "CodingResult",
    "CodingTask",
    "PipelineState",
    "Repository",
    "WorkerConfig",
    "load_config",
]
