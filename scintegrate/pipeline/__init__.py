"""Pipeline orchestration module.

Provides YAML-based configuration, run logging and in-memory stage
execution with dependency resolution.

Example Usage
-------------
>>> from scintegrate.pipeline import IntegrationPipeline, PipelineConfig
>>> config = PipelineConfig.from_yaml("config.yaml")
>>> pipeline = IntegrationPipeline(config)
>>> result = pipeline.run("samples.csv", "results/", model_name="bonemarrowref")
"""

# Configuration
from .config import PipelineConfig

# Logging
from .logger import (
    ColoredFormatter,
    PipelineLogger,
)

# Execution
from .executor import InMemoryExecutor
from .runner import IntegrationPipeline, RunResult

__all__ = [
    # Config
    "PipelineConfig",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Execution
    "InMemoryExecutor",
    "IntegrationPipeline",
    "RunResult",
]
