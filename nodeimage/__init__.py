"""Build, harden and verify a container image for a Substrate-based node."""

from .config import PipelineConfig, load_pipeline_config
from .errors import BuildFailedError, ConfigurationError, ErrorCategory, NodeImageError

__version__ = "0.1.0"

__all__ = [
    "BuildFailedError",
    "ConfigurationError",
    "ErrorCategory",
    "NodeImageError",
    "PipelineConfig",
    "load_pipeline_config",
]
