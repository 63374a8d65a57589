"""Error taxonomy shared by planning, building, verification and publishing."""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .runtime.issues import PipelineIssue


class ErrorCategory(str, Enum):
    """Where in the pipeline a failure originated."""

    TOOLCHAIN = "toolchain"
    DEPENDENCY = "dependency"
    COMPILATION = "compilation"
    PACKAGING = "packaging"
    HARDENING = "hardening"
    SMOKE_TEST = "smoke_test"
    CONFIGURATION = "configuration"
    VERIFICATION = "verification"
    PUBLISH = "publish"


class NodeImageError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(NodeImageError):
    """Raised when pipeline configuration cannot be loaded or is invalid."""


class GraphError(NodeImageError):
    """Raised for malformed step graphs (cycles, unknown dependencies, duplicates)."""


class PhaseError(NodeImageError):
    """Raised when a step is scheduled in a phase that does not admit it."""


class BuildFailedError(NodeImageError):
    """Raised by ``PipelineRunResult.raise_for_failure`` when no image was published."""

    def __init__(
        self,
        message: str,
        *,
        category: Optional[ErrorCategory] = None,
        issues: Sequence["PipelineIssue"] = (),
    ) -> None:
        super().__init__(message)
        self.category = category
        self.issues = list(issues)
