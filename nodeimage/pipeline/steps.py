from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from ..common.models import BuildArtifact, BuildInputs, RuntimeImageSpec, ToolchainSpec
from ..config import PipelineConfig
from ..dockerfile import Instruction
from ..errors import ErrorCategory
from ..runtime.issues import PipelineIssue
from .state import BuildPhase

BUILDER_STAGE = "builder"
RUNTIME_STAGE = "runtime"


@dataclass(slots=True)
class StepContext:
    """Static context shared across planning steps."""

    config: PipelineConfig
    logger: logging.Logger

    @property
    def toolchain(self) -> ToolchainSpec:
        return self.config.toolchain

    @property
    def inputs(self) -> BuildInputs:
        return self.config.inputs

    @property
    def runtime(self) -> RuntimeImageSpec:
        return self.config.runtime

    def stage_base(self, stage: str) -> str:
        if stage == BUILDER_STAGE:
            return self.config.builder_image
        if stage == RUNTIME_STAGE:
            return self.config.runtime.base_image
        raise KeyError(f"Unknown stage: {stage}")


@dataclass(slots=True)
class PlanState:
    """Mutable state that flows through planning."""

    artifact: Optional[BuildArtifact] = None
    issues: List[PipelineIssue] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)


@dataclass(slots=True)
class StepResult:
    """Outcome of planning a single step."""

    instructions: List[Instruction] = field(default_factory=list)
    issues: List[PipelineIssue] = field(default_factory=list)
    artifact: Optional[BuildArtifact] = None
    continue_pipeline: bool = True


class PipelineStep(Protocol):
    """Protocol implemented by all build steps."""

    name: str
    stage: str
    category: ErrorCategory
    depends_on: Tuple[str, ...]
    requires_os_tooling: bool
    transition: Optional[BuildPhase]

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        ...


class BaseStep:
    """Defaults shared by the concrete steps."""

    name: str = ""
    stage: str = BUILDER_STAGE
    category: ErrorCategory = ErrorCategory.COMPILATION
    depends_on: Tuple[str, ...] = ()
    requires_os_tooling: bool = True
    transition: Optional[BuildPhase] = None

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        raise NotImplementedError

    def issue(self, code: str, message: str, **kwargs) -> PipelineIssue:
        return PipelineIssue(code=code, message=message, category=self.category, step=self.name, **kwargs)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def describe_steps(steps) -> Dict[str, Dict[str, object]]:
    """Summary of step attributes, keyed by step name."""
    return {
        step.name: {
            "stage": step.stage,
            "category": step.category.value,
            "depends_on": list(step.depends_on),
            "requires_os_tooling": step.requires_os_tooling,
        }
        for step in steps
    }
