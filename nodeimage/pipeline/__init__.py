"""Step graph, phase tracking, planning and the end-to-end build runner."""

from .graph import StepGraph
from .plan import BuildPlan, BuildPlanner, BuildRecipe, check_structure
from .runner import BuildPipeline, PipelineRunResult
from .state import BuildPhase, PhaseTracker, RunStatus
from .steps import (
    BUILDER_STAGE,
    RUNTIME_STAGE,
    BaseStep,
    PipelineStep,
    PlanState,
    StepContext,
    StepResult,
)

__all__ = [
    "BUILDER_STAGE",
    "RUNTIME_STAGE",
    "BaseStep",
    "BuildPhase",
    "BuildPipeline",
    "BuildPlan",
    "BuildPlanner",
    "BuildRecipe",
    "PhaseTracker",
    "PipelineRunResult",
    "PipelineStep",
    "PlanState",
    "RunStatus",
    "StepContext",
    "StepGraph",
    "StepResult",
    "check_structure",
]
