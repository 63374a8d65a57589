"""Turn the step graph into a rendered, deterministic Dockerfile."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..common.models import BuildArtifact
from ..dockerfile import Dockerfile
from ..errors import ErrorCategory, PhaseError
from ..runtime.issues import PipelineIssue, has_errors
from .graph import StepGraph
from .state import BuildPhase, PhaseTracker
from .steps import BUILDER_STAGE, RUNTIME_STAGE, PipelineStep, PlanState, StepContext, StepResult

DOCKERFILE_HEADER = (
    "Generated by nodeimage. Do not edit by hand.\n"
    "Build arguments: GIT_COMMIT, BUILD_ARGS"
)


@dataclass(frozen=True)
class BuildRecipe:
    """Everything needed to invoke the image build."""

    dockerfile: Dockerfile
    artifact: BuildArtifact
    batches: Tuple[Tuple[str, ...], ...]
    step_categories: Dict[str, ErrorCategory]
    step_stages: Dict[str, str]
    build_args: Dict[str, str]

    @property
    def digest(self) -> str:
        return self.dockerfile.digest

    def render(self) -> str:
        return self.dockerfile.render()


@dataclass
class BuildPlan:
    """Outcome of planning; ``recipe`` is None when a step reported an error."""

    recipe: Optional[BuildRecipe]
    issues: List[PipelineIssue] = field(default_factory=list)
    step_issues: Dict[str, List[PipelineIssue]] = field(default_factory=dict)
    phases: List[BuildPhase] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.recipe is not None and not has_errors(self.issues)


class BuildPlanner:
    """Walk the step graph batch by batch and assemble the Dockerfile."""

    def __init__(
        self,
        graph: StepGraph,
        *,
        max_workers: int = 1,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.graph = graph
        self.max_workers = max_workers
        self.logger = logger or logging.getLogger(__name__)

    def plan(self, context: StepContext) -> BuildPlan:
        self.graph.validate()
        check_structure(self.graph)

        batches = self.graph.batches()
        tracker = PhaseTracker()
        state = PlanState()
        dockerfile = Dockerfile(header=DOCKERFILE_HEADER)
        step_issues: Dict[str, List[PipelineIssue]] = {}

        for index, batch in enumerate(batches, 1):
            self.logger.debug("Planning batch %d/%d: %s", index, len(batches), [step.name for step in batch])
            results = self._run_batch(batch, state, context)

            for step, result in zip(batch, results):
                tracker.admit(step)
                stage = dockerfile.stage(step.stage) or dockerfile.add_stage(step.stage, context.stage_base(step.stage))
                stage.extend(result.instructions)
                state.issues.extend(result.issues)
                state.completed.append(step.name)
                step_issues[step.name] = list(result.issues)
                if result.artifact is not None:
                    state.artifact = result.artifact
                tracker.complete(step)

                if not result.continue_pipeline or has_errors(result.issues):
                    self.logger.error("Planning stopped at step %s", step.name)
                    return BuildPlan(
                        recipe=None,
                        issues=list(state.issues),
                        step_issues=step_issues,
                        phases=list(tracker.history),
                    )

        if state.artifact is None:
            state.issues.append(
                PipelineIssue(
                    code="ARTIFACT_MISSING",
                    message="No step produced a build artifact",
                    category=ErrorCategory.PACKAGING,
                )
            )
            return BuildPlan(recipe=None, issues=list(state.issues), step_issues=step_issues, phases=list(tracker.history))

        recipe = BuildRecipe(
            dockerfile=dockerfile,
            artifact=state.artifact,
            batches=tuple(tuple(step.name for step in batch) for batch in batches),
            step_categories={step.name: step.category for step in self.graph.steps},
            step_stages={step.name: step.stage for step in self.graph.steps},
            build_args=context.inputs.build_arg_values(),
        )
        self.logger.info("Planned %d steps in %d batches (recipe %s)", len(self.graph), len(batches), recipe.digest[:12])
        return BuildPlan(recipe=recipe, issues=list(state.issues), step_issues=step_issues, phases=list(tracker.history))

    def _run_batch(
        self,
        batch: Sequence[PipelineStep],
        state: PlanState,
        context: StepContext,
    ) -> List[StepResult]:
        if self.max_workers > 1 and len(batch) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(batch))) as executor:
                futures = [executor.submit(step.run, state, context) for step in batch]
                return [future.result() for future in futures]
        return [step.run(state, context) for step in batch]


def check_structure(graph: StepGraph) -> None:
    """
    Static checks on stage boundaries and the finalize transition.

    Raises:
        PhaseError: when the graph could schedule a step somewhere it must not run.
    """
    steps = graph.steps
    runtime = [step for step in steps if step.stage == RUNTIME_STAGE]
    builders = {step.name for step in steps if step.stage == BUILDER_STAGE}
    finalizers = [step for step in runtime if step.transition is BuildPhase.FINALIZED]

    if len(finalizers) > 1:
        raise PhaseError(f"Only one finalizing step is allowed, got {[step.name for step in finalizers]}")

    smoke_tests = [step for step in runtime if step.category is ErrorCategory.SMOKE_TEST]
    if runtime and not smoke_tests:
        raise PhaseError("The runtime stage has no smoke test step")

    for step in runtime:
        ancestors = graph.ancestors(step.name)
        if not ancestors & builders:
            raise PhaseError(f"Runtime step {step.name} does not depend on the builder stage")
        if not finalizers or step is finalizers[0]:
            continue
        finalizer = finalizers[0].name
        if step.requires_os_tooling and step.name not in graph.ancestors(finalizer):
            raise PhaseError(f"Step {step.name} needs OS tooling but is not ordered before {finalizer}")

    if finalizers:
        finalizer = finalizers[0].name
        for smoke_test in smoke_tests:
            if finalizer not in graph.ancestors(smoke_test.name):
                raise PhaseError(f"Smoke test {smoke_test.name} must run after {finalizer}")
