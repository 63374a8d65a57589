"""Run one build end to end: plan, build, verify, publish."""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..common.command_runner import CommandRunner
from ..common.models import ImageBuildMetrics
from ..config import PipelineConfig
from ..errors import BuildFailedError, ErrorCategory
from ..runtime.docker import DockerImageBuilder
from ..runtime.issues import PipelineIssue, first_error, has_errors
from ..runtime.verify import ImageVerifier, VerificationResult
from .graph import StepGraph
from .plan import BuildPlan, BuildPlanner
from .state import RunStatus
from .steps import StepContext


@dataclass
class PipelineRunResult:
    """Aggregate result returned by the build pipeline."""

    run_id: str
    status: RunStatus
    candidate_image: str
    published_images: List[str] = field(default_factory=list)
    issues: List[PipelineIssue] = field(default_factory=list)
    category: Optional[ErrorCategory] = None
    failed_step: Optional[str] = None
    recipe_digest: Optional[str] = None
    dockerfile_path: Optional[str] = None
    batches: List[List[str]] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    checks: Dict[str, bool] = field(default_factory=dict)
    version_output: Optional[str] = None
    metrics: Optional[ImageBuildMetrics] = None
    git_commit: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status is RunStatus.PUBLISHED

    def raise_for_failure(self) -> None:
        if self.success:
            return
        error = first_error(self.issues)
        message = error.message if error else f"Pipeline ended in status {self.status.value}"
        raise BuildFailedError(message, category=self.category, issues=self.issues)


class BuildPipeline:
    """
    Coordinates one build of the node image.

    Nothing is retried. Any error removes the candidate image and ends the
    run in ``FAILED``; only a fully verified image gets its final tag.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        graph: Optional[StepGraph] = None,
        command_runner: Optional[CommandRunner] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if graph is None:
            from ..stages import default_graph

            graph = default_graph()
        self.config = config
        self.graph = graph
        self.logger = logger or logging.getLogger(__name__)
        self.command_runner = command_runner or CommandRunner(logger=self.logger)
        self.docker = DockerImageBuilder(self.command_runner, logger=self.logger)

    def plan(self) -> BuildPlan:
        planner = BuildPlanner(self.graph, max_workers=self.config.max_workers, logger=self.logger)
        return planner.plan(StepContext(config=self.config, logger=self.logger))

    def run(self, *, push: Optional[bool] = None, run_id: Optional[str] = None) -> PipelineRunResult:
        run_id = run_id or uuid.uuid4().hex[:12]
        push = self.config.push if push is None else push
        result = PipelineRunResult(
            run_id=run_id,
            status=RunStatus.PENDING,
            candidate_image=self.config.candidate_image_name(run_id),
            git_commit=self.config.inputs.git_commit,
        )
        work_dir = Path(self.config.work_root) / run_id
        build_started = False

        try:
            result.status = RunStatus.PLANNING
            with _timed(result, "plan"):
                plan = self.plan()
            result.issues.extend(plan.issues)
            if not plan.success:
                return self._fail(result, plan.issues)

            recipe = plan.recipe
            result.recipe_digest = recipe.digest
            result.batches = [list(batch) for batch in recipe.batches]

            work_dir.mkdir(parents=True, exist_ok=True)
            dockerfile_path = work_dir / "Dockerfile"
            dockerfile_path.write_text(recipe.render(), encoding="utf-8")
            result.dockerfile_path = str(dockerfile_path)
            self.logger.info("Run %s: wrote %s", run_id, dockerfile_path)

            result.status = RunStatus.BUILDING
            build_started = True
            with _timed(result, "build"):
                build = self.docker.build(
                    dockerfile=recipe.dockerfile,
                    dockerfile_path=dockerfile_path,
                    context_dir=Path(self.config.inputs.source_dir),
                    image_name=result.candidate_image,
                    build_args=recipe.build_args,
                    step_categories=recipe.step_categories,
                    platform=self.config.platform,
                    no_cache=not self.config.use_cache,
                    timeout=self.config.build_timeout,
                )
            result.issues.extend(build.issues)
            if not build.success:
                return self._fail(result, build.issues)

            result.status = RunStatus.VERIFYING
            with _timed(result, "verify"):
                verification = self.verify(result.candidate_image, work_dir=work_dir)
            result.issues.extend(verification.issues)
            result.checks = dict(verification.checks)
            result.version_output = verification.version_output
            if not verification.success:
                return self._fail(result, verification.issues)

            result.metrics = self.docker.collect_metrics(result.candidate_image, build.duration)

            result.status = RunStatus.PUBLISHING
            with _timed(result, "publish"):
                publish_issues = self._publish(result, push=push)
            result.issues.extend(publish_issues)
            if has_errors(publish_issues):
                return self._fail(result, publish_issues)

            result.status = RunStatus.PUBLISHED
            self.logger.info("Run %s published %s", run_id, ", ".join(result.published_images))
            return result
        except BaseException:
            result.status = RunStatus.FAILED
            self.logger.error("Run %s interrupted; discarding candidate image", run_id)
            raise
        finally:
            if build_started:
                self.docker.remove(result.candidate_image)
            result.finished_at = datetime.now()

    def verify(
        self,
        image_name: str,
        *,
        work_dir: Optional[Path] = None,
        expected_commit: Optional[str] = None,
    ) -> VerificationResult:
        verifier = ImageVerifier(
            self.command_runner,
            work_dir=work_dir or Path(self.config.work_root) / "verify" / uuid.uuid4().hex[:12],
            logger=self.logger,
            smoke_test_timeout=self.config.smoke_test_timeout,
            inspect_timeout=self.config.inspect_timeout,
        )
        return verifier.verify(
            image_name,
            self.config.runtime,
            expected_commit=expected_commit or self.config.inputs.git_commit,
        )

    def _publish(self, result: PipelineRunResult, *, push: bool) -> List[PipelineIssue]:
        """
        Tag (and optionally push) the verified candidate; untag everything again on failure.

        The commit tag goes first and the moving tag last, so a failed push never
        advances the moving tag. Tags already pushed stay in the registry.
        """
        targets: List[str] = []
        if self.config.inputs.git_commit:
            targets.append(self.config.get_full_image_name(self.config.inputs.git_commit))
        targets.append(self.config.get_full_image_name())

        tagged: List[str] = []
        issues: List[PipelineIssue] = []
        for target in targets:
            issues.extend(self.docker.tag(result.candidate_image, target))
            if has_errors(issues):
                break
            tagged.append(target)

        if push and not has_errors(issues):
            for target in targets:
                issues.extend(
                    self.docker.push(
                        target,
                        timeout=self.config.push_timeout,
                        verify_registry=self.config.verify_registry,
                    )
                )
                if has_errors(issues):
                    break

        if has_errors(issues):
            for target in tagged:
                self.docker.remove(target)
            return issues

        result.published_images = targets
        return issues

    def _fail(self, result: PipelineRunResult, issues: List[PipelineIssue]) -> PipelineRunResult:
        error = first_error(issues)
        result.status = RunStatus.FAILED
        if error is not None:
            result.category = error.category
            result.failed_step = error.step
            self.logger.error(
                "Run %s failed (%s%s): %s",
                result.run_id,
                error.category.value if error.category else "unknown",
                f" at {error.step}" if error.step else "",
                error.message,
            )
        return result


@contextmanager
def _timed(result: PipelineRunResult, phase: str) -> Iterator[None]:
    start = time.time()
    try:
        yield
    finally:
        result.timings[phase] = round(time.time() - start, 3)
