"""Docker build, tag, push and inspect helpers used by the pipeline runner."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import requests

from ..common.command_runner import CommandResult, CommandRunner
from ..common.models import ImageBuildMetrics
from ..dockerfile import Dockerfile
from ..errors import ErrorCategory
from .attribution import FailureAttribution, attribute_build_failure
from .issues import PipelineIssue

# Category used when a failure cannot be tied to a specific step
_STAGE_FALLBACK = {
    "builder": ErrorCategory.COMPILATION,
    "runtime": ErrorCategory.PACKAGING,
}


@dataclass(slots=True)
class DockerBuildResult:
    """Result of a single ``docker buildx build`` invocation."""

    image_name: str
    issues: List[PipelineIssue]
    duration: float = 0.0
    attribution: Optional[FailureAttribution] = None
    log_tail: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not any(issue.is_error() for issue in self.issues)


class DockerImageBuilder:
    """Build node images with buildx and move them to a registry once they are verified."""

    def __init__(self, command_runner: CommandRunner, logger: Optional[logging.Logger] = None) -> None:
        self.command_runner = command_runner
        self.logger = logger or logging.getLogger(__name__)

    def build(
        self,
        *,
        dockerfile: Dockerfile,
        dockerfile_path: Path,
        context_dir: Path,
        image_name: str,
        build_args: Mapping[str, str],
        step_categories: Mapping[str, ErrorCategory],
        platform: str = "linux/amd64",
        no_cache: bool = True,
        timeout: Optional[float] = None,
    ) -> DockerBuildResult:
        """
        Build the image described by ``dockerfile`` and load it into the local daemon.

        Args:
            dockerfile: Dockerfile model, used to attribute failures to steps.
            dockerfile_path: Where the rendered Dockerfile was written.
            context_dir: Build context (the node source tree).
            image_name: Local tag for the built image.
            build_args: Values for ``--build-arg`` (GIT_COMMIT, BUILD_ARGS).
            step_categories: Error category of each step, keyed by step name.
            platform: Target platform passed to buildx.
            no_cache: Disable layer cache reuse so each run starts from scratch.
            timeout: Seconds before the build is abandoned.
        """
        issues: List[PipelineIssue] = []

        if not dockerfile_path.exists():
            issues.append(
                PipelineIssue(
                    code="DOCKERFILE_NOT_FOUND",
                    message=f"Dockerfile not found at {dockerfile_path}",
                    category=ErrorCategory.CONFIGURATION,
                )
            )
            return DockerBuildResult(image_name=image_name, issues=issues)

        if not context_dir.is_dir():
            issues.append(
                PipelineIssue(
                    code="BUILD_CONTEXT_NOT_FOUND",
                    message=f"Source tree not found at {context_dir}",
                    category=ErrorCategory.CONFIGURATION,
                )
            )
            return DockerBuildResult(image_name=image_name, issues=issues)

        build_cmd = [
            "docker",
            "buildx",
            "build",
            "--platform",
            platform,
            "--load",
            "--progress=plain",
        ]
        if no_cache:
            build_cmd.append("--no-cache")
        for key, value in build_args.items():
            build_cmd.extend(["--build-arg", f"{key}={value}"])
        build_cmd.extend(["-t", image_name, "-f", str(dockerfile_path), str(context_dir)])

        self.logger.info("Building Docker image %s with buildx", image_name)
        build_result = self.command_runner.run(build_cmd, timeout=timeout, env={"DOCKER_BUILDKIT": "1"})

        attribution: Optional[FailureAttribution] = None
        if build_result.succeeded():
            self.logger.info("Build completed successfully for %s in %.1fs", image_name, build_result.duration)
        else:
            attribution = attribute_build_failure(build_result.output, dockerfile)
            issues.append(self._build_failure_issue(build_result, attribution, step_categories))
            self.logger.error("Docker buildx failed for %s: %s", image_name, issues[-1].message)

        return DockerBuildResult(
            image_name=image_name,
            issues=issues,
            duration=build_result.duration,
            attribution=attribution,
            log_tail=build_result.output.splitlines()[-40:],
        )

    def _build_failure_issue(
        self,
        build_result: CommandResult,
        attribution: Optional[FailureAttribution],
        step_categories: Mapping[str, ErrorCategory],
    ) -> PipelineIssue:
        if build_result.timed_out:
            return PipelineIssue(
                code="DOCKER_BUILDX_TIMEOUT",
                message=f"Docker buildx build timed out after {build_result.duration:.0f}s",
            )

        if not build_result.tool_available:
            return PipelineIssue(
                code="DOCKER_BUILDX_NOT_FOUND",
                message="Docker buildx not available - install Docker with buildx support",
                category=ErrorCategory.CONFIGURATION,
            )

        error_msg = build_result.failure_message("Unknown buildx error")
        if attribution is None:
            return PipelineIssue(
                code="DOCKER_BUILDX_FAILED",
                message=f"Docker buildx build failed: {_last_line(error_msg)}",
                details=error_msg[-2000:],
            )

        category = step_categories.get(attribution.step) if attribution.step else None
        if category is None and attribution.instruction and attribution.instruction.startswith("FROM"):
            # The builder base image carries the toolchain installer
            category = ErrorCategory.TOOLCHAIN if attribution.stage == "builder" else ErrorCategory.PACKAGING
        if category is None:
            category = _STAGE_FALLBACK.get(attribution.stage or "")

        where = attribution.step or attribution.instruction or "unknown instruction"
        return PipelineIssue(
            code=f"{(category.value if category else 'build').upper()}_FAILED",
            message=f"Build failed at {where}: {attribution.message}",
            category=category,
            step=attribution.step,
            details=error_msg[-2000:],
        )

    def tag(self, source: str, target: str) -> List[PipelineIssue]:
        result = self.command_runner.run(["docker", "tag", source, target], timeout=30)
        if result.succeeded():
            self.logger.info("Tagged %s as %s", source, target)
            return []
        return [
            PipelineIssue(
                code="DOCKER_TAG_FAILED",
                message=f"Could not tag {source} as {target}: {result.failure_message()}",
                category=ErrorCategory.PUBLISH,
            )
        ]

    def remove(self, image_name: str) -> bool:
        """Remove a local tag; used to discard candidates that must not be published."""
        result = self.command_runner.run(["docker", "image", "rm", "--force", image_name], timeout=60)
        if result.succeeded():
            self.logger.info("Removed local image %s", image_name)
            return True
        self.logger.warning("Could not remove image %s: %s", image_name, result.failure_message())
        return False

    def push(self, image_name: str, *, timeout: Optional[float] = None, verify_registry: bool = True) -> List[PipelineIssue]:
        """Push once. Failed pushes are reported, not retried."""
        result = self.command_runner.run(["docker", "push", image_name], timeout=timeout)

        if not result.tool_available:
            return [
                PipelineIssue(
                    code="DOCKER_CLI_NOT_FOUND",
                    message="Docker CLI not available for push operation",
                    category=ErrorCategory.PUBLISH,
                )
            ]
        if result.timed_out:
            return [
                PipelineIssue(
                    code="DOCKER_PUSH_TIMEOUT",
                    message=f"Docker push timed out after {result.duration:.0f}s",
                    category=ErrorCategory.PUBLISH,
                )
            ]
        if not result.succeeded():
            return [
                PipelineIssue(
                    code="DOCKER_PUSH_FAILED",
                    message=f"Docker push failed: {result.failure_message('Unknown docker push error')}",
                    category=ErrorCategory.PUBLISH,
                )
            ]

        self.logger.info("Successfully pushed image to registry: %s", image_name)
        if verify_registry and "/" in image_name:
            return self._verify_image_in_registry(image_name)
        return []

    def _verify_image_in_registry(self, image_name: str) -> List[PipelineIssue]:
        registry, image_path = image_name.split("/", 1)
        if "." not in registry and ":" not in registry and registry != "localhost":
            # Docker Hub style name (org/repo); nothing to query directly
            return []
        image_repo, _, image_tag = image_path.rpartition(":")
        if not image_repo:
            image_repo, image_tag = image_path, "latest"

        verify_url = f"http://{registry}/v2/{image_repo}/tags/list"
        self.logger.info("Verifying image in registry: %s", image_name)
        try:
            response = requests.get(verify_url, timeout=10)
        except requests.RequestException as exc:
            return [self._verification_issue(image_name, verify_url, str(exc))]

        if response.status_code != 200:
            return [self._verification_issue(image_name, verify_url, f"registry returned status {response.status_code}")]

        tags = (response.json() or {}).get("tags") or []
        if image_tag not in tags:
            return [self._verification_issue(image_name, verify_url, f"tag '{image_tag}' not found in tags list: {tags}")]

        self.logger.info("Successfully verified image in registry: %s", image_name)
        return []

    @staticmethod
    def _verification_issue(image_name: str, url: str, reason: str) -> PipelineIssue:
        return PipelineIssue(
            code="DOCKER_PUSH_VERIFICATION_FAILED",
            message=f"Image pushed but registry verification failed (URL: {url}): {reason}",
            severity="warning",
            category=ErrorCategory.PUBLISH,
            details=image_name,
        )

    def inspect(self, image_name: str, *, timeout: Optional[float] = 30) -> Optional[Dict[str, Any]]:
        """Return the ``docker image inspect`` document for the image, or None."""
        result = self.command_runner.run(["docker", "image", "inspect", image_name], timeout=timeout)
        if not result.succeeded():
            self.logger.warning("Could not inspect image %s: %s", image_name, result.failure_message())
            return None
        try:
            documents = json.loads(result.stdout)
        except json.JSONDecodeError:
            self.logger.warning("docker image inspect returned invalid JSON for %s", image_name)
            return None
        if not documents:
            return None
        return documents[0]

    def collect_metrics(self, image_name: str, build_time: float) -> Optional[ImageBuildMetrics]:
        document = self.inspect(image_name)
        if document is None:
            return None
        try:
            size_mb = int(document["Size"]) / (1024 * 1024)
            layers = len(document["RootFS"]["Layers"])
        except (KeyError, TypeError, ValueError):
            self.logger.warning("Could not parse docker inspect output for %s", image_name)
            return None

        metrics = ImageBuildMetrics(
            image_name=image_name,
            build_time=build_time,
            image_size_mb=round(size_mb, 2),
            layers_count=layers,
        )
        self.logger.info(
            "Image metrics: %.2f MB, %s layers, built in %.1fs",
            metrics.image_size_mb,
            metrics.layers_count,
            metrics.build_time,
        )
        return metrics


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else text
