"""Unit tests for the end-to-end build pipeline with a scripted docker CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Sequence

import pytest

from conftest import FakeCommandRunner, install_healthy_image, make_result
from nodeimage.common.command_runner import CommandResult
from nodeimage.config import PipelineConfig
from nodeimage.errors import BuildFailedError, ErrorCategory
from nodeimage.pipeline.runner import BuildPipeline
from nodeimage.pipeline.state import RunStatus
from nodeimage.reports import BuildReporter

CANDIDATE = "selendra/selendra:candidate-run1"

SMOKE_TEST_LOG = """\
#20 [runtime 5/6] RUN rm -rf /usr/bin /usr/sbin
#20 DONE 0.3s

#21 [runtime 6/6] RUN ["/usr/local/bin/selendra", "--version"]
#21 0.112 exec /usr/local/bin/selendra: no such file or directory
#21 ERROR: process "/usr/local/bin/selendra --version" did not complete successfully: exit code: 127
"""


def pipeline_for(config: PipelineConfig, runner: FakeCommandRunner) -> BuildPipeline:
    return BuildPipeline(config, command_runner=runner)


def test_successful_run_publishes_verified_image(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123-x86_64-linux-gnu")

    result = pipeline_for(config, runner).run(run_id="run1")

    assert result.success, result.issues
    assert result.status is RunStatus.PUBLISHED
    assert result.published_images == ["selendra/selendra:abc123", "selendra/selendra:latest"]
    assert result.version_output == "selendra 0.9.0-abc123-x86_64-linux-gnu"
    assert result.metrics is not None and result.metrics.layers_count == 4
    assert set(result.timings) == {"plan", "build", "verify", "publish"}
    assert Path(result.dockerfile_path).read_text(encoding="utf-8").startswith("# Generated by nodeimage")

    build = runner.commands("docker", "buildx", "build")[0]
    assert "--no-cache" in build
    assert "GIT_COMMIT=abc123" in build and "BUILD_ARGS=" in build
    assert build[build.index("-t") + 1] == CANDIDATE

    assert runner.commands("docker", "tag") == [
        ["docker", "tag", CANDIDATE, "selendra/selendra:abc123"],
        ["docker", "tag", CANDIDATE, "selendra/selendra:latest"],
    ]
    assert runner.commands("docker", "push") == []
    # the run-scoped candidate tag never outlives the run
    assert runner.commands("docker", "image", "rm") == [["docker", "image", "rm", "--force", CANDIDATE]]


def test_build_cache_can_be_enabled(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")

    pipeline_for(config.model_copy(update={"use_cache": True}), runner).run(run_id="run1")

    assert "--no-cache" not in runner.commands("docker", "buildx", "build")[0]


def test_smoke_test_failure_publishes_nothing(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")
    runner.on(["docker", "buildx", "build"], make_result([], return_code=1, stderr=SMOKE_TEST_LOG))

    result = pipeline_for(config, runner).run(run_id="run1")

    assert result.status is RunStatus.FAILED
    assert result.category is ErrorCategory.SMOKE_TEST
    assert result.failed_step == "smoke-test"
    assert result.published_images == []
    assert runner.commands("docker", "tag") == []
    assert runner.commands("docker", "run") == []
    assert runner.commands("docker", "image", "rm") == [["docker", "image", "rm", "--force", CANDIDATE]]


def test_unattributed_build_failure(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    runner.on(["docker", "buildx", "build"], make_result([], return_code=1, stderr="ERROR: failed to solve: context canceled"))

    result = pipeline_for(config, runner).run(run_id="run1")

    assert result.status is RunStatus.FAILED
    assert result.issues[-1].code == "DOCKER_BUILDX_FAILED"
    assert result.failed_step is None


def test_missing_source_tree_fails_before_building(config: PipelineConfig, runner: FakeCommandRunner, tmp_path: Path) -> None:
    config = config.with_inputs(source_dir=tmp_path / "missing")

    result = pipeline_for(config, runner).run(run_id="run1")

    assert result.category is ErrorCategory.CONFIGURATION
    assert runner.commands("docker", "buildx") == []


def test_verification_failure_discards_candidate(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-deadbeef")

    result = pipeline_for(config, runner).run(run_id="run1")

    assert result.status is RunStatus.FAILED
    assert result.checks["version_reports_commit"] is False
    assert result.category is ErrorCategory.COMPILATION
    assert runner.commands("docker", "tag") == []
    assert runner.commands("docker", "image", "rm") == [["docker", "image", "rm", "--force", CANDIDATE]]


def test_push_failure_removes_published_tags(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")
    runner.on(["docker", "push"], make_result([], return_code=1, stderr="denied: requested access to the resource is denied"))

    result = pipeline_for(config, runner).run(run_id="run1", push=True)

    assert result.status is RunStatus.FAILED
    assert result.category is ErrorCategory.PUBLISH
    assert result.published_images == []
    # a single attempt, no retries
    assert runner.commands("docker", "push") == [["docker", "push", "selendra/selendra:abc123"]]
    removed = [call[-1] for call in runner.commands("docker", "image", "rm")]
    assert removed == ["selendra/selendra:abc123", "selendra/selendra:latest", CANDIDATE]


def test_successful_push(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")

    result = pipeline_for(config, runner).run(run_id="run1", push=True)

    assert result.success
    assert [call[-1] for call in runner.commands("docker", "push")] == [
        "selendra/selendra:abc123",
        "selendra/selendra:latest",
    ]


def test_failed_commit_push_leaves_moving_tag_unpushed(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")

    def push(command: Sequence[str]) -> CommandResult:
        if command[-1].endswith(":latest"):
            return make_result(command)
        return make_result(command, return_code=1, stderr="unexpected EOF")

    runner.on(["docker", "push"], push)

    result = pipeline_for(config, runner).run(run_id="run1", push=True)

    assert result.status is RunStatus.FAILED
    assert [call[-1] for call in runner.commands("docker", "push")] == ["selendra/selendra:abc123"]


def test_standalone_verifications_use_separate_work_dirs(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")
    pipeline = pipeline_for(config, runner)

    assert pipeline.verify("img:one").success
    assert pipeline.verify("img:two").success

    exports = [Path(call[3]) for call in runner.commands("docker", "export")]
    assert len(exports) == 2
    assert exports[0].parent != exports[1].parent
    assert all(export.parent.parent == Path(config.work_root) / "verify" for export in exports)


def test_interrupted_build_still_removes_candidate(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    def interrupted(command: Sequence[str]) -> CommandResult:
        raise KeyboardInterrupt

    runner.on(["docker", "buildx", "build"], interrupted)
    pipeline = pipeline_for(config, runner)

    with pytest.raises(KeyboardInterrupt):
        pipeline.run(run_id="run1")

    assert runner.commands("docker", "image", "rm") == [["docker", "image", "rm", "--force", CANDIDATE]]


def test_raise_for_failure(config: PipelineConfig, runner: FakeCommandRunner) -> None:
    runner.on(["docker", "buildx", "build"], make_result([], return_code=1, stderr=SMOKE_TEST_LOG))

    result = pipeline_for(config, runner).run(run_id="run1")

    with pytest.raises(BuildFailedError) as excinfo:
        result.raise_for_failure()
    assert excinfo.value.category is ErrorCategory.SMOKE_TEST


def test_report_is_written(config: PipelineConfig, runner: FakeCommandRunner, tmp_path: Path) -> None:
    install_healthy_image(runner, config.runtime, version="0.9.0-abc123")
    result = pipeline_for(config, runner).run(run_id="run1")

    path = BuildReporter().save_report(result, str(tmp_path / "reports"))

    report = json.loads(Path(path).read_text(encoding="utf-8"))
    assert path.endswith("_run1.json")
    assert report["status"] == "published"
    assert report["published_images"] == ["selendra/selendra:abc123", "selendra/selendra:latest"]
    assert report["metrics"]["layers_count"] == 4
    assert report["checks"]["smoke_test"] is True
