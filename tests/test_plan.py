"""Unit tests for planning and Dockerfile rendering."""

from __future__ import annotations

import logging

import pytest

from nodeimage.common.models import BuildInputs, RuntimeImageSpec, ToolchainSpec
from nodeimage.config import PipelineConfig
from nodeimage.errors import ErrorCategory, PhaseError
from nodeimage.pipeline.graph import StepGraph
from nodeimage.pipeline.plan import BuildPlanner
from nodeimage.pipeline.state import BuildPhase
from nodeimage.pipeline.steps import RUNTIME_STAGE, BaseStep, StepContext, StepResult
from nodeimage.stages import builder_steps, default_graph, runtime_steps
from nodeimage.stages.runtime import CopyArtifactStep, SmokeTestStep


def plan_for(config: PipelineConfig, graph: StepGraph = None, max_workers: int = 1):
    planner = BuildPlanner(graph or default_graph(), max_workers=max_workers)
    return planner.plan(StepContext(config=config, logger=logging.getLogger("test")))


def test_default_plan_renders_two_stages(config: PipelineConfig) -> None:
    plan = plan_for(config)

    assert plan.success
    dockerfile = plan.recipe.render()
    assert "FROM docker.io/library/rust:1.56.1-bullseye AS builder" in dockerfile
    assert "FROM docker.io/library/ubuntu:20.04 AS runtime" in dockerfile
    assert dockerfile.index("AS builder") < dockerfile.index("AS runtime")
    assert str(plan.recipe.artifact.path) == "/selendra/target/release/selendra"
    assert plan.phases == [
        BuildPhase.PLANNING,
        BuildPhase.BUILDER,
        BuildPhase.RUNTIME,
        BuildPhase.FINALIZED,
        BuildPhase.DECLARED,
    ]


def test_builder_stage_pins_toolchain_and_forwards_build_args(config: PipelineConfig) -> None:
    builder = plan_for(config).recipe.dockerfile.stage("builder").render()

    assert "rustup toolchain install nightly-2021-11-11 --profile minimal" in builder
    assert "rustup target add wasm32-unknown-unknown --toolchain nightly-2021-11-11" in builder
    assert "libssl-dev" in builder and "libclang-dev" in builder and "cmake" in builder
    assert "ARG GIT_COMMIT=" in builder
    assert "ENV SUBSTRATE_CLI_GIT_COMMIT_HASH=${GIT_COMMIT}" in builder
    assert "RUN cargo +nightly-2021-11-11 build --release $BUILD_ARGS" in builder
    # targets are registered before the compiler runs
    assert builder.index("rustup toolchain install") < builder.index("rustup target add") < builder.index("cargo +")


def test_runtime_stage_order_and_contract(config: PipelineConfig) -> None:
    runtime = plan_for(config).recipe.dockerfile.stage("runtime").render()

    copy = runtime.index("COPY --from=builder /selendra/target/release/selendra /usr/local/bin/selendra")
    identity = runtime.index("useradd --create-home --uid 1000 --gid 1000")
    link = runtime.index("ln -s /data /selendra/.local/share/selendra")
    strip = runtime.index("rm -rf /usr/bin /usr/sbin")
    smoke = runtime.index('RUN ["/usr/local/bin/selendra", "--version"]')
    user = runtime.index("USER 1000:1000")
    assert copy < identity < link < strip < smoke < user

    assert "chown -R 1000:1000 /data /selendra/.local" in runtime
    assert "EXPOSE 30333 9933 9944 9615" in runtime
    assert 'VOLUME ["/data"]' in runtime
    assert 'ENTRYPOINT ["/usr/local/bin/selendra"]' in runtime
    assert 'org.opencontainers.image.source="https://github.com/selendra/selendra"' in runtime


def test_commit_env_is_left_unset_without_commit(config: PipelineConfig) -> None:
    inputs = BuildInputs(source_dir=config.inputs.source_dir, git_commit=None)
    recipe = plan_for(config.model_copy(update={"inputs": inputs})).recipe
    builder = recipe.dockerfile.stage("builder").render()

    assert "ARG GIT_COMMIT=" in builder
    assert "SUBSTRATE_CLI_GIT_COMMIT_HASH" not in builder
    assert recipe.build_args["GIT_COMMIT"] == ""


def test_recipe_is_deterministic(config: PipelineConfig) -> None:
    first = plan_for(config).recipe
    second = plan_for(config).recipe
    parallel = plan_for(config, max_workers=4).recipe

    assert first.digest == second.digest == parallel.digest
    assert first.render() == parallel.render()


def test_recipe_digest_tracks_toolchain(config: PipelineConfig) -> None:
    bumped = config.model_copy(update={"toolchain": ToolchainSpec(channel="nightly-2022-01-01")})

    assert plan_for(config).recipe.digest != plan_for(bumped).recipe.digest


def test_recipe_metadata(config: PipelineConfig) -> None:
    recipe = plan_for(config).recipe

    assert recipe.build_args == {"GIT_COMMIT": "abc123", "BUILD_ARGS": ""}
    assert recipe.step_categories["install-toolchain"] is ErrorCategory.TOOLCHAIN
    assert recipe.step_categories["install-build-deps"] is ErrorCategory.DEPENDENCY
    assert recipe.step_categories["compile"] is ErrorCategory.COMPILATION
    assert recipe.step_categories["copy-artifact"] is ErrorCategory.PACKAGING
    assert recipe.step_categories["create-identity"] is ErrorCategory.HARDENING
    assert recipe.step_categories["smoke-test"] is ErrorCategory.SMOKE_TEST
    assert recipe.batches[0] == ("install-toolchain", "install-build-deps", "inject-commit")


def test_custom_profile_and_runtime(config: PipelineConfig) -> None:
    custom = config.model_copy(
        update={
            "toolchain": ToolchainSpec(channel="1.56.1", profile="production"),
            "runtime": RuntimeImageSpec(binary_name="indracore", version_args=("--version", "--quiet")),
        }
    )
    recipe = plan_for(custom).recipe
    dockerfile = recipe.render()

    assert str(recipe.artifact.path) == "/selendra/target/production/indracore"
    assert "cargo +1.56.1 build --profile production $BUILD_ARGS" in dockerfile
    assert 'RUN ["/usr/local/bin/indracore", "--version", "--quiet"]' in dockerfile
    assert "ln -s /data /selendra/.local/share/indracore" in dockerfile


def test_missing_smoke_test_is_rejected(config: PipelineConfig) -> None:
    steps = [item for item in runtime_steps() if not isinstance(item, SmokeTestStep)]
    for item in steps:
        if item.name == "declare-contract":
            item.depends_on = ("remove-surface",)
    graph = StepGraph([*builder_steps(), *steps])

    with pytest.raises(PhaseError, match="no smoke test"):
        plan_for(config, graph)


class LateChownStep(BaseStep):
    name = "late-chown"
    stage = RUNTIME_STAGE
    depends_on = ("remove-surface",)

    def run(self, state, context) -> StepResult:
        return StepResult()


def test_tooling_step_after_finalize_is_rejected(config: PipelineConfig) -> None:
    graph = StepGraph([*builder_steps(), *runtime_steps(), LateChownStep()])

    with pytest.raises(PhaseError, match="late-chown"):
        plan_for(config, graph)


class DetachedRuntimeStep(BaseStep):
    name = "detached"
    stage = RUNTIME_STAGE
    requires_os_tooling = False

    def run(self, state, context) -> StepResult:
        return StepResult()


def test_runtime_step_must_follow_builder(config: PipelineConfig) -> None:
    graph = StepGraph([*builder_steps(), *runtime_steps(), DetachedRuntimeStep()])

    with pytest.raises(PhaseError, match="does not depend on the builder stage"):
        plan_for(config, graph)


def test_missing_artifact_stops_planning(config: PipelineConfig) -> None:
    class NoArtifactCompile(BaseStep):
        name = "compile"
        depends_on = ()

        def run(self, state, context) -> StepResult:
            return StepResult()

    graph = StepGraph([NoArtifactCompile(), *runtime_steps()])
    plan = plan_for(config, graph)

    assert not plan.success
    assert plan.recipe is None
    assert plan.issues[0].code == "ARTIFACT_MISSING"
    assert plan.issues[0].category is ErrorCategory.PACKAGING
    assert plan.issues[0].step == CopyArtifactStep.name
