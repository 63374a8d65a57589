"""Builder stage: pinned toolchain, OS build dependencies, release compilation."""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import List

from ..common.models import BuildArtifact
from ..dockerfile import Instruction, shell_run
from ..errors import ErrorCategory
from ..pipeline.steps import BUILDER_STAGE, BaseStep, PlanState, StepContext, StepResult


class InstallToolchainStep(BaseStep):
    """Install the exact toolchain named by the ToolchainSpec."""

    name = "install-toolchain"
    stage = BUILDER_STAGE
    category = ErrorCategory.TOOLCHAIN

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        channel = context.toolchain.channel
        context.logger.debug("Pinning toolchain %s", channel)
        return StepResult(
            instructions=[
                shell_run(
                    [
                        f"rustup toolchain install {channel} --profile minimal",
                        f"rustup default {channel}",
                    ],
                    step=self.name,
                )
            ]
        )


class RegisterTargetsStep(BaseStep):
    """Register cross-compilation targets (the WebAssembly runtime target at minimum)."""

    name = "register-targets"
    stage = BUILDER_STAGE
    category = ErrorCategory.TOOLCHAIN
    depends_on = ("install-toolchain",)

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        toolchain = context.toolchain
        targets = " ".join(toolchain.targets)
        return StepResult(
            instructions=[
                shell_run([f"rustup target add {targets} --toolchain {toolchain.channel}"], step=self.name)
            ]
        )


class InstallBuildDependenciesStep(BaseStep):
    """apt packages needed to compile the node; independent of the toolchain steps."""

    name = "install-build-deps"
    stage = BUILDER_STAGE
    category = ErrorCategory.DEPENDENCY

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        packages = " ".join(context.config.build_dependencies)
        return StepResult(
            instructions=[
                shell_run(
                    [
                        "apt-get update",
                        f"DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends {packages}",
                        "rm -rf /var/lib/apt/lists/*",
                    ],
                    step=self.name,
                )
            ]
        )


class InjectCommitStep(BaseStep):
    """Expose GIT_COMMIT to the node's build script so --version reports it."""

    name = "inject-commit"
    stage = BUILDER_STAGE
    category = ErrorCategory.COMPILATION
    requires_os_tooling = False

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        instructions = [Instruction("ARG", "GIT_COMMIT=", step=self.name)]
        if context.inputs.git_commit:
            env_var = context.config.commit_env_var
            instructions.append(Instruction("ENV", f"{env_var}=${{GIT_COMMIT}}", step=self.name))
        else:
            # An empty value would stop the node build script from asking git for the commit
            context.logger.info("No GIT_COMMIT given; the node build script derives its version from git")
        return StepResult(instructions=instructions)


class CompileStep(BaseStep):
    """cargo build in release mode; BUILD_ARGS is forwarded uninterpreted."""

    name = "compile"
    stage = BUILDER_STAGE
    category = ErrorCategory.COMPILATION
    depends_on = ("register-targets", "install-build-deps", "inject-commit")

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        config = context.config
        toolchain = context.toolchain
        binary = context.runtime.binary_name
        instructions: List[Instruction] = [
            Instruction("WORKDIR", config.workdir, step=self.name),
            Instruction("COPY", f". {config.workdir}", step=self.name),
            Instruction("ARG", "BUILD_ARGS=", step=self.name),
            shell_run(
                [f"cargo +{toolchain.channel} build {toolchain.cargo_profile_flag} $BUILD_ARGS"],
                step=self.name,
            ),
        ]
        artifact = BuildArtifact(
            stage=BUILDER_STAGE,
            path=PurePosixPath(config.workdir) / "target" / toolchain.profile / binary,
        )
        context.logger.debug("Builder stage produces %s", artifact.path)
        return StepResult(instructions=instructions, artifact=artifact)


def builder_steps() -> List[BaseStep]:
    return [
        InstallToolchainStep(),
        RegisterTargetsStep(),
        InstallBuildDependenciesStep(),
        InjectCommitStep(),
        CompileStep(),
    ]
