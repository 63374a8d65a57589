"""Runtime stage: copy the artifact, drop privileges, wire the data volume, strip tooling, smoke test."""
from __future__ import annotations

from typing import List

from ..dockerfile import Instruction, exec_form, exec_run, labels, shell_run
from ..errors import ErrorCategory
from ..pipeline.state import BuildPhase
from ..pipeline.steps import RUNTIME_STAGE, BaseStep, PlanState, StepContext, StepResult


class CopyArtifactStep(BaseStep):
    name = "copy-artifact"
    stage = RUNTIME_STAGE
    category = ErrorCategory.PACKAGING
    depends_on = ("compile",)
    requires_os_tooling = False

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        if state.artifact is None:
            return StepResult(
                issues=[self.issue("ARTIFACT_MISSING", "No build artifact was produced by the builder stage")],
                continue_pipeline=False,
            )
        runtime = context.runtime
        artifact = state.artifact
        return StepResult(
            instructions=[
                Instruction(
                    "COPY",
                    f"--from={artifact.stage} {artifact.path} {runtime.binary_path}",
                    step=self.name,
                )
            ]
        )


class CreateIdentityStep(BaseStep):
    """Dedicated non-root user with a fixed uid/gid and its own home."""

    name = "create-identity"
    stage = RUNTIME_STAGE
    category = ErrorCategory.HARDENING
    depends_on = ("copy-artifact",)

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        user = context.runtime.user
        return StepResult(
            instructions=[
                shell_run(
                    [
                        f"groupadd --gid {user.gid} {user.name}",
                        f"useradd --create-home --uid {user.uid} --gid {user.gid} "
                        f"--shell {user.shell} --home-dir {user.home} {user.name}",
                    ],
                    step=self.name,
                )
            ]
        )


class CreateVolumeLinkStep(BaseStep):
    """Data directory owned by the node user, aliased from the node's default data path."""

    name = "create-volume-link"
    stage = RUNTIME_STAGE
    category = ErrorCategory.HARDENING
    depends_on = ("create-identity",)

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        runtime = context.runtime
        owner = runtime.user.user_spec
        data_dir = runtime.layout.data_dir
        return StepResult(
            instructions=[
                shell_run(
                    [
                        f"mkdir -p {data_dir} {runtime.local_share_dir}",
                        f"chown -R {owner} {data_dir} {runtime.user.home}/.local",
                        f"ln -s {data_dir} {runtime.data_link}",
                    ],
                    step=self.name,
                )
            ]
        )


class RemoveSurfaceStep(BaseStep):
    """Delete system binary directories. Finalizes the image: no shell tooling afterwards."""

    name = "remove-surface"
    stage = RUNTIME_STAGE
    category = ErrorCategory.HARDENING
    depends_on = ("create-volume-link",)
    transition = BuildPhase.FINALIZED

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        paths = " ".join(context.runtime.removed_paths)
        return StepResult(instructions=[shell_run([f"rm -rf {paths}"], step=self.name)])


class SmokeTestStep(BaseStep):
    """Run the installed binary once at build time; a failure fails the image build."""

    name = "smoke-test"
    stage = RUNTIME_STAGE
    category = ErrorCategory.SMOKE_TEST
    depends_on = ("remove-surface",)
    requires_os_tooling = False

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        runtime = context.runtime
        return StepResult(instructions=[exec_run([runtime.binary_path, *runtime.version_args], step=self.name)])


class DeclareContractStep(BaseStep):
    """USER, EXPOSE, VOLUME, ENTRYPOINT and descriptive labels."""

    name = "declare-contract"
    stage = RUNTIME_STAGE
    category = ErrorCategory.PACKAGING
    depends_on = ("smoke-test",)
    requires_os_tooling = False
    transition = BuildPhase.DECLARED

    def run(self, state: PlanState, context: StepContext) -> StepResult:
        runtime = context.runtime
        ports = " ".join(str(port) for port in runtime.ports.as_tuple())
        return StepResult(
            instructions=[
                labels(runtime.metadata.labels(), step=self.name),
                Instruction("USER", runtime.user.user_spec, step=self.name),
                Instruction("EXPOSE", ports, step=self.name),
                exec_form("VOLUME", runtime.volumes, step=self.name),
                exec_form("ENTRYPOINT", runtime.entrypoint, step=self.name),
            ]
        )


def runtime_steps() -> List[BaseStep]:
    return [
        CopyArtifactStep(),
        CreateIdentityStep(),
        CreateVolumeLinkStep(),
        RemoveSurfaceStep(),
        SmokeTestStep(),
        DeclareContractStep(),
    ]
