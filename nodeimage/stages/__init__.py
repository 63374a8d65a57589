"""Concrete build steps for the builder and runtime stages."""

from ..pipeline.graph import StepGraph
from .builder import (
    CompileStep,
    InjectCommitStep,
    InstallBuildDependenciesStep,
    InstallToolchainStep,
    RegisterTargetsStep,
    builder_steps,
)
from .runtime import (
    CopyArtifactStep,
    CreateIdentityStep,
    CreateVolumeLinkStep,
    DeclareContractStep,
    RemoveSurfaceStep,
    SmokeTestStep,
    runtime_steps,
)


def default_graph() -> StepGraph:
    """Step graph for the standard two-stage node image."""
    return StepGraph([*builder_steps(), *runtime_steps()])


__all__ = [
    "CompileStep",
    "CopyArtifactStep",
    "CreateIdentityStep",
    "CreateVolumeLinkStep",
    "DeclareContractStep",
    "InjectCommitStep",
    "InstallBuildDependenciesStep",
    "InstallToolchainStep",
    "RegisterTargetsStep",
    "RemoveSurfaceStep",
    "SmokeTestStep",
    "builder_steps",
    "default_graph",
    "runtime_steps",
]
