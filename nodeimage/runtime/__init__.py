"""Docker-facing helpers: building, failure attribution, verification and publishing."""

from .attribution import FailureAttribution, attribute_build_failure
from .docker import DockerBuildResult, DockerImageBuilder
from .issues import IssueSeverity, PipelineIssue, first_error, has_errors
from .verify import ImageVerifier, VerificationResult, check_rootfs

__all__ = [
    "DockerBuildResult",
    "DockerImageBuilder",
    "FailureAttribution",
    "ImageVerifier",
    "IssueSeverity",
    "PipelineIssue",
    "VerificationResult",
    "attribute_build_failure",
    "check_rootfs",
    "first_error",
    "has_errors",
]
