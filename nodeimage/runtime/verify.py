"""Post-build verification of the runtime image contract.

Checks run against the built (candidate) image before it is tagged for
publication:

* image config: numeric non-root user, exact port set, volumes, entrypoint, labels
* smoke run: ``<entrypoint> --version`` exits 0 and reports the expected commit
* filesystem: read from a ``docker export`` of a created, never started container
"""
from __future__ import annotations

import logging
import stat
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..common.command_runner import CommandRunner
from ..common.models import RuntimeImageSpec
from ..errors import ErrorCategory
from .docker import DockerImageBuilder
from .issues import PipelineIssue


@dataclass(slots=True)
class VerificationResult:
    """Outcome of all verification checks for one image."""

    image_name: str
    issues: List[PipelineIssue] = field(default_factory=list)
    checks: Dict[str, bool] = field(default_factory=dict)
    version_output: Optional[str] = None

    @property
    def success(self) -> bool:
        return not any(issue.is_error() for issue in self.issues)

    def record(self, check: str, passed: bool, issue: Optional[PipelineIssue] = None) -> None:
        self.checks[check] = passed
        if not passed and issue is not None:
            self.issues.append(issue)


def parse_user(user: str) -> tuple[Optional[int], Optional[int]]:
    """Split a ``USER`` value into numeric uid/gid; names resolve to None."""
    if not user:
        return 0, 0
    uid_part, _, gid_part = user.partition(":")
    uid = int(uid_part) if uid_part.isdigit() else (0 if uid_part == "root" else None)
    gid = int(gid_part) if gid_part.isdigit() else (0 if gid_part == "root" else None)
    return uid, gid


class ImageVerifier:
    """Check a built image against its RuntimeImageSpec."""

    def __init__(
        self,
        command_runner: CommandRunner,
        *,
        work_dir: Path,
        logger: Optional[logging.Logger] = None,
        smoke_test_timeout: float = 60,
        inspect_timeout: float = 30,
    ) -> None:
        self.command_runner = command_runner
        self.work_dir = work_dir
        self.logger = logger or logging.getLogger(__name__)
        self.smoke_test_timeout = smoke_test_timeout
        self.inspect_timeout = inspect_timeout
        self.docker = DockerImageBuilder(command_runner, logger=self.logger)

    def verify(
        self,
        image_name: str,
        spec: RuntimeImageSpec,
        *,
        expected_commit: Optional[str] = None,
    ) -> VerificationResult:
        result = VerificationResult(image_name=image_name)

        document = self.docker.inspect(image_name, timeout=self.inspect_timeout)
        if document is None:
            result.record(
                "image_present",
                False,
                PipelineIssue(
                    code="IMAGE_NOT_FOUND",
                    message=f"Image {image_name} could not be inspected",
                    category=ErrorCategory.PACKAGING,
                ),
            )
            return result
        result.record("image_present", True)

        self._check_config(document.get("Config") or {}, spec, result)
        self._check_version(image_name, spec, expected_commit, result)
        self._check_filesystem(image_name, spec, result)

        if result.success:
            self.logger.info("Image %s passed %d checks", image_name, len(result.checks))
        else:
            failed = sorted(name for name, passed in result.checks.items() if not passed)
            self.logger.error("Image %s failed checks: %s", image_name, ", ".join(failed))
        return result

    def _check_config(self, config: Dict[str, Any], spec: RuntimeImageSpec, result: VerificationResult) -> None:
        uid, gid = parse_user(config.get("User") or "")
        result.record(
            "non_root_user",
            uid is not None and uid != 0,
            PipelineIssue(
                code="USER_IS_ROOT",
                message=f"Image user {config.get('User')!r} does not resolve to a non-root numeric uid",
                category=ErrorCategory.HARDENING,
            ),
        )
        result.record(
            "user_matches",
            (uid, gid) == (spec.user.uid, spec.user.gid),
            PipelineIssue(
                code="USER_MISMATCH",
                message=f"Image user {config.get('User')!r} differs from {spec.user.user_spec}",
                category=ErrorCategory.HARDENING,
            ),
        )

        exposed = set((config.get("ExposedPorts") or {}).keys())
        expected_ports = set(spec.ports.docker_keys())
        result.record(
            "exposed_ports",
            exposed == expected_ports,
            PipelineIssue(
                code="PORTS_MISMATCH",
                message=(
                    f"Exposed ports {sorted(exposed)} differ from {sorted(expected_ports)}: "
                    f"missing {sorted(expected_ports - exposed)}, extra {sorted(exposed - expected_ports)}"
                ),
                category=ErrorCategory.PACKAGING,
            ),
        )

        volumes = set((config.get("Volumes") or {}).keys())
        result.record(
            "volumes",
            volumes == set(spec.volumes),
            PipelineIssue(
                code="VOLUMES_MISMATCH",
                message=f"Declared volumes {sorted(volumes)} differ from {sorted(spec.volumes)}",
                category=ErrorCategory.PACKAGING,
            ),
        )

        entrypoint = list(config.get("Entrypoint") or [])
        result.record(
            "entrypoint",
            entrypoint == list(spec.entrypoint),
            PipelineIssue(
                code="ENTRYPOINT_MISMATCH",
                message=f"Entrypoint {entrypoint} differs from {list(spec.entrypoint)}",
                category=ErrorCategory.PACKAGING,
            ),
        )

        image_labels = config.get("Labels") or {}
        missing = sorted(key for key, value in spec.metadata.labels().items() if image_labels.get(key) != value)
        result.record(
            "labels",
            not missing,
            PipelineIssue(
                code="LABELS_MISMATCH",
                message=f"Labels missing or different: {', '.join(missing)}",
                severity="warning",
                category=ErrorCategory.VERIFICATION,
            ),
        )

    def _check_version(
        self,
        image_name: str,
        spec: RuntimeImageSpec,
        expected_commit: Optional[str],
        result: VerificationResult,
    ) -> None:
        command = ["docker", "run", "--rm", "--network", "none", image_name, *spec.version_args]
        run = self.command_runner.run(command, timeout=self.smoke_test_timeout)
        result.version_output = run.stdout.strip() or None

        passed = run.succeeded()
        result.record(
            "smoke_test",
            passed,
            PipelineIssue(
                code="SMOKE_TEST_FAILED",
                message=f"'{' '.join(spec.version_args)}' failed in {image_name}: {run.failure_message()}",
                category=ErrorCategory.SMOKE_TEST,
            ),
        )
        if not passed or not expected_commit:
            return

        result.record(
            "version_reports_commit",
            expected_commit in run.output,
            PipelineIssue(
                code="VERSION_COMMIT_MISMATCH",
                message=f"Version output {run.stdout.strip()!r} does not contain commit {expected_commit}",
                category=ErrorCategory.COMPILATION,
            ),
        )

    def _check_filesystem(self, image_name: str, spec: RuntimeImageSpec, result: VerificationResult) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        export_path = self.work_dir / "rootfs.tar"

        created = self.command_runner.run(["docker", "create", image_name], timeout=self.inspect_timeout)
        if not created.succeeded():
            result.record(
                "filesystem_exported",
                False,
                PipelineIssue(
                    code="CONTAINER_CREATE_FAILED",
                    message=f"Could not create a container from {image_name}: {created.failure_message()}",
                    category=ErrorCategory.VERIFICATION,
                ),
            )
            return

        container_id = created.stdout.strip().splitlines()[-1]
        try:
            exported = self.command_runner.run(
                ["docker", "export", "--output", str(export_path), container_id],
                timeout=max(self.inspect_timeout, 300),
            )
            if not exported.succeeded() or not export_path.exists():
                result.record(
                    "filesystem_exported",
                    False,
                    PipelineIssue(
                        code="CONTAINER_EXPORT_FAILED",
                        message=f"Could not export the filesystem of {image_name}: {exported.failure_message()}",
                        category=ErrorCategory.VERIFICATION,
                    ),
                )
                return
            result.record("filesystem_exported", True)
            check_rootfs(export_path, spec, result)
        finally:
            self.command_runner.run(["docker", "rm", "--force", "--volumes", container_id], timeout=60)
            export_path.unlink(missing_ok=True)


def check_rootfs(archive: Path, spec: RuntimeImageSpec, result: VerificationResult) -> None:
    """Filesystem checks against an exported root filesystem tarball."""
    with tarfile.open(archive) as tar:
        members = {_member_path(member.name): member for member in tar.getmembers()}

    def lookup(path: str) -> Optional[tarfile.TarInfo]:
        return members.get(path.lstrip("/"))

    for removed in spec.removed_paths:
        prefix = removed.lstrip("/")
        present = prefix in members or any(name.startswith(prefix + "/") for name in members)
        result.record(
            f"removed:{removed}",
            not present,
            PipelineIssue(
                code="SURFACE_NOT_REMOVED",
                message=f"{removed} is still present in the image",
                category=ErrorCategory.HARDENING,
            ),
        )

    binary = lookup(spec.binary_path)
    executable = binary is not None and binary.isfile() and bool(binary.mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
    result.record(
        "binary_executable",
        executable,
        PipelineIssue(
            code="BINARY_NOT_EXECUTABLE",
            message=f"{spec.binary_path} is missing or not executable",
            category=ErrorCategory.PACKAGING,
        ),
    )

    link = lookup(spec.data_link)
    link_target = link.linkname.rstrip("/") if link is not None and link.issym() else None
    result.record(
        "data_link",
        link_target == spec.layout.data_dir,
        PipelineIssue(
            code="DATA_LINK_INVALID",
            message=f"{spec.data_link} should be a symlink to {spec.layout.data_dir}, found {link_target!r}",
            category=ErrorCategory.HARDENING,
        ),
    )

    data_dir = lookup(spec.layout.data_dir)
    owned = data_dir is not None and data_dir.isdir() and (data_dir.uid, data_dir.gid) == (spec.user.uid, spec.user.gid)
    result.record(
        "data_dir_owner",
        owned,
        PipelineIssue(
            code="DATA_DIR_OWNERSHIP",
            message=(
                f"{spec.layout.data_dir} must be a directory owned by {spec.user.user_spec}, "
                f"found {(data_dir.uid, data_dir.gid) if data_dir is not None else None}"
            ),
            category=ErrorCategory.HARDENING,
        ),
    )

    home = lookup(spec.user.home)
    result.record(
        "home_directory",
        home is not None and home.isdir(),
        PipelineIssue(
            code="HOME_MISSING",
            message=f"Home directory {spec.user.home} is missing",
            category=ErrorCategory.HARDENING,
        ),
    )


def _member_path(name: str) -> str:
    if name.startswith("./"):
        name = name[2:]
    return name.strip("/")
