"""Pipeline configuration and loader for YAML/JSON config files."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .common.models import BuildInputs, RuntimeImageSpec, ToolchainSpec
from .errors import ConfigurationError

DEFAULT_BUILD_DEPENDENCIES: Tuple[str, ...] = (
    "cmake",
    "pkg-config",
    "libssl-dev",
    "git",
    "clang",
    "libclang-dev",
)


def _inputs_from_env() -> BuildInputs:
    return BuildInputs(**_env_inputs({}))


def _env_inputs(values: Dict[str, Any]) -> Dict[str, Any]:
    """Fill build inputs the config leaves unset from GIT_COMMIT and BUILD_ARGS."""
    values = dict(values)
    if values.get("git_commit") is None and os.environ.get("GIT_COMMIT"):
        values["git_commit"] = os.environ["GIT_COMMIT"]
    if values.get("build_args") is None and "BUILD_ARGS" in os.environ:
        values["build_args"] = os.environ["BUILD_ARGS"]
    return values


class PipelineConfig(BaseModel):
    """Configuration settings for a node image build."""

    model_config = ConfigDict(frozen=True)

    # Image naming
    image_name: str = Field(default_factory=lambda: os.environ.get("NODEIMAGE_IMAGE", "selendra/selendra"))
    image_tag: str = Field(default_factory=lambda: os.environ.get("NODEIMAGE_TAG", "latest"))
    registry: Optional[str] = Field(default_factory=lambda: os.environ.get("REGISTRY_URL") or None)

    # Builder stage
    builder_image: str = Field(
        default="docker.io/library/rust:1.56.1-bullseye",
        description="Base image for the builder stage; must carry rustup.",
    )
    workdir: str = Field(default="/selendra", description="Source checkout location inside the builder stage.")
    toolchain: ToolchainSpec = Field(default_factory=ToolchainSpec)
    build_dependencies: Tuple[str, ...] = DEFAULT_BUILD_DEPENDENCIES
    commit_env_var: str = Field(
        default="SUBSTRATE_CLI_GIT_COMMIT_HASH",
        description="Environment variable the node's build script reads the commit hash from.",
    )

    # Runtime stage
    runtime: RuntimeImageSpec = Field(default_factory=RuntimeImageSpec)

    # Build invocation
    inputs: BuildInputs = Field(default_factory=_inputs_from_env)
    platform: str = "linux/amd64"
    use_cache: bool = Field(default=False, description="Allow BuildKit layer cache reuse across runs.")
    push: bool = False
    verify_registry: bool = True
    max_workers: int = Field(default=1, ge=1, description="Workers used to plan independent steps.")
    work_root: str = Field(default_factory=lambda: os.environ.get("NODEIMAGE_WORK_ROOT", "./tmp"))

    # Timeout settings (seconds)
    build_timeout: int = 7200
    push_timeout: int = 600
    smoke_test_timeout: int = 60
    inspect_timeout: int = 30

    @field_validator("inputs", mode="before")
    @classmethod
    def _inputs_fall_back_to_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return _env_inputs(value)
        return value

    @field_validator("image_name")
    @classmethod
    def _validate_image_name(cls, value: str) -> str:
        value = value.strip()
        if not value or ":" in value.split("/")[-1]:
            raise ValueError(f"image_name must not be empty or carry a tag: {value!r}")
        return value

    @field_validator("workdir")
    @classmethod
    def _validate_workdir(cls, value: str) -> str:
        if not value.startswith("/") or value == "/":
            raise ValueError(f"workdir must be an absolute, non-root path: {value!r}")
        return value.rstrip("/")

    @field_validator("build_dependencies")
    @classmethod
    def _validate_dependencies(cls, packages: Tuple[str, ...]) -> Tuple[str, ...]:
        cleaned = tuple(package.strip() for package in packages if package.strip())
        if not cleaned:
            raise ValueError("At least one build dependency is required.")
        return cleaned

    def get_full_image_name(self, tag: Optional[str] = None) -> str:
        """
        Full image reference for publication.

        Returns:
            ``{registry}/{image_name}:{tag}`` or ``{image_name}:{tag}`` without a registry.
        """
        name = f"{self.registry.rstrip('/')}/{self.image_name}" if self.registry else self.image_name
        return f"{name}:{tag or self.image_tag}"

    def candidate_image_name(self, run_id: str) -> str:
        """Run-scoped local tag used until the image passes verification."""
        return f"{self.image_name}:candidate-{run_id}"

    def with_inputs(
        self,
        *,
        git_commit: Optional[str] = None,
        build_args: Optional[str] = None,
        source_dir: Optional[Path] = None,
    ) -> "PipelineConfig":
        """Return a copy with the given build inputs overridden."""
        try:
            inputs = BuildInputs(
                source_dir=source_dir if source_dir is not None else self.inputs.source_dir,
                git_commit=git_commit if git_commit is not None else self.inputs.git_commit,
                build_args=build_args if build_args is not None else self.inputs.build_args,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid build inputs: {exc}") from exc
        return self.model_copy(update={"inputs": inputs})

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to a JSON-friendly dictionary."""
        return self.model_dump(mode="json")


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    """Load a pipeline configuration from a YAML or JSON file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Pipeline config file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        elif suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            raise ConfigurationError(f"Unsupported pipeline config format: {suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Pipeline config {path} must contain a mapping at the top level.")

    inputs = data.get("inputs")
    if isinstance(inputs, dict) and inputs.get("source_dir"):
        source_dir = Path(inputs["source_dir"])
        if not source_dir.is_absolute():
            data = {**data, "inputs": {**inputs, "source_dir": (path.parent / source_dir).resolve()}}

    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline config {path}: {exc}") from exc


__all__ = ["DEFAULT_BUILD_DEPENDENCIES", "PipelineConfig", "load_pipeline_config"]
