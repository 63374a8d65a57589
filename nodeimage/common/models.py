"""Pipeline data model: toolchain pinning, build inputs and the runtime image contract."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WASM_TARGET = "wasm32-unknown-unknown"

# Exact stable release (1.56.1) or a dated nightly/beta (nightly-2021-11-11)
_PINNED_CHANNEL = re.compile(r"^(\d+\.\d+\.\d+|(nightly|beta)-\d{4}-\d{2}-\d{2})$")
_PLAIN_TOKEN = re.compile(r"^[A-Za-z0-9._-]+$")
_PROFILE = re.compile(r"^[a-z][a-z0-9_-]*$")

# System binary directories that must never reach the runtime image
REQUIRED_REMOVED_PATHS: Tuple[str, ...] = ("/usr/bin", "/usr/sbin")


class ToolchainSpec(BaseModel):
    """Pinned compiler toolchain handed explicitly to the builder steps."""

    model_config = ConfigDict(frozen=True)

    channel: str = Field(
        default="nightly-2021-11-11",
        description="Exact rustup toolchain identifier; floating channels are rejected.",
    )
    targets: Tuple[str, ...] = Field(
        default=(WASM_TARGET,),
        description="Additional compilation targets registered before compiling.",
    )
    profile: str = Field(default="release", description="Cargo profile used for the node binary.")

    @field_validator("channel")
    @classmethod
    def _require_pinned_channel(cls, value: str) -> str:
        value = value.strip()
        if not _PINNED_CHANNEL.match(value):
            raise ValueError(
                f"Toolchain channel '{value}' is not pinned; use an exact version "
                "such as '1.56.1' or a dated channel such as 'nightly-2021-11-11'."
            )
        return value

    @field_validator("targets")
    @classmethod
    def _normalize_targets(cls, targets: Tuple[str, ...]) -> Tuple[str, ...]:
        cleaned = sorted({target.strip() for target in targets if target.strip()})
        if not cleaned:
            raise ValueError("At least one compilation target must be registered.")
        return tuple(cleaned)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: str) -> str:
        if not _PROFILE.match(value):
            raise ValueError(f"Invalid cargo profile name: {value!r}")
        return value

    @property
    def cargo_profile_flag(self) -> str:
        return "--release" if self.profile == "release" else f"--profile {self.profile}"


class BuildInputs(BaseModel):
    """Caller-supplied inputs for a single build invocation."""

    model_config = ConfigDict(frozen=True)

    source_dir: Path = Field(default=Path("."), description="Node source tree used as the build context.")
    build_args: str = Field(default="", description="Opaque flags forwarded verbatim to cargo.")
    git_commit: Optional[str] = Field(default=None, description="Commit embedded into the binary's version string.")

    @field_validator("git_commit", mode="before")
    @classmethod
    def _validate_commit(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        if not value:
            return None
        if not _PLAIN_TOKEN.match(value):
            raise ValueError(f"GIT_COMMIT must be a plain token, got {value!r}")
        return value

    @field_validator("build_args", mode="before")
    @classmethod
    def _coerce_build_args(cls, value: Any) -> str:
        return "" if value is None else str(value)

    def build_arg_values(self) -> Dict[str, str]:
        """Values passed as ``--build-arg`` to the image build."""
        return {"GIT_COMMIT": self.git_commit or "", "BUILD_ARGS": self.build_args}


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    """The compiled node executable, as located inside the builder stage."""

    stage: str
    path: PurePosixPath

    @property
    def binary_name(self) -> str:
        return self.path.name


class ExecutionUser(BaseModel):
    """Non-privileged identity the node process runs as."""

    model_config = ConfigDict(frozen=True)

    name: str = "selendra"
    uid: int = Field(default=1000, gt=0, description="Numeric user id; root (0) is rejected.")
    gid: int = Field(default=1000, gt=0, description="Numeric group id; root (0) is rejected.")
    shell: str = "/bin/sh"
    home: str = "/selendra"

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if value == "root" or not _PLAIN_TOKEN.match(value):
            raise ValueError(f"Invalid execution user name: {value!r}")
        return value

    @field_validator("home", "shell")
    @classmethod
    def _require_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Path must be absolute: {value!r}")
        return value.rstrip("/") or "/"

    @property
    def user_spec(self) -> str:
        return f"{self.uid}:{self.gid}"


class FilesystemLayout(BaseModel):
    """Where the binary lives and where persisted state is written."""

    model_config = ConfigDict(frozen=True)

    binary_dir: str = "/usr/local/bin"
    data_dir: str = "/data"

    @field_validator("binary_dir", "data_dir")
    @classmethod
    def _require_absolute(cls, value: str) -> str:
        if not value.startswith("/") or value == "/":
            raise ValueError(f"Layout path must be an absolute, non-root directory: {value!r}")
        return value.rstrip("/")


class PortSet(BaseModel):
    """The fixed set of ports the node exposes."""

    model_config = ConfigDict(frozen=True)

    p2p: int = Field(default=30333, ge=1, le=65535)
    http_rpc: int = Field(default=9933, ge=1, le=65535)
    ws_rpc: int = Field(default=9944, ge=1, le=65535)
    prometheus: int = Field(default=9615, ge=1, le=65535)

    @model_validator(mode="after")
    def _ensure_distinct(self) -> "PortSet":
        ports = [self.p2p, self.http_rpc, self.ws_rpc, self.prometheus]
        if len(set(ports)) != len(ports):
            raise ValueError(f"Exposed ports must be distinct, got {ports}")
        return self

    def as_tuple(self) -> Tuple[int, ...]:
        return (self.p2p, self.http_rpc, self.ws_rpc, self.prometheus)

    def as_set(self) -> FrozenSet[int]:
        return frozenset(self.as_tuple())

    def docker_keys(self) -> FrozenSet[str]:
        """Port keys as reported by ``docker image inspect`` (``30333/tcp``)."""
        return frozenset(f"{port}/tcp" for port in self.as_tuple())


class ImageMetadata(BaseModel):
    """Descriptive labels; informational only."""

    model_config = ConfigDict(frozen=True)

    description: str = "Selendra node: compiled from source and packaged into a minimal runtime image."
    authors: str = "Selendra developers"
    source: str = "https://github.com/selendra/selendra"
    documentation: str = "https://github.com/selendra/selendra"
    vendor: Optional[str] = None

    def labels(self) -> Dict[str, str]:
        labels = {
            "description": self.description,
            "org.opencontainers.image.description": self.description,
            "org.opencontainers.image.authors": self.authors,
            "org.opencontainers.image.source": self.source,
            "org.opencontainers.image.documentation": self.documentation,
        }
        if self.vendor:
            labels["org.opencontainers.image.vendor"] = self.vendor
        return labels


class RuntimeImageSpec(BaseModel):
    """Everything the final image promises to its consumers."""

    model_config = ConfigDict(frozen=True)

    base_image: str = "docker.io/library/ubuntu:20.04"
    binary_name: str = "selendra"
    user: ExecutionUser = Field(default_factory=ExecutionUser)
    layout: FilesystemLayout = Field(default_factory=FilesystemLayout)
    ports: PortSet = Field(default_factory=PortSet)
    volumes: Tuple[str, ...] = Field(default=(), description="Declared volumes; defaults to the data directory.")
    removed_paths: Tuple[str, ...] = REQUIRED_REMOVED_PATHS
    version_args: Tuple[str, ...] = ("--version",)
    metadata: ImageMetadata = Field(default_factory=ImageMetadata)

    @model_validator(mode="before")
    @classmethod
    def _default_volumes(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("volumes"):
            layout = data.get("layout")
            if isinstance(layout, FilesystemLayout):
                data_dir = layout.data_dir
            elif isinstance(layout, dict) and layout.get("data_dir"):
                data_dir = str(layout["data_dir"]).rstrip("/")
            else:
                data_dir = FilesystemLayout().data_dir
            data = {**data, "volumes": (data_dir,)}
        return data

    @field_validator("binary_name")
    @classmethod
    def _validate_binary_name(cls, value: str) -> str:
        if not _PLAIN_TOKEN.match(value):
            raise ValueError(f"Invalid binary name: {value!r}")
        return value

    @field_validator("base_image")
    @classmethod
    def _require_tagged_base(cls, value: str) -> str:
        reference = value.split("/")[-1]
        if "@sha256:" not in value and (":" not in reference or reference.endswith(":latest")):
            raise ValueError(f"Base image must be pinned to a tag or digest: {value!r}")
        return value

    @field_validator("removed_paths")
    @classmethod
    def _validate_removed_paths(cls, paths: Tuple[str, ...]) -> Tuple[str, ...]:
        for path in paths:
            if not path.startswith("/") or path.rstrip("/") in ("", "/usr", "/lib", "/bin"):
                raise ValueError(f"Refusing to remove {path!r} from the runtime image")
        cleaned = tuple(path.rstrip("/") for path in paths)
        missing = [path for path in REQUIRED_REMOVED_PATHS if path not in cleaned]
        if missing:
            raise ValueError(f"removed_paths must include {', '.join(missing)}")
        return cleaned

    @field_validator("version_args")
    @classmethod
    def _require_version_args(cls, args: Tuple[str, ...]) -> Tuple[str, ...]:
        if not args:
            raise ValueError("The smoke test needs at least one argument (e.g. '--version').")
        return args

    @model_validator(mode="after")
    def _check_layout(self) -> "RuntimeImageSpec":
        if self.layout.data_dir not in self.volumes:
            raise ValueError(
                f"Data directory {self.layout.data_dir} must be one of the declared volumes {list(self.volumes)}"
            )
        if self.layout.data_dir == self.user.home:
            raise ValueError("Home directory must be distinct from the data volume")
        for removed in self.removed_paths:
            if self.binary_path == removed or self.binary_path.startswith(removed + "/"):
                raise ValueError(f"Binary path {self.binary_path} would be removed with {removed}")
        return self

    @property
    def binary_path(self) -> str:
        return f"{self.layout.binary_dir}/{self.binary_name}"

    @property
    def local_share_dir(self) -> str:
        return f"{self.user.home}/.local/share"

    @property
    def data_link(self) -> str:
        """Default data directory the node expects; a symlink to the data volume."""
        return f"{self.local_share_dir}/{self.binary_name}"

    @property
    def entrypoint(self) -> Tuple[str, ...]:
        return (self.binary_path,)


@dataclass
class ImageBuildMetrics:
    """Metrics collected for a built image."""

    image_name: str
    build_time: float  # seconds
    image_size_mb: float  # megabytes
    layers_count: int
