"""Shared fixtures: a scripted command runner and exported-rootfs builders."""

from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from nodeimage.common.command_runner import CommandResult
from nodeimage.common.models import BuildInputs, RuntimeImageSpec
from nodeimage.config import PipelineConfig

Response = Union[CommandResult, Callable[[Sequence[str]], CommandResult]]


def make_result(
    command: Sequence[str],
    *,
    return_code: Optional[int] = 0,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
    tool_available: bool = True,
) -> CommandResult:
    """Helper to create deterministic command results for tests."""
    return CommandResult(
        command=list(command),
        return_code=return_code,
        stdout=stdout,
        stderr=stderr,
        duration=0.5,
        timed_out=timed_out,
        tool_available=tool_available,
    )


class FakeCommandRunner:
    """CommandRunner stand-in that records calls and answers by command prefix."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self._handlers: List[Tuple[Tuple[str, ...], Response]] = []

    def on(self, prefix: Sequence[str], response: Response) -> None:
        self._handlers.append((tuple(prefix), response))

    def run(self, command, *, cwd=None, timeout=None, env=None) -> CommandResult:
        self.calls.append(list(command))
        # Later registrations win
        for prefix, response in reversed(self._handlers):
            if tuple(command[: len(prefix)]) == prefix:
                return response(command) if callable(response) else response
        return make_result(command)

    def commands(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]


def write_rootfs(
    path: Path,
    spec: RuntimeImageSpec,
    *,
    keep_paths: Sequence[str] = (),
    link_target: Optional[str] = None,
    data_owner: Optional[Tuple[int, int]] = None,
    binary_mode: int = 0o755,
    include_binary: bool = True,
) -> Path:
    """Write a tarball shaped like ``docker export`` output for the given spec."""
    entries: Dict[str, tarfile.TarInfo] = {}

    def add_dir(name: str, uid: int = 0, gid: int = 0) -> None:
        parts = name.strip("/").split("/")
        for depth in range(1, len(parts) + 1):
            current = "/".join(parts[:depth])
            if current not in entries:
                info = tarfile.TarInfo(current)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                entries[current] = info
        entries[name.strip("/")].uid = uid
        entries[name.strip("/")].gid = gid

    for directory in ("etc", "lib", "usr/local/bin"):
        add_dir(directory)
    for kept in keep_paths:
        add_dir(kept)
        tool = tarfile.TarInfo(f"{kept.strip('/')}/ls")
        tool.mode = 0o755
        entries[tool.name] = tool

    owner = data_owner or (spec.user.uid, spec.user.gid)
    add_dir(spec.layout.data_dir, *owner)
    add_dir(spec.user.home, spec.user.uid, spec.user.gid)
    add_dir(spec.local_share_dir)

    link = tarfile.TarInfo(spec.data_link.strip("/"))
    link.type = tarfile.SYMTYPE
    link.linkname = link_target if link_target is not None else spec.layout.data_dir
    entries[link.name] = link

    payload = b"\x7fELF fake node binary"
    binary = tarfile.TarInfo(spec.binary_path.strip("/"))
    binary.size = len(payload)
    binary.mode = binary_mode

    with tarfile.open(path, "w") as tar:
        for info in entries.values():
            tar.addfile(info)
        if include_binary:
            tar.addfile(binary, io.BytesIO(payload))
    return path


def image_document(
    spec: RuntimeImageSpec,
    *,
    user: Optional[str] = None,
    ports: Optional[Sequence[str]] = None,
    volumes: Optional[Sequence[str]] = None,
    entrypoint: Optional[Sequence[str]] = None,
    labels: Optional[Dict[str, str]] = None,
) -> str:
    """``docker image inspect`` JSON for an image built from ``spec``."""
    config = {
        "User": spec.user.user_spec if user is None else user,
        "ExposedPorts": {key: {} for key in (spec.ports.docker_keys() if ports is None else ports)},
        "Volumes": {key: {} for key in (spec.volumes if volumes is None else volumes)},
        "Entrypoint": list(spec.entrypoint if entrypoint is None else entrypoint),
        "Labels": spec.metadata.labels() if labels is None else labels,
    }
    return json.dumps([{"Config": config, "Size": 157286400, "RootFS": {"Layers": ["a", "b", "c", "d"]}}])


def install_healthy_image(runner: FakeCommandRunner, spec: RuntimeImageSpec, *, version: str) -> None:
    """Script the docker calls made while verifying a correct image."""
    runner.on(["docker", "image", "inspect"], make_result([], stdout=image_document(spec)))
    runner.on(["docker", "run"], make_result([], stdout=f"{spec.binary_name} {version}\n"))
    runner.on(["docker", "create"], make_result([], stdout="c0ffee\n"))

    def export(command: Sequence[str]) -> CommandResult:
        write_rootfs(Path(command[3]), spec)
        return make_result(command)

    runner.on(["docker", "export"], export)


@pytest.fixture
def runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def config(tmp_path: Path) -> PipelineConfig:
    source = tmp_path / "source"
    source.mkdir()
    return PipelineConfig(
        image_name="selendra/selendra",
        image_tag="latest",
        registry=None,
        work_root=str(tmp_path / "work"),
        inputs=BuildInputs(source_dir=source, git_commit="abc123", build_args=""),
    )
