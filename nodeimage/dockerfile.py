"""Minimal Dockerfile model: stages of instructions, each tagged with the step that emitted it."""
from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class Instruction:
    """A single Dockerfile instruction."""

    keyword: str
    arguments: str
    step: Optional[str] = None

    def render(self) -> str:
        return f"{self.keyword} {self.arguments}"

    def fingerprint(self) -> str:
        """Whitespace-insensitive form used to match BuildKit progress lines."""
        return normalize_instruction_text(self.render())


def normalize_instruction_text(text: str) -> str:
    return _WHITESPACE.sub("", text.replace("\\\n", " "))


def shell_run(commands: Sequence[str], *, step: Optional[str] = None) -> Instruction:
    """RUN in shell form, chaining commands so any failure fails the layer."""
    return Instruction("RUN", " && \\\n    ".join(commands), step=step)


def exec_run(argv: Sequence[str], *, step: Optional[str] = None) -> Instruction:
    """RUN in exec form; needs no shell inside the image."""
    return Instruction("RUN", json.dumps(list(argv)), step=step)


def exec_form(keyword: str, argv: Sequence[str], *, step: Optional[str] = None) -> Instruction:
    return Instruction(keyword, json.dumps(list(argv)), step=step)


def labels(values: Mapping[str, str], *, step: Optional[str] = None) -> Instruction:
    pairs = [f"{key}={json.dumps(value)}" for key, value in values.items()]
    return Instruction("LABEL", " \\\n      ".join(pairs), step=step)


@dataclass
class DockerfileStage:
    """A ``FROM ... AS alias`` block."""

    alias: str
    base_image: str
    instructions: List[Instruction] = field(default_factory=list)

    def extend(self, instructions: Iterable[Instruction]) -> None:
        self.instructions.extend(instructions)

    def render(self) -> str:
        lines = [f"FROM {self.base_image} AS {self.alias}"]
        lines.extend(instruction.render() for instruction in self.instructions)
        return "\n\n".join(lines)


@dataclass
class Dockerfile:
    """Ordered multi-stage Dockerfile."""

    stages: List[DockerfileStage] = field(default_factory=list)
    header: Optional[str] = None

    def stage(self, alias: str) -> Optional[DockerfileStage]:
        return next((stage for stage in self.stages if stage.alias == alias), None)

    def add_stage(self, alias: str, base_image: str) -> DockerfileStage:
        if self.stage(alias) is not None:
            raise ValueError(f"Duplicate Dockerfile stage: {alias}")
        stage = DockerfileStage(alias=alias, base_image=base_image)
        self.stages.append(stage)
        return stage

    def instructions_by_step(self) -> Dict[str, List[Instruction]]:
        grouped: Dict[str, List[Instruction]] = {}
        for stage in self.stages:
            for instruction in stage.instructions:
                if instruction.step:
                    grouped.setdefault(instruction.step, []).append(instruction)
        return grouped

    def render(self) -> str:
        blocks = []
        if self.header:
            blocks.append("\n".join(f"# {line}" if line else "#" for line in self.header.splitlines()))
        blocks.extend(stage.render() for stage in self.stages)
        return "\n\n".join(blocks) + "\n"

    @property
    def digest(self) -> str:
        """sha256 of the rendered file; identical configuration yields an identical digest."""
        return hashlib.sha256(self.render().encode("utf-8")).hexdigest()
