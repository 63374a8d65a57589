"""Map a failed BuildKit build back to the step whose instruction failed.

BuildKit's ``--progress=plain`` output names every vertex before running it::

    #9 [builder 5/7] RUN cargo +nightly-2021-11-11 build --release
    ...
    #9 ERROR: process "/bin/sh -c cargo ..." did not complete successfully: exit code: 101

The failing vertex id is matched to its header, and the header text to the
instruction (and therefore the step) that produced it.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..dockerfile import Dockerfile, Instruction, normalize_instruction_text

_VERTEX_HEADER = re.compile(
    r"^#(?P<vertex>\d+) \[(?P<stage>[^\]\s]+)(?: (?P<index>\d+)/(?P<total>\d+))?\] (?P<text>[A-Z]+ .*)$"
)
_VERTEX_ERROR = re.compile(r"^#(?P<vertex>\d+) ERROR: (?P<message>.*)$")
_EXIT_CODE = re.compile(r"exit code: (?P<code>\d+)")


@dataclass(frozen=True, slots=True)
class FailureAttribution:
    """Which step a build failure belongs to, as far as the log tells."""

    stage: Optional[str]
    step: Optional[str]
    instruction: Optional[str]
    message: str
    exit_code: Optional[int] = None


def attribute_build_failure(output: str, dockerfile: Dockerfile) -> Optional[FailureAttribution]:
    """Return the attribution of the last failing vertex, or None when the log has none."""
    headers: Dict[str, Tuple[str, str]] = {}
    failure: Optional[Tuple[str, str]] = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        header = _VERTEX_HEADER.match(line)
        if header:
            headers[header.group("vertex")] = (header.group("stage"), header.group("text"))
            continue
        error = _VERTEX_ERROR.match(line)
        if error:
            failure = (error.group("vertex"), error.group("message"))

    if failure is None:
        return None

    vertex, message = failure
    exit_match = _EXIT_CODE.search(message)
    exit_code = int(exit_match.group("code")) if exit_match else None

    stage_alias, text = headers.get(vertex, (None, None))
    if stage_alias is None or text is None:
        return FailureAttribution(stage=None, step=None, instruction=None, message=message, exit_code=exit_code)

    instruction = _match_instruction(dockerfile, stage_alias, text)
    return FailureAttribution(
        stage=stage_alias,
        step=instruction.step if instruction else None,
        instruction=text,
        message=message,
        exit_code=exit_code,
    )


def _match_instruction(dockerfile: Dockerfile, stage_alias: str, text: str) -> Optional[Instruction]:
    stage = dockerfile.stage(stage_alias)
    if stage is None:
        return None
    wanted = normalize_instruction_text(text)
    shortened = wanted.rstrip(".")
    for instruction in stage.instructions:
        for fingerprint in _fingerprints(instruction):
            # BuildKit may shorten long commands in the vertex name
            if fingerprint == wanted or (shortened and fingerprint.startswith(shortened)):
                return instruction
    return None


def _fingerprints(instruction: Instruction) -> List[str]:
    fingerprints = [instruction.fingerprint()]
    if instruction.arguments.startswith("["):
        try:
            argv = json.loads(instruction.arguments)
        except ValueError:
            return fingerprints
        fingerprints.append(normalize_instruction_text(f"{instruction.keyword} {' '.join(argv)}"))
    return fingerprints
