"""Build phase state machine.

Planning walks the step graph through these phases::

    PLANNING -> BUILDER -> RUNTIME -> FINALIZED -> DECLARED

``FINALIZED`` is entered once the OS tooling has been removed from the runtime
image. It is irreversible: from then on any step that needs a shell or
coreutils is rejected.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ..errors import PhaseError


class BuildPhase(Enum):
    PLANNING = "planning"
    BUILDER = "builder"
    RUNTIME = "runtime"
    FINALIZED = "finalized"
    DECLARED = "declared"


class RunStatus(Enum):
    """Status of one pipeline invocation."""

    PENDING = "pending"
    PLANNING = "planning"
    BUILDING = "building"
    VERIFYING = "verifying"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


_TRANSITIONS: Dict[BuildPhase, FrozenSet[BuildPhase]] = {
    BuildPhase.PLANNING: frozenset({BuildPhase.BUILDER}),
    BuildPhase.BUILDER: frozenset({BuildPhase.RUNTIME}),
    BuildPhase.RUNTIME: frozenset({BuildPhase.FINALIZED}),
    BuildPhase.FINALIZED: frozenset({BuildPhase.DECLARED}),
    BuildPhase.DECLARED: frozenset(),
}

_STAGE_PHASES = {
    "builder": frozenset({BuildPhase.BUILDER}),
    "runtime": frozenset({BuildPhase.RUNTIME, BuildPhase.FINALIZED, BuildPhase.DECLARED}),
}

_TOOLING_REMOVED = frozenset({BuildPhase.FINALIZED, BuildPhase.DECLARED})


class PhaseTracker:
    """Tracks the current phase and admits steps into it."""

    def __init__(self) -> None:
        self.phase = BuildPhase.PLANNING
        self.history: List[BuildPhase] = [BuildPhase.PLANNING]

    @property
    def tooling_available(self) -> bool:
        return self.phase not in _TOOLING_REMOVED

    def advance(self, target: BuildPhase) -> None:
        if target is self.phase:
            return
        if target not in _TRANSITIONS[self.phase]:
            raise PhaseError(f"Illegal phase transition {self.phase.value} -> {target.value}")
        self.phase = target
        self.history.append(target)

    def admit(self, step) -> None:
        """Move into the step's stage if needed, then check the step is allowed to run."""
        if step.stage == "builder" and self.phase is BuildPhase.PLANNING:
            self.advance(BuildPhase.BUILDER)
        elif step.stage == "runtime" and self.phase is BuildPhase.BUILDER:
            self.advance(BuildPhase.RUNTIME)

        allowed = _STAGE_PHASES.get(step.stage)
        if allowed is None:
            raise PhaseError(f"Step {step.name} belongs to unknown stage {step.stage!r}")
        if self.phase not in allowed:
            raise PhaseError(
                f"Step {step.name} ({step.stage} stage) cannot run in phase {self.phase.value}"
            )
        if step.requires_os_tooling and not self.tooling_available:
            raise PhaseError(
                f"Step {step.name} requires OS tooling, which was removed when the image was finalized"
            )

    def complete(self, step) -> None:
        transition: Optional[BuildPhase] = getattr(step, "transition", None)
        if transition is not None:
            self.advance(transition)
