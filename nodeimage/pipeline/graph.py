"""Directed acyclic graph of build steps with declared dependencies."""
from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Set

from ..errors import GraphError
from .steps import PipelineStep


class StepGraph:
    """
    Holds build steps keyed by name and orders them by their ``depends_on`` edges.

    Ordering is deterministic: among steps whose dependencies are satisfied,
    the one registered first wins. The same graph therefore always renders
    the same Dockerfile.
    """

    def __init__(self, steps: Iterable[PipelineStep] = ()) -> None:
        self._steps: Dict[str, PipelineStep] = {}
        self._positions: Dict[str, int] = {}
        for step in steps:
            self.add(step)

    def add(self, step: PipelineStep) -> None:
        if not step.name:
            raise GraphError(f"Step {step!r} has no name")
        if step.name in self._steps:
            raise GraphError(f"Duplicate step name: {step.name}")
        self._positions[step.name] = len(self._steps)
        self._steps[step.name] = step

    def __contains__(self, name: str) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def get(self, name: str) -> PipelineStep:
        try:
            return self._steps[name]
        except KeyError:
            raise GraphError(f"Unknown step: {name}") from None

    @property
    def steps(self) -> List[PipelineStep]:
        return list(self._steps.values())

    def validate(self) -> None:
        """Raise GraphError on unknown dependencies or cycles."""
        for step in self._steps.values():
            for dependency in step.depends_on:
                if dependency not in self._steps:
                    raise GraphError(f"Step {step.name} depends on unknown step {dependency}")
                if dependency == step.name:
                    raise GraphError(f"Step {step.name} depends on itself")
        self.order()

    def order(self) -> List[PipelineStep]:
        """Topological order with registration order as tie-break."""
        return [step for batch in self.batches() for step in batch]

    def batches(self) -> List[List[PipelineStep]]:
        """
        Group steps into batches of mutually independent steps.

        Every step appears in the first batch after all of its dependencies.
        Steps inside a batch may be planned concurrently.
        """
        remaining = {name: set(step.depends_on) & set(self._steps) for name, step in self._steps.items()}
        dependents: Dict[str, Set[str]] = {name: set() for name in self._steps}
        for name, deps in remaining.items():
            for dependency in deps:
                dependents[dependency].add(name)

        ready = [(self._positions[name], name) for name, deps in remaining.items() if not deps]
        heapq.heapify(ready)
        batches: List[List[PipelineStep]] = []
        placed = 0

        while ready:
            current = [heapq.heappop(ready)[1] for _ in range(len(ready))]
            batches.append([self._steps[name] for name in current])
            placed += len(current)
            for name in current:
                for dependent in dependents[name]:
                    remaining[dependent].discard(name)
                    if not remaining[dependent]:
                        heapq.heappush(ready, (self._positions[dependent], dependent))

        if placed != len(self._steps):
            stuck = sorted(name for name, deps in remaining.items() if deps)
            raise GraphError(f"Dependency cycle detected among steps: {', '.join(stuck)}")
        return batches

    def ancestors(self, name: str) -> Set[str]:
        """All steps ``name`` transitively depends on."""
        seen: Set[str] = set()
        stack = list(self.get(name).depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.get(current).depends_on)
        return seen

