"""
Step registry and dependency resolution.

Steps are registered by name; ``resolve_plan()`` validates the graph
and returns a topological order. Ties between steps with no ordering
constraint are broken by registration order, so the same registration
sequence always yields the same plan.

Validation order matches the DAG checks the install engine has always
used: duplicates (at register time), then unknown references, then
cycles (Kahn's algorithm).
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from provisioner.core.errors import (
    CyclicDependencyError,
    DuplicateStepError,
    UnknownDependencyError,
)
from provisioner.core.models.step import Step

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningPlan:
    """Dependency-ordered sequence of steps for one run."""

    steps: list[Step] = field(default_factory=list)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.steps]

    def position(self, name: str) -> int:
        return self.names.index(name)

    def dependents_of(self, name: str) -> set[str]:
        """All steps that transitively depend on ``name``."""
        dependents: set[str] = set()
        frontier = {name}
        while frontier:
            nxt = {
                s.name
                for s in self.steps
                if s.depends_on & frontier and s.name not in dependents
            }
            dependents |= nxt
            frontier = nxt
        return dependents


class StepRegistry:
    """Holds registered steps in registration order."""

    def __init__(self) -> None:
        self._steps: dict[str, Step] = {}
        self._frozen = False

    def register(self, step: Step) -> Step:
        """Register a step.

        Raises:
            DuplicateStepError: If the name is already registered.
            RuntimeError: If a plan run currently owns the registry.
        """
        if self._frozen:
            raise RuntimeError("Registry is locked by a running plan")
        if step.name in self._steps:
            raise DuplicateStepError(step.name)
        self._steps[step.name] = step
        logger.debug("Registered step: %r", step)
        return step

    def get(self, name: str) -> Step:
        return self._steps[name]

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def names(self) -> list[str]:
        return list(self._steps)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def unfreeze(self) -> None:
        self._frozen = False

    def resolve_plan(self) -> ProvisioningPlan:
        """Topologically sort the registered steps.

        Raises:
            UnknownDependencyError: A dependency names an unregistered step.
            CyclicDependencyError: The graph has a cycle; names its members.
        """
        steps = list(self._steps.values())
        order = {s.name: i for i, s in enumerate(steps)}

        for step in steps:
            for dep in sorted(step.depends_on, key=lambda d: order.get(d, len(order))):
                if dep not in self._steps:
                    raise UnknownDependencyError(step.name, dep)

        in_degree = {s.name: len(s.depends_on) for s in steps}
        dependents: dict[str, list[str]] = {s.name: [] for s in steps}
        for step in steps:
            for dep in step.depends_on:
                dependents[dep].append(step.name)

        ready = [(order[name], name) for name, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        ordered: list[Step] = []

        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(self._steps[name])
            for successor in dependents[name]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, (order[successor], successor))

        if len(ordered) < len(steps):
            remaining = {name for name, deg in in_degree.items() if deg > 0}
            raise CyclicDependencyError(self._find_cycle(remaining, order))

        logger.debug("Resolved plan: %s", " → ".join(s.name for s in ordered))
        return ProvisioningPlan(steps=ordered)

    def _find_cycle(self, remaining: set[str], order: dict[str, int]) -> list[str]:
        """Walk unresolved dependencies until a node repeats."""
        # Every unresolved step has at least one unresolved dependency.
        current = min(remaining, key=order.__getitem__)
        path: list[str] = []
        seen: dict[str, int] = {}
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            candidates = [d for d in self._steps[current].depends_on if d in remaining]
            current = min(candidates, key=order.__getitem__)
        cycle = path[seen[current]:]
        return [*cycle, current]
