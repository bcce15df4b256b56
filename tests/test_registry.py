"""
Tests for the step registry — registration, validation and ordering.
"""

import random

import pytest

from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.engine.probe import StateProbe
from provisioner.core.engine.registry import StepRegistry
from provisioner.core.engine.scheduler import Scheduler
from provisioner.core.errors import (
    CyclicDependencyError,
    DuplicateStepError,
    UnknownDependencyError,
)
from provisioner.core.models.step import Step


def _step(name: str, *deps: str, calls: list[str] | None = None) -> Step:
    def apply() -> None:
        if calls is not None:
            calls.append(name)

    return Step(name=name, apply=apply, depends_on=set(deps))


# ── Registration ─────────────────────────────────────────────────────


class TestRegister:
    def test_register_and_lookup(self):
        registry = StepRegistry()
        step = registry.register(_step("a"))
        assert registry.get("a") is step
        assert "a" in registry
        assert len(registry) == 1
        assert registry.names == ["a"]

    def test_duplicate_name_rejected(self):
        registry = StepRegistry()
        registry.register(_step("a"))
        with pytest.raises(DuplicateStepError) as exc:
            registry.register(_step("a"))
        assert exc.value.name == "a"
        assert len(registry) == 1

    def test_frozen_registry_rejects_registration(self):
        registry = StepRegistry()
        registry.freeze()
        with pytest.raises(RuntimeError):
            registry.register(_step("a"))
        registry.unfreeze()
        registry.register(_step("a"))
        assert "a" in registry

    def test_depends_on_accepts_any_iterable(self):
        step = Step(name="b", apply=lambda: None, depends_on=["a", "a"])
        assert step.depends_on == {"a"}


# ── Resolution ───────────────────────────────────────────────────────


class TestResolvePlan:
    def test_dependencies_come_first(self):
        registry = StepRegistry()
        registry.register(_step("web", "db", "cache"))
        registry.register(_step("db"))
        registry.register(_step("cache", "db"))
        assert registry.resolve_plan().names == ["db", "cache", "web"]

    def test_registration_order_breaks_ties(self):
        registry = StepRegistry()
        for name in ("c", "a", "b"):
            registry.register(_step(name))
        assert registry.resolve_plan().names == ["c", "a", "b"]

    def test_empty_registry(self):
        assert StepRegistry().resolve_plan().names == []

    def test_unknown_dependency_names_missing_step(self):
        registry = StepRegistry()
        registry.register(_step("a"))
        registry.register(_step("b", "a", "ghost"))
        with pytest.raises(UnknownDependencyError) as exc:
            registry.resolve_plan()
        assert exc.value.step == "b"
        assert exc.value.missing == "ghost"
        assert "ghost" in str(exc.value)

    def test_cycle_names_members_in_order(self):
        registry = StepRegistry()
        registry.register(_step("a", "c"))
        registry.register(_step("b", "a"))
        registry.register(_step("c", "b"))
        registry.register(_step("d"))
        with pytest.raises(CyclicDependencyError) as exc:
            registry.resolve_plan()
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        # each member depends on the one after it
        for current, nxt in zip(cycle, cycle[1:]):
            assert nxt in registry.get(current).depends_on
        assert "→" in str(exc.value)

    def test_self_dependency_is_a_cycle(self):
        registry = StepRegistry()
        registry.register(_step("a", "a"))
        with pytest.raises(CyclicDependencyError) as exc:
            registry.resolve_plan()
        assert exc.value.cycle == ["a", "a"]

    def test_cycle_detected_before_any_apply(self):
        calls: list[str] = []
        registry = StepRegistry()
        registry.register(_step("free", calls=calls))
        registry.register(_step("x", "y", calls=calls))
        registry.register(_step("y", "x", calls=calls))
        scheduler = Scheduler(registry, StateProbe(AdapterRegistry(mock_mode=True)))
        with pytest.raises(CyclicDependencyError):
            scheduler.run()
        assert calls == []
        assert not registry.frozen

    def test_dependents_of_is_transitive(self):
        registry = StepRegistry()
        registry.register(_step("a"))
        registry.register(_step("b", "a"))
        registry.register(_step("c", "b"))
        registry.register(_step("d"))
        plan = registry.resolve_plan()
        assert plan.dependents_of("a") == {"b", "c"}
        assert plan.dependents_of("d") == set()


# ── Property: random DAGs ────────────────────────────────────────────


def _random_registry(seed: int) -> StepRegistry:
    rng = random.Random(seed)
    count = rng.randint(1, 40)
    hidden_order = [f"s{i}" for i in range(count)]
    rng.shuffle(hidden_order)

    deps: dict[str, list[str]] = {}
    for i, name in enumerate(hidden_order):
        earlier = hidden_order[:i]
        deps[name] = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 4)))

    registration = hidden_order[:]
    rng.shuffle(registration)
    registry = StepRegistry()
    for name in registration:
        registry.register(_step(name, *deps[name]))
    return registry


class TestRandomDags:
    @pytest.mark.parametrize("seed", range(30))
    def test_every_dependency_precedes_its_dependent(self, seed):
        registry = _random_registry(seed)
        plan = registry.resolve_plan()

        assert sorted(plan.names) == sorted(registry.names)
        position = {name: i for i, name in enumerate(plan.names)}
        for step in plan:
            for dep in step.depends_on:
                assert position[dep] < position[step.name]

    @pytest.mark.parametrize("seed", range(10))
    def test_resolution_is_deterministic(self, seed):
        assert _random_registry(seed).resolve_plan().names == _random_registry(seed).resolve_plan().names
