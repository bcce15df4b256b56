"""
Step, StepResult and PlanResult — the provisioning unit and its outcome.

A Step is declarative: a name, the names it depends on, and three
operations. ``check`` is a predicate over live state (it receives the
StateProbe), ``apply`` mutates the host, ``rollback`` undoes apply.
Steps carry no state between runs; everything they know about the host
they learn from ``check``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from provisioner.core.engine.probe import StateProbe


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class StepStatus(StrEnum):
    """Recorded outcome of a step in a plan run."""

    PENDING = "pending"          # never attempted
    SKIPPED = "skipped"          # already satisfied
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class StepState(StrEnum):
    """Transient scheduler states, emitted as progress events."""

    PENDING = "pending"
    CHECKING = "checking"
    SATISFIED = "satisfied"
    NEEDS_APPLY = "needs_apply"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


CheckFn = Callable[["StateProbe"], bool]
ActionFn = Callable[[], None]


@dataclass
class Step:
    """One unit of provisioning work.

    Attributes:
        name: Unique key within a registry.
        apply: Side-effecting action bringing the host to the desired state.
        check: Returns True when the desired state already holds.
            ``None`` means the state cannot be observed: the step always applies.
        rollback: Undoes ``apply``. ``None`` means nothing to undo.
        depends_on: Names of steps that must complete first.
        idempotent: Whether ``apply`` is safe to run twice. Retry policies
            only wrap idempotent steps.
        stop: Best-effort interruption of a running ``apply``.
        description: One line shown by ``provision plan``.
    """

    name: str
    apply: ActionFn
    check: CheckFn | None = None
    rollback: ActionFn | None = None
    depends_on: set[str] = field(default_factory=set)
    idempotent: bool = True
    stop: ActionFn | None = None
    description: str = ""

    def __post_init__(self) -> None:
        self.depends_on = set(self.depends_on)

    def __repr__(self) -> str:
        deps = ",".join(sorted(self.depends_on))
        return f"Step({self.name!r}, depends_on=[{deps}])"


class StepResult(BaseModel):
    """Outcome of one step. Created when the scheduler begins the step."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    error: str | None = None
    error_type: str | None = None
    remediation: str | None = None

    started_at: str | None = None
    ended_at: str | None = None
    rollback_error: str | None = None

    def begin(self) -> None:
        self.started_at = _now_iso()

    def finish(self, status: StepStatus) -> None:
        self.status = status
        self.ended_at = _now_iso()

    def fail(self, exc: BaseException, remediation: str = "") -> None:
        self.error = str(exc) or exc.__class__.__name__
        self.error_type = exc.__class__.__name__
        self.remediation = remediation or None
        self.finish(StepStatus.FAILED)


@dataclass
class PlanResult:
    """Result of one plan run: every step's status plus rollback warnings."""

    plan_id: str = ""
    mode: str = "apply"
    results: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    aborted: bool = False
    started_at: str = field(default_factory=_now_iso)
    ended_at: str = ""

    def get(self, name: str) -> StepResult:
        for result in self.results:
            if result.step_name == name:
                return result
        raise KeyError(name)

    def count(self, status: StepStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def failed(self) -> int:
        return self.count(StepStatus.FAILED)

    @property
    def applied(self) -> int:
        return self.count(StepStatus.APPLIED)

    @property
    def skipped(self) -> int:
        return self.count(StepStatus.SKIPPED)

    @property
    def rolled_back(self) -> int:
        return self.count(StepStatus.ROLLED_BACK)

    @property
    def pending(self) -> int:
        return self.count(StepStatus.PENDING)

    @property
    def all_ok(self) -> bool:
        return self.failed == 0 and not self.warnings and not self.aborted

    @property
    def status(self) -> str:
        if self.all_ok:
            return "ok"
        if self.applied or self.skipped:
            return "partial"
        return "failed"

    @property
    def exit_code(self) -> int:
        """0 on full success, 1 on any failure or partial rollback."""
        return 0 if self.all_ok else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "mode": self.mode,
            "status": self.status,
            "exit_code": self.exit_code,
            "aborted": self.aborted,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "counts": {
                "applied": self.applied,
                "skipped": self.skipped,
                "failed": self.failed,
                "rolled_back": self.rolled_back,
                "pending": self.pending,
            },
            "warnings": list(self.warnings),
            "results": [r.model_dump(mode="json") for r in self.results],
        }


class StatusReport(BaseModel):
    """Result of ``provision status``: which steps are already satisfied."""

    satisfied: list[str] = Field(default_factory=list)
    unsatisfied: list[str] = Field(default_factory=list)
    unknown: dict[str, str] = Field(default_factory=dict)   # step → probe error

    @property
    def all_satisfied(self) -> bool:
        return not self.unsatisfied and not self.unknown

    @property
    def exit_code(self) -> int:
        return 0 if self.all_satisfied else 1
