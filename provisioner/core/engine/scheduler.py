"""
Scheduler — runs a resolved plan through the step state machine.

Per step:

    pending → checking → satisfied                        (skipped)
                       → needs_apply → applying → applied
                                               → failed → rollback mode

Rollback mode walks every currently applied step in strict reverse
order. A rollback that fails is reported as a warning and the walk
goes on. After rollback, steps that depend on the failed step or on a
step that was just rolled back are never attempted; independent steps
still run.

A probe that cannot answer aborts the whole run with no rollback:
without knowing the live state there is nothing safe left to do.

Steps run one at a time. Each apply runs in a worker thread only so
the per-step timeout and cancellation can be enforced from here.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from provisioner.core.engine.probe import StateProbe
from provisioner.core.engine.registry import ProvisioningPlan, StepRegistry
from provisioner.core.engine.remediation import remediation_for
from provisioner.core.errors import (
    ProbeUnavailableError,
    RollbackFailedError,
    StepCancelledError,
    StepTimeoutError,
)
from provisioner.core.models.step import (
    PlanResult,
    StatusReport,
    Step,
    StepResult,
    StepState,
    StepStatus,
)
from provisioner.core.observability.events import EventBus, ProgressEvent, Subscriber
from provisioner.core.observability.logging_config import step_context
from provisioner.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)

# How often the waiting thread looks at the cancel flag and the clock
_POLL_INTERVAL = 0.05


def generate_plan_id() -> str:
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run-{now}-{uuid.uuid4().hex[:6]}"


class Scheduler:
    """Executes the steps of a registry against a probe.

    Args:
        registry: The registered steps. Frozen for the duration of a run.
        probe: Live-state queries for the steps' checks.
        timeout: Per-step apply timeout in seconds (None: no limit).
        retry: Optional retry policy for idempotent steps. None: no retries.
        events: Progress event bus (a private one is created if omitted).
    """

    def __init__(
        self,
        registry: StepRegistry,
        probe: StateProbe,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        events: EventBus | None = None,
    ):
        self._registry = registry
        self._probe = probe
        self._timeout = timeout
        self._retry = retry
        self._events = events or EventBus()
        self._cancel = threading.Event()
        self._states: dict[str, StepState] = {}
        self._plan_id = ""

    # ── Public API ──────────────────────────────────────────────

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        return self._events.subscribe(fn)

    def cancel(self) -> None:
        """Abort the run: stop the current step, roll back, attempt nothing else."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def plan(self) -> ProvisioningPlan:
        """Resolve the execution order. Touches nothing on the host."""
        return self._registry.resolve_plan()

    def status(self) -> StatusReport:
        """Run every check, apply nothing.

        Unlike ``run``, a probe that cannot answer does not stop the
        report; the step is listed as unknown.
        """
        plan = self.plan()
        self._begin_run()
        report = StatusReport()
        for step in plan:
            self._transition(step.name, StepState.CHECKING)
            try:
                satisfied = self._probe.check(step)
            except ProbeUnavailableError as e:
                report.unknown[step.name] = str(e)
                self._transition(step.name, StepState.FAILED, str(e))
                continue
            if satisfied:
                report.satisfied.append(step.name)
                self._transition(step.name, StepState.SATISFIED)
            else:
                report.unsatisfied.append(step.name)
                self._transition(step.name, StepState.NEEDS_APPLY)
        return report

    def run(self) -> PlanResult:
        """Apply the plan.

        Registration errors (unknown dependency, cycle) are raised before
        any step is touched. Everything after that is caught per step and
        recorded in the returned PlanResult.
        """
        plan = self.plan()
        self._begin_run()
        result = PlanResult(
            plan_id=self._plan_id,
            mode="apply",
            results=[StepResult(step_name=s.name) for s in plan],
        )
        logger.info("Run %s: %d steps", self._plan_id, len(plan))

        self._registry.freeze()
        try:
            self._execute(plan, result)
        finally:
            self._registry.unfreeze()
            result.ended_at = datetime.now(UTC).isoformat()

        logger.info(
            "Run %s finished: %s (applied=%d skipped=%d failed=%d rolled_back=%d pending=%d)",
            result.plan_id, result.status, result.applied, result.skipped,
            result.failed, result.rolled_back, result.pending,
        )
        return result

    # ── State machine ───────────────────────────────────────────

    def _execute(self, plan: ProvisioningPlan, result: PlanResult) -> None:
        applied: list[Step] = []
        blocked: set[str] = set()

        for step in plan:
            if self._cancel.is_set():
                self._rollback(applied, result)
                result.aborted = True
                break
            if step.name in blocked:
                logger.info("Not attempting '%s': a dependency failed", step.name)
                continue

            record = result.get(step.name)
            record.begin()

            self._transition(step.name, StepState.CHECKING)
            try:
                satisfied = self._probe.check(step)
            except ProbeUnavailableError as e:
                logger.error("Cannot determine state of '%s': %s. Aborting run.", step.name, e)
                record.fail(e, remediation_for(e))
                self._transition(step.name, StepState.FAILED, str(e))
                result.aborted = True
                break

            if satisfied:
                record.finish(StepStatus.SKIPPED)
                self._transition(step.name, StepState.SATISFIED)
                continue

            self._transition(step.name, StepState.NEEDS_APPLY)
            self._transition(step.name, StepState.APPLYING)
            try:
                self._apply(step)
            except Exception as e:
                logger.error("Step '%s' failed: %s", step.name, e)
                record.fail(e, remediation_for(e))
                self._transition(step.name, StepState.FAILED, str(e))
                undone = self._rollback(applied, result)
                applied = []
                if isinstance(e, StepCancelledError):
                    result.aborted = True
                    break
                for name in [step.name, *undone]:
                    blocked |= plan.dependents_of(name)
                continue

            record.finish(StepStatus.APPLIED)
            self._transition(step.name, StepState.APPLIED)
            applied.append(step)

    def _apply(self, step: Step) -> None:
        """Run ``step.apply`` under the timeout and cancel flag.

        Raises whatever the apply raised, or StepTimeoutError /
        StepCancelledError.
        """
        fn: Callable[[], None] = step.apply
        if self._retry is not None and step.idempotent:
            fn = functools.partial(self._retry.call, step.apply, label=step.name)

        outcome: list[BaseException] = []
        done = threading.Event()

        def _target() -> None:
            try:
                with step_context(step.name):
                    fn()
            except BaseException as e:
                outcome.append(e)
            finally:
                done.set()

        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        worker = threading.Thread(target=_target, name=f"apply-{step.name}", daemon=True)
        worker.start()

        while not done.wait(_POLL_INTERVAL):
            if self._cancel.is_set():
                self._stop(step)
                raise StepCancelledError(f"Step '{step.name}' was cancelled while applying")
            if deadline is not None and time.monotonic() >= deadline:
                self._stop(step)
                raise StepTimeoutError(step.name, self._timeout or 0)

        if outcome:
            raise outcome[0]

    def _stop(self, step: Step) -> None:
        if step.stop is None:
            logger.warning("Step '%s' has no stop hook; its worker is abandoned", step.name)
            return
        try:
            step.stop()
        except Exception as e:
            logger.warning("Stop hook of '%s' failed: %s", step.name, e)

    def _rollback(self, applied: list[Step], result: PlanResult) -> list[str]:
        """Undo ``applied`` in strict reverse order; return the steps undone."""
        undone: list[str] = []
        if not applied:
            return undone
        logger.warning("Rolling back %d applied step(s)", len(applied))
        for step in reversed(applied):
            record = result.get(step.name)
            if step.rollback is None:
                logger.info("'%s' has nothing to roll back; left applied", step.name)
                continue
            self._transition(step.name, StepState.ROLLING_BACK)
            try:
                with step_context(step.name):
                    step.rollback()
            except Exception as e:
                warning = RollbackFailedError(step.name, e)
                logger.warning("%s", warning)
                record.rollback_error = str(e)
                result.warnings.append(str(warning))
                self._transition(step.name, StepState.FAILED, str(warning))
                continue
            record.finish(StepStatus.ROLLED_BACK)
            self._transition(step.name, StepState.ROLLED_BACK)
            undone.append(step.name)
        return undone

    # ── Events ──────────────────────────────────────────────────

    def _begin_run(self) -> None:
        self._plan_id = generate_plan_id()
        self._states.clear()
        self._cancel.clear()

    def _transition(self, step: str, state: StepState, message: str = "") -> None:
        previous = self._states.get(step, StepState.PENDING)
        self._states[step] = state
        self._events.emit(ProgressEvent(
            plan_id=self._plan_id,
            step=step,
            state=state,
            previous=previous,
            message=message,
        ))
