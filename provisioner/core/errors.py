"""
Error taxonomy — every failure the orchestrator can name.

Registration-time errors (duplicate, unknown dependency, cycle) are raised
before any step runs. Runtime errors are raised inside a step's check,
apply or rollback and are caught by the scheduler, which turns them into a
failed StepResult with a remediation hint. Nothing escapes a single step.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for all orchestrator errors."""

    #: Short operator-facing advice shown next to the failure.
    remediation: str = ""


# ── Registration time ───────────────────────────────────────────────


class DuplicateStepError(ProvisionError):
    """A step with the same name is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Step '{name}' is already registered")


class UnknownDependencyError(ProvisionError):
    """A step depends on a name that was never registered."""

    def __init__(self, step: str, missing: str):
        self.step = step
        self.missing = missing
        super().__init__(f"Step '{step}' depends on unknown step '{missing}'")


class CyclicDependencyError(ProvisionError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


# ── Configuration ───────────────────────────────────────────────────


class ConfigError(ProvisionError):
    """Raised when host configuration is invalid or missing."""

    remediation = "fix the host configuration file and rerun"


class InvalidConfigError(ProvisionError):
    """A config struct violates a constraint, or an artifact cannot be parsed."""

    remediation = "fix the offending value in the host configuration"


# ── Runtime ─────────────────────────────────────────────────────────


class ProbeUnavailableError(ProvisionError):
    """Live state could not be queried (distinct from 'not satisfied')."""

    remediation = "make sure the queried service is reachable, then rerun"


class StepApplyError(ProvisionError):
    """A step's apply operation failed."""

    remediation = "inspect the error output above and rerun"


class StepTimeoutError(StepApplyError):
    """A step's apply did not finish within the per-step timeout."""

    remediation = "rerun with a larger --timeout"

    def __init__(self, step: str, timeout: float):
        self.step = step
        self.timeout = timeout
        super().__init__(f"Step '{step}' timed out after {timeout:g}s")


class StepCancelledError(StepApplyError):
    """The run was aborted while the step was applying."""

    remediation = "rerun the plan; satisfied steps will be skipped"


class RollbackFailedError(ProvisionError):
    """A step's rollback failed. Logged as a warning, never re-fails the plan."""

    remediation = "clean up the step's changes manually"

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Rollback of '{step}' failed: {cause}")


class CertificateNotFoundError(ProvisionError):
    """No certificate/key pair exists for the requested domain."""

    remediation = "issue a certificate for the domain (e.g. certbot certonly) and rerun"

    def __init__(self, domain: str, searched: str = ""):
        self.domain = domain
        detail = f" (looked in {searched})" if searched else ""
        super().__init__(f"No TLS certificate found for '{domain}'{detail}")
