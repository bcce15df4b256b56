"""
Provision use cases — apply, status, plan, render, export, history.

Each CLI command is a thin shell over one function here. This module
wires the pieces together: load host.yml, register adapters, build the
step catalog, hand it to the scheduler, persist the outcome.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from provisioner.adapters.certificates.letsencrypt import LetsEncryptCertificateProvider
from provisioner.adapters.containers.docker import DockerAdapter
from provisioner.adapters.packages.apt import AptAdapter
from provisioner.adapters.registry import AdapterRegistry
from provisioner.adapters.services.systemd import SystemdAdapter
from provisioner.adapters.shell.command import ShellCommandAdapter
from provisioner.catalog.hooks import Hooks
from provisioner.catalog.vpn_host import (
    artifact_paths,
    build_steps,
    preview_artifact,
    read_access_key,
    validate_host,
)
from provisioner.core.config.loader import find_host_file, load_host, state_dir_for
from provisioner.core.engine.probe import StateProbe
from provisioner.core.engine.registry import ProvisioningPlan, StepRegistry
from provisioner.core.engine.scheduler import Scheduler
from provisioner.core.engine.writer import ArtifactWriter
from provisioner.core.errors import ConfigError, ProvisionError
from provisioner.core.models.artifact import ArtifactKind, ConfigArtifact, ServiceConfig
from provisioner.core.models.credential import Credential
from provisioner.core.models.host import HostSpec
from provisioner.core.models.step import PlanResult, StatusReport
from provisioner.core.observability.events import Subscriber
from provisioner.core.persistence.audit import AuditEntry, AuditWriter
from provisioner.core.persistence.state_file import (
    default_state_path,
    load_state,
    record_run,
    save_state,
)
from provisioner.core.reliability.retry import RetryPolicy
from provisioner.core.secrets.provisioner import SecretProvisioner
from provisioner.core.secrets.vault import export_credentials, write_export

logger = logging.getLogger(__name__)

MOCK_ROOT_DIR = "mock-root"


@dataclass
class ProvisionContext:
    """Everything one command needs, built from host.yml and CLI options."""

    host: HostSpec
    config_path: Path
    state_dir: Path
    adapters: AdapterRegistry
    writer: ArtifactWriter
    probe: StateProbe
    hooks: Hooks
    secrets: SecretProvisioner
    registry: StepRegistry
    scheduler: Scheduler

    @property
    def root(self) -> Path | None:
        return self.writer.root


def default_adapters(mock_mode: bool = False) -> AdapterRegistry:
    registry = AdapterRegistry(mock_mode=mock_mode)
    registry.register(ShellCommandAdapter())
    registry.register(AptAdapter())
    registry.register(DockerAdapter())
    registry.register(SystemdAdapter())
    return registry


def build_context(
    config_path: Path | None = None,
    *,
    root: Path | None = None,
    mock_mode: bool = False,
    timeout: float | None = None,
    retries: int = 0,
    adapters: AdapterRegistry | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> ProvisionContext:
    """Load the host and assemble adapters, probe, writer and scheduler.

    In mock mode nothing runs on the host and, unless ``root`` is given,
    files land in a staging tree under the state directory.

    Raises:
        ConfigError: host.yml is missing or invalid.
        DuplicateStepError: The catalog registers a name twice.
    """
    if config_path is None:
        config_path = find_host_file()
    if config_path is None:
        raise ConfigError("No host.yml found. Create one, or specify --config.")

    host = load_host(config_path)
    state_dir = state_dir_for(config_path)

    if mock_mode and root is None:
        root = state_dir / MOCK_ROOT_DIR
        logger.info("Mock mode: staging files under %s", root)

    if adapters is None:
        adapters = default_adapters(mock_mode=mock_mode)

    writer = ArtifactWriter(root=root)
    probe = StateProbe(adapters, root=root, which=which)
    certificates = LetsEncryptCertificateProvider(live_dir=host.paths.cert_root, root=root)
    hooks = Hooks(adapters, writer, certificates)
    secrets = SecretProvisioner()

    registry = StepRegistry()
    for step in build_steps(host, hooks, probe, secrets):
        registry.register(step)

    retry = RetryPolicy(max_attempts=retries + 1) if retries > 0 else None
    scheduler = Scheduler(registry, probe, timeout=timeout, retry=retry)

    return ProvisionContext(
        host=host,
        config_path=config_path,
        state_dir=state_dir,
        adapters=adapters,
        writer=writer,
        probe=probe,
        hooks=hooks,
        secrets=secrets,
        registry=registry,
        scheduler=scheduler,
    )


# ── Commands ────────────────────────────────────────────────────


def plan_host(ctx: ProvisionContext) -> ProvisioningPlan:
    """Resolved step order. Probes nothing, applies nothing."""
    return ctx.scheduler.plan()


def status_host(ctx: ProvisionContext) -> StatusReport:
    """Check every step against the live host."""
    report = ctx.scheduler.status()
    AuditWriter(state_dir=ctx.state_dir).write(AuditEntry(
        operation_type="status",
        host=ctx.host.name,
        status="ok" if report.all_satisfied else "partial",
        steps_total=len(report.satisfied) + len(report.unsatisfied) + len(report.unknown),
        steps_skipped=len(report.satisfied),
        errors=[f"{name}: {err}" for name, err in report.unknown.items()],
    ))
    return report


def apply_host(ctx: ProvisionContext, on_event: Subscriber | None = None) -> PlanResult:
    """Apply the plan and persist the outcome.

    Raises:
        InvalidConfigError: A host value cannot be rendered (nothing is applied).
        CyclicDependencyError, UnknownDependencyError: The graph is invalid.
    """
    validate_host(ctx.host, ctx.hooks, ctx.probe)

    unsubscribe = ctx.scheduler.subscribe(on_event) if on_event else None
    start = time.monotonic()
    try:
        result = ctx.scheduler.run()
    finally:
        if unsubscribe:
            unsubscribe()
    duration_ms = int((time.monotonic() - start) * 1000)

    AuditWriter(state_dir=ctx.state_dir).write(
        AuditEntry.from_plan_result(result, host=ctx.host.name, duration_ms=duration_ms)
    )
    state_path = default_state_path(ctx.state_dir)
    state = record_run(load_state(state_path), result, host_name=ctx.host.name)
    state.metadata["credentials_issued"] = ctx.secrets.new_count
    save_state(state, state_path)
    return result


def render_kind(ctx: ProvisionContext, kind: ArtifactKind | str) -> tuple[str, ConfigArtifact]:
    """The artifact ``kind`` as an apply would write it, and its path."""
    kind = ArtifactKind(kind)
    return artifact_paths(ctx.host)[kind], preview_artifact(ctx.host, kind, ctx.hooks, ctx.probe)


def current_credentials(ctx: ProvisionContext) -> list[Credential]:
    """Credentials currently deployed, read back from the files that hold them."""
    credentials = []
    existing = ctx.probe.read_artifact(ctx.host.proxy.config_path, ArtifactKind.SERVICE_CONFIG)
    if isinstance(existing, ServiceConfig):
        credentials.append(ctx.secrets.issue_or_reuse("v2ray-config", existing.client_id))
    record = read_access_key(ctx.probe.read_text(ctx.host.outline.access_keys_file))
    if record is not None:
        credentials.append(ctx.secrets.issue_or_reuse(
            "outline-access-key", record["password"], kind="access_key", existing_id=record["id"],
        ))
    return credentials


def export_host_credentials(ctx: ProvisionContext, passphrase: str, out_path: Path) -> dict[str, Any]:
    """Write an encrypted envelope of the deployed credentials.

    Raises:
        ProvisionError: Nothing to export (the host is not provisioned yet).
        ValueError: The passphrase is too short.
    """
    credentials = current_credentials(ctx)
    if not credentials:
        raise ProvisionError(
            "No deployed credentials found; run 'provision apply' first"
        )
    envelope = export_credentials(credentials, passphrase, host=ctx.host.name)
    write_export(envelope, out_path)
    AuditWriter(state_dir=ctx.state_dir).write(AuditEntry(
        operation_type="credentials-export",
        host=ctx.host.name,
        status="ok",
        context={"path": str(out_path), "count": len(credentials)},
    ))
    return envelope


def read_history(state_dir: Path, n: int = 20) -> list[AuditEntry]:
    return AuditWriter(state_dir=state_dir).read_recent(n)
