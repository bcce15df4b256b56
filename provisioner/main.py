"""
provision — CLI entrypoint.

Usage:
    provision --help
    provision plan
    provision status
    provision apply
    provision render firewall_rules

Exit codes: 0 success, 1 failure or partial rollback, 2 invalid configuration.
"""

from __future__ import annotations

import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from provisioner import __version__
from provisioner.core.errors import (
    ConfigError,
    CyclicDependencyError,
    DuplicateStepError,
    InvalidConfigError,
    ProvisionError,
    UnknownDependencyError,
)
from provisioner.core.models.artifact import ArtifactKind
from provisioner.core.models.step import StepState
from provisioner.core.observability.events import ProgressEvent
from provisioner.core.observability.logging_config import setup_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_CONFIG = 2

# Errors that mean "the configuration is wrong", as opposed to "the host said no"
_CONFIG_ERRORS = (
    ConfigError,
    InvalidConfigError,
    DuplicateStepError,
    UnknownDependencyError,
    CyclicDependencyError,
)

_STATUS_COLOR = {"ok": "green", "partial": "yellow", "failed": "red"}


@click.group()
@click.version_option(version=__version__, prog_name="provision")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to host.yml (default: auto-detect).",
)
@click.option("--mock", is_flag=True, help="Use mock adapters (nothing runs on the host).")
@click.option(
    "--root",
    type=click.Path(file_okay=False),
    default=None,
    help="Filesystem root for written files (staging directory).",
)
@click.option("--timeout", type=float, default=None, help="Per-step apply timeout in seconds.")
@click.option("--retries", type=int, default=0, show_default=True, help="Retries for idempotent steps.")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    mock: bool,
    root: str | None,
    timeout: float | None,
    retries: int,
) -> None:
    """provision — declarative host provisioning."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["mock"] = mock
    ctx.obj["root"] = Path(root) if root else None
    ctx.obj["timeout"] = timeout
    ctx.obj["retries"] = max(retries, 0)

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("PROVISION_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("PROVISION_LOG_FILE"),
        log_file_level=os.environ.get("PROVISION_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


# ── Helpers ─────────────────────────────────────────────────────


def _fail(message: str, code: int, as_json: bool = False, remediation: str = "") -> NoReturn:
    if as_json:
        payload: dict[str, Any] = {"error": message, "exit_code": code}
        if remediation:
            payload["remediation"] = remediation
        click.echo(json.dumps(payload, indent=2))
    else:
        click.secho(f"❌ {message}", fg="red", err=True)
        if remediation:
            click.echo(f"   → {remediation}", err=True)
    sys.exit(code)


def _handle_error(e: ProvisionError, as_json: bool) -> NoReturn:
    code = EXIT_INVALID_CONFIG if isinstance(e, _CONFIG_ERRORS) else EXIT_FAILED
    _fail(str(e), code, as_json, e.remediation)


def _context(ctx: click.Context, as_json: bool):
    from provisioner.core.use_cases.provision import build_context

    try:
        return build_context(
            ctx.obj.get("config_path"),
            root=ctx.obj.get("root"),
            mock_mode=ctx.obj.get("mock", False),
            timeout=ctx.obj.get("timeout"),
            retries=ctx.obj.get("retries", 0),
        )
    except ProvisionError as e:
        _handle_error(e, as_json)


def _progress_printer(verbose: bool):
    icons = {
        StepState.APPLIED: ("✓", "green", "applied"),
        StepState.SATISFIED: ("⊘", "white", "already satisfied"),
        StepState.FAILED: ("✗", "red", "failed"),
        StepState.ROLLED_BACK: ("↩", "yellow", "rolled back"),
    }

    def _print(event: ProgressEvent) -> None:
        if event.state == StepState.APPLYING and verbose:
            click.secho(f"   … {event.step}", fg="cyan")
            return
        if event.state not in icons:
            return
        icon, color, label = icons[event.state]
        click.secho(f"   {icon} {event.step} ", fg=color, nl=False)
        click.echo(f"({label})")
        if event.message and event.state == StepState.FAILED:
            for line in event.message.split("\n")[:5]:
                click.echo(f"     │ {line}")

    return _print


# ── Commands ────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool) -> None:
    """Print the resolved step order. Probes nothing, applies nothing."""
    from provisioner.core.use_cases.provision import plan_host

    context = _context(ctx, as_json)
    try:
        resolved = plan_host(context)
    except ProvisionError as e:
        _handle_error(e, as_json)

    if as_json:
        click.echo(json.dumps({
            "host": context.host.name,
            "steps": [
                {
                    "name": s.name,
                    "depends_on": sorted(s.depends_on),
                    "description": s.description,
                }
                for s in resolved
            ],
        }, indent=2))
        return

    click.secho(f"\n📋 Plan: {context.host.name} ({len(resolved)} steps)", fg="cyan", bold=True)
    for i, step in enumerate(resolved, start=1):
        deps = f"  ← {', '.join(sorted(step.depends_on))}" if step.depends_on else ""
        click.echo(f"   {i:>2}. {step.name}{deps}")
        if ctx.obj.get("verbose") and step.description:
            click.echo(f"       {step.description}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Check which steps are already satisfied. Changes nothing."""
    from provisioner.core.use_cases.provision import status_host

    context = _context(ctx, as_json)
    try:
        report = status_host(context)
    except ProvisionError as e:
        _handle_error(e, as_json)

    if as_json:
        click.echo(json.dumps({
            "host": context.host.name,
            "all_satisfied": report.all_satisfied,
            **report.model_dump(mode="json"),
        }, indent=2))
        sys.exit(report.exit_code)

    click.secho(f"\n🔍 Status: {context.host.name}", fg="cyan", bold=True)
    for name in report.satisfied:
        click.secho(f"   ✓ {name}", fg="green")
    for name in report.unsatisfied:
        click.secho(f"   ✗ {name}", fg="yellow", nl=False)
        click.echo(" (needs apply)")
    for name, error in report.unknown.items():
        click.secho(f"   ? {name}", fg="red", nl=False)
        click.echo(f" ({error})")

    click.echo()
    total = len(report.satisfied) + len(report.unsatisfied) + len(report.unknown)
    color = "green" if report.all_satisfied else "yellow"
    click.secho(f"   {len(report.satisfied)}/{total} satisfied", fg=color, bold=True)
    click.echo()
    sys.exit(report.exit_code)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def apply(ctx: click.Context, as_json: bool) -> None:
    """Bring the host to the described state.

    Satisfied steps are skipped. On failure, applied steps are rolled
    back in reverse order. Ctrl-C stops the current step and rolls back.
    """
    from provisioner.core.use_cases.provision import apply_host

    context = _context(ctx, as_json)
    quiet = ctx.obj.get("quiet", False)
    printer = None if (as_json or quiet) else _progress_printer(ctx.obj.get("verbose", False))

    if printer is not None:
        mode_label = "[mock] " if ctx.obj.get("mock") else ""
        click.secho(f"\n⚡ {mode_label}apply — {context.host.name}", fg="cyan", bold=True)
        if context.root is not None:
            click.echo(f"   Root: {context.root}")
        click.echo()

    previous = signal.signal(signal.SIGINT, lambda *_: context.scheduler.cancel())
    try:
        result = apply_host(context, on_event=printer)
    except ProvisionError as e:
        _handle_error(e, as_json)
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    click.echo()
    for r in result.results:
        if r.error and r.remediation:
            click.secho(f"   {r.step_name}: ", fg="red", nl=False)
            click.echo(f"{r.remediation}")
    for warning in result.warnings:
        click.secho(f"   ⚠️  {warning}", fg="yellow")

    color = _STATUS_COLOR.get(result.status, "white")
    click.secho(
        f"   Result: {result.status} — applied {result.applied}, skipped {result.skipped}, "
        f"failed {result.failed}, rolled back {result.rolled_back}, not attempted {result.pending}",
        fg=color,
        bold=True,
    )
    click.echo()
    sys.exit(result.exit_code)


@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in ArtifactKind]))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def render(ctx: click.Context, kind: str, as_json: bool) -> None:
    """Print the artifact an apply would write for KIND."""
    from provisioner.core.use_cases.provision import render_kind

    context = _context(ctx, as_json)
    try:
        path, artifact = render_kind(context, kind)
    except ProvisionError as e:
        _handle_error(e, as_json)

    if as_json:
        click.echo(json.dumps({
            "kind": kind,
            "path": path,
            "source": artifact.source.model_dump(mode="json"),
            "rendered_text": artifact.rendered_text,
        }, indent=2))
        return

    if not ctx.obj.get("quiet"):
        click.secho(f"# {path}", fg="cyan", err=True)
    click.echo(artifact.rendered_text, nl=False)


@cli.group()
def credentials() -> None:
    """Credentials issued for the rendered configs."""


@credentials.command("export")
@click.option(
    "--output", "-o", "output",
    type=click.Path(dir_okay=False),
    default="provision-credentials.json",
    show_default=True,
    help="Where to write the encrypted export.",
)
@click.option(
    "--passphrase",
    envvar="PROVISION_VAULT_PASSPHRASE",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help="Export passphrase (or PROVISION_VAULT_PASSPHRASE).",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def credentials_export(ctx: click.Context, output: str, passphrase: str, as_json: bool) -> None:
    """Write the deployed credentials to an encrypted file."""
    from provisioner.core.use_cases.provision import export_host_credentials

    context = _context(ctx, as_json)
    out_path = Path(output)
    try:
        envelope = export_host_credentials(context, passphrase, out_path)
    except ProvisionError as e:
        _handle_error(e, as_json)
    except ValueError as e:
        _fail(str(e), EXIT_FAILED, as_json)

    if as_json:
        click.echo(json.dumps({"path": str(out_path), "count": envelope["count"]}, indent=2))
        return
    click.secho(f"🔐 Exported {envelope['count']} credential(s) to {out_path}", fg="green")


@cli.command()
@click.option("-n", "limit", type=int, default=10, show_default=True, help="Number of entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent runs from the audit ledger."""
    from provisioner.core.config.loader import find_host_file, state_dir_for
    from provisioner.core.use_cases.provision import read_history

    config_path: Path | None = ctx.obj.get("config_path") or find_host_file()
    state_dir = state_dir_for(config_path) if config_path else Path.cwd() / ".state"
    entries = read_history(state_dir, limit)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No runs recorded yet.")
        return

    click.secho(f"\n📜 Last {len(entries)} run(s)", fg="cyan", bold=True)
    for entry in entries:
        color = _STATUS_COLOR.get(entry.status, "white")
        click.echo(f"   {entry.timestamp[:19]}  {entry.operation_type:<18} ", nl=False)
        click.secho(f"{entry.status or '-':<8}", fg=color, nl=False)
        if entry.operation_type == "apply":
            click.echo(
                f" applied {entry.steps_applied}, skipped {entry.steps_skipped}, "
                f"failed {entry.steps_failed}, rolled back {entry.steps_rolled_back}"
            )
        else:
            click.echo()
    click.echo()


if __name__ == "__main__":
    cli()
