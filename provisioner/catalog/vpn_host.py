"""
VPN host catalog — the step graph for an Outline + V2Ray host.

Every step has a check, so a second run against a provisioned host
skips everything. Config files are rendered from typed structs and
compared structurally; commands that merely "make it so" (install
scripts, package installs) are guarded by a probe of their result.

Steps without a rollback leave their changes in place when a later
step fails: uninstalling base packages or the container runtime would
do more harm than a partially provisioned host.
"""

from __future__ import annotations

import json
import logging
import shlex
from collections.abc import Callable

from pydantic import BaseModel, ValidationError

from provisioner.catalog.hooks import Hooks
from provisioner.core import render
from provisioner.core.engine.probe import StateProbe
from provisioner.core.errors import InvalidConfigError, StepApplyError
from provisioner.core.models.artifact import (
    ArtifactKind,
    ConfigArtifact,
    FirewallRuleSet,
    KernelParams,
    ReverseProxyVHost,
    ServiceConfig,
    Transport,
)
from provisioner.core.models.host import HostSpec
from provisioner.core.models.step import Step
from provisioner.core.render.firewall import ufw_commands
from provisioner.core.secrets.provisioner import SecretProvisioner

logger = logging.getLogger(__name__)

# Placeholder client id shown by ``provision render`` before one is issued
PREVIEW_CLIENT_ID = "00000000-0000-4000-8000-000000000000"


# ── Desired structs ─────────────────────────────────────────────


def firewall_rules(host: HostSpec) -> FirewallRuleSet:
    return FirewallRuleSet(
        default_incoming=host.default_incoming,
        default_outgoing=host.default_outgoing,
        rules=host.firewall_rules,
    )


def kernel_params(host: HostSpec) -> KernelParams:
    return KernelParams(params=host.kernel_params)


def service_config(host: HostSpec, client_id: str) -> ServiceConfig:
    return ServiceConfig(
        client_id=client_id,
        listen_port=host.proxy.listen_port,
        transport=Transport(type="ws", path=host.proxy.ws_path),
    )


def reverse_proxy_vhost(host: HostSpec, cert_path: str, key_path: str) -> ReverseProxyVHost:
    return ReverseProxyVHost(
        listen_port=host.reverse_proxy.listen_port,
        server_name=host.domain,
        tls_cert_path=cert_path,
        tls_key_path=key_path,
        upstream_path=host.proxy.ws_path,
        upstream_url=f"http://127.0.0.1:{host.proxy.listen_port}",
        websocket_upgrade=True,
    )


def artifact_paths(host: HostSpec) -> dict[ArtifactKind, str]:
    """Where each artifact kind lands on this host."""
    p = host.paths
    site = f"{host.reverse_proxy.sites_available}/{host.reverse_proxy.site_name}"
    return {
        ArtifactKind.FIREWALL_RULES: p.firewall_rules_file,
        ArtifactKind.REVERSE_PROXY_VHOST: site,
        ArtifactKind.SERVICE_CONFIG: host.proxy.config_path,
        ArtifactKind.KERNEL_PARAMS: p.sysctl_file,
        ArtifactKind.DAEMON_CONFIG: p.docker_daemon_file,
        ArtifactKind.RESOLVER_CONFIG: p.resolv_conf,
        ArtifactKind.FILE_LIMITS: p.limits_file,
        ArtifactKind.AUTO_UPGRADES: p.auto_upgrades_file,
    }


def preview_artifact(host: HostSpec, kind: ArtifactKind | str, hooks: Hooks, probe: StateProbe) -> ConfigArtifact:
    """The artifact an apply would write for ``kind``, without writing it.

    The service config reuses the client id already on disk; if there is
    none, a placeholder stands in (nothing is issued by a preview).
    """
    kind = ArtifactKind(kind)
    if kind == ArtifactKind.FIREWALL_RULES:
        return render.render(kind, firewall_rules(host))
    if kind == ArtifactKind.KERNEL_PARAMS:
        return render.render(kind, kernel_params(host))
    if kind == ArtifactKind.SERVICE_CONFIG:
        existing = probe.read_artifact(host.proxy.config_path, kind)
        client_id = existing.client_id if isinstance(existing, ServiceConfig) else PREVIEW_CLIENT_ID
        return render.render(kind, service_config(host, client_id))
    if kind == ArtifactKind.REVERSE_PROXY_VHOST:
        paths = hooks.certificates.expected_paths(host.domain)
        return render.render(kind, reverse_proxy_vhost(host, paths.cert_path, paths.key_path))
    if kind == ArtifactKind.DAEMON_CONFIG:
        return render.render(kind, host.daemon)
    if kind == ArtifactKind.RESOLVER_CONFIG:
        return render.render(kind, host.resolver)
    if kind == ArtifactKind.FILE_LIMITS:
        return render.render(kind, host.limits)
    return render.render(kind, host.auto_upgrades)


def validate_host(host: HostSpec, hooks: Hooks, probe: StateProbe) -> list[ConfigArtifact]:
    """Render every artifact once so a bad value fails before any step runs.

    Raises:
        InvalidConfigError: A host value violates an artifact constraint.
    """
    artifacts = []
    for kind in ArtifactKind:
        try:
            artifacts.append(preview_artifact(host, kind, hooks, probe))
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid {kind}: {e}") from e
    return artifacts


# ── Step builders ───────────────────────────────────────────────


def _file_step(
    name: str,
    path: str,
    kind: ArtifactKind,
    struct_fn: Callable[[], BaseModel],
    hooks: Hooks,
    *,
    depends_on: set[str] | None = None,
    reload_cmd: tuple[str, ...] | None = None,
    description: str = "",
) -> Step:
    """A step that renders one artifact and optionally runs a reload command."""

    def check(probe: StateProbe) -> bool:
        return probe.artifact_matches(path, kind, struct_fn())

    def apply() -> None:
        with hooks.transaction(path):
            hooks.writer.write(path, render.render(kind, struct_fn()))
            if reload_cmd:
                hooks.shell(name, f"{name}:reload", *reload_cmd)

    def rollback() -> None:
        hooks.writer.restore(path)
        if reload_cmd:
            hooks.shell(name, f"{name}:reload", *reload_cmd)

    return Step(
        name=name,
        check=check,
        apply=apply,
        rollback=rollback,
        depends_on=depends_on or set(),
        description=description or f"Write {path}",
    )


def _base_packages(host: HostSpec, hooks: Hooks) -> Step:
    name = "base-packages"

    def apply() -> None:
        hooks.apt(name, "update")
        hooks.apt(name, "install", host.packages)

    return Step(
        name=name,
        check=lambda probe: probe.packages_installed(host.packages),
        apply=apply,
        description=f"Install {len(host.packages)} base packages",
    )


def _service_user(host: HostSpec, hooks: Hooks) -> Step:
    name = "service-user"
    user = host.outline.user
    sudoers = f"{host.paths.sudoers_dir}/{user}"
    sudoers_line = f"{user} ALL=(ALL) NOPASSWD:ALL\n"
    created: list[str] = []

    def check(probe: StateProbe) -> bool:
        return (
            probe.user_exists(user)
            and probe.user_in_group(user, "sudo")
            and probe.read_text(sudoers) == sudoers_line
        )

    def apply() -> None:
        with hooks.transaction(sudoers):
            receipt = hooks.adapters.run("shell", f"{name}:lookup", step=name, argv=["id", "-u", user])
            if receipt.failed:
                hooks.shell(name, f"{name}:create", "useradd", "-m", "-s", "/bin/bash", user)
                created.append(user)
            hooks.shell(name, f"{name}:sudo", "usermod", "-aG", "sudo", user)
            hooks.writer.write(sudoers, sudoers_line, mode=0o440)
            hooks.shell(name, f"{name}:visudo", "visudo", "-cf", str(hooks.writer.host_path(sudoers)))

    def rollback() -> None:
        hooks.writer.restore(sudoers)
        while created:
            hooks.shell(name, f"{name}:delete", "userdel", "-r", created.pop())

    return Step(
        name=name, check=check, apply=apply, rollback=rollback,
        description=f"Create '{user}' with passwordless sudo",
    )


def _container_runtime(host: HostSpec, hooks: Hooks) -> Step:
    name = "container-runtime"
    users = [*host.docker_users, host.outline.user]

    def check(probe: StateProbe) -> bool:
        return probe.command_exists("docker") and all(
            probe.user_in_group(u, "docker") for u in users
        )

    def apply() -> None:
        receipt = hooks.adapters.run("docker", f"{name}:version", step=name, operation="version")
        if receipt.failed:
            hooks.pipeline(name, f"{name}:install", f"curl -fsSL {shlex.quote(host.docker_install_url)} | sh")
        for user in users:
            hooks.shell(name, f"{name}:group:{user}", "usermod", "-aG", "docker", user)

    return Step(
        name=name, check=check, apply=apply,
        depends_on={"base-packages", "service-user"},
        idempotent=True,
        description="Install the container runtime",
    )


def _runtime_daemon_config(host: HostSpec, hooks: Hooks) -> Step:
    return _file_step(
        "runtime-daemon-config",
        host.paths.docker_daemon_file,
        ArtifactKind.DAEMON_CONFIG,
        lambda: host.daemon,
        hooks,
        depends_on={"container-runtime"},
        reload_cmd=("systemctl", "restart", "docker"),
        description="Tune the container runtime daemon",
    )


def _outline_server(host: HostSpec, hooks: Hooks) -> Step:
    name = "outline-server"
    container = host.outline.container

    def apply() -> None:
        script = shlex.quote(host.outline.install_url)
        hooks.pipeline(name, f"{name}:install", f'bash -c "$(wget -qO- {script})"')

    def rollback() -> None:
        hooks.docker(name, "remove", container)

    def stop() -> None:
        hooks.adapters.run("shell", f"{name}:stop", step=name, argv=["pkill", "-f", "install_server.sh"])

    return Step(
        name=name,
        check=lambda probe: probe.container_running(container),
        apply=apply,
        rollback=rollback,
        stop=stop,
        depends_on={"runtime-daemon-config"},
        idempotent=False,
        description=f"Install the Outline server ({container})",
    )


def _outline_cipher(host: HostSpec, hooks: Hooks) -> Step:
    name = "outline-cipher"
    config = f"{host.outline.state_dir.rstrip('/')}/shadowbox_config.json"
    cipher = host.outline.cipher

    def _current(text: str | None) -> dict:
        if not text:
            return {}
        try:
            document = json.loads(text)
        except json.JSONDecodeError:
            return {}
        return document if isinstance(document, dict) else {}

    def check(probe: StateProbe) -> bool:
        return _current(probe.read_text(config)).get("encryptionMethod") == cipher

    def apply() -> None:
        path = hooks.writer.host_path(config)
        if not path.is_file():
            raise StepApplyError(f"{name}: {config} does not exist; is the Outline server installed?")
        document = _current(path.read_text(encoding="utf-8"))
        if not document:
            raise StepApplyError(f"{name}: {config} is not a JSON object")
        document["encryptionMethod"] = cipher
        with hooks.transaction(config):
            hooks.writer.write(config, json.dumps(document, indent=2) + "\n", mode=0o600)
            hooks.docker(name, "restart", host.outline.container)

    def rollback() -> None:
        hooks.writer.restore(config)
        hooks.docker(name, "restart", host.outline.container)

    return Step(
        name=name, check=check, apply=apply, rollback=rollback,
        depends_on={"outline-server"},
        description=f"Switch Outline to {cipher} and restart it",
    )


def _v2ray_install(host: HostSpec, hooks: Hooks) -> Step:
    name = "v2ray-install"

    def apply() -> None:
        url = shlex.quote(host.proxy.install_url)
        hooks.pipeline(name, f"{name}:install", f"curl -fsSL {url} | bash")

    return Step(
        name=name,
        check=lambda probe: probe.file_exists(host.proxy.binary_path),
        apply=apply,
        depends_on={"base-packages"},
        description="Install the V2Ray binary and unit",
    )


def _v2ray_config(host: HostSpec, hooks: Hooks, probe: StateProbe, secrets: SecretProvisioner) -> Step:
    name = "v2ray-config"
    path = host.proxy.config_path
    kind = ArtifactKind.SERVICE_CONFIG

    def _existing_id() -> str | None:
        existing = probe.read_artifact(path, kind)
        return existing.client_id if isinstance(existing, ServiceConfig) else None

    def check(p: StateProbe) -> bool:
        client_id = _existing_id()
        if client_id is None:
            return False
        return p.artifact_matches(path, kind, service_config(host, client_id))

    def apply() -> None:
        credential = secrets.issue_or_reuse(name, _existing_id())
        with hooks.transaction(path):
            hooks.writer.write(path, render.render(kind, service_config(host, credential.value)))
            if probe.unit_active(host.proxy.unit):
                hooks.systemd(name, "restart", host.proxy.unit)

    def rollback() -> None:
        hooks.writer.restore(path)
        if probe.unit_active(host.proxy.unit):
            hooks.systemd(name, "restart", host.proxy.unit)

    return Step(
        name=name, check=check, apply=apply, rollback=rollback,
        depends_on={"v2ray-install"},
        description="Render the V2Ray config with a client id",
    )


def _v2ray_service(host: HostSpec, hooks: Hooks) -> Step:
    name = "v2ray-service"
    unit = host.proxy.unit

    def apply() -> None:
        hooks.systemd(name, "enable", unit)
        hooks.systemd(name, "start", unit)

    def rollback() -> None:
        hooks.systemd(name, "stop", unit)

    return Step(
        name=name,
        check=lambda probe: probe.unit_active(unit),
        apply=apply,
        rollback=rollback,
        depends_on={"v2ray-config"},
        description=f"Enable and start {unit}",
    )


def _reverse_proxy(host: HostSpec, hooks: Hooks) -> Step:
    name = "reverse-proxy"
    return Step(
        name=name,
        check=lambda probe: probe.packages_installed(["nginx"]),
        apply=lambda: hooks.apt(name, "install", ["nginx"]),
        depends_on={"base-packages"},
        description="Install nginx",
    )


def _reverse_proxy_vhost(host: HostSpec, hooks: Hooks) -> Step:
    name = "reverse-proxy-vhost"
    rp = host.reverse_proxy
    site = f"{rp.sites_available}/{rp.site_name}"
    enabled = f"{rp.sites_enabled}/{rp.site_name}"
    default_site = f"{rp.sites_enabled}/default"
    kind = ArtifactKind.REVERSE_PROXY_VHOST

    def check(probe: StateProbe) -> bool:
        paths = hooks.certificates.expected_paths(host.domain)
        desired = reverse_proxy_vhost(host, paths.cert_path, paths.key_path)
        if not (probe.artifact_matches(site, kind, desired) and probe.symlink_points_to(enabled, site)):
            return False
        return not (rp.disable_default_site and probe.host_path(default_site).exists())

    def apply() -> None:
        paths = hooks.certificates.paths_for(host.domain)
        artifact = render.render(kind, reverse_proxy_vhost(host, paths.cert_path, paths.key_path))
        with hooks.transaction(site, enabled, default_site):
            hooks.writer.write(site, artifact)
            hooks.writer.symlink(enabled, site)
            if rp.disable_default_site:
                hooks.writer.remove(default_site)
            hooks.shell(name, f"{name}:test", "nginx", "-t")
            hooks.systemd(name, "restart", "nginx")

    def rollback() -> None:
        for path in (default_site, enabled, site):
            hooks.writer.restore(path)
        hooks.systemd(name, "restart", "nginx")

    return Step(
        name=name, check=check, apply=apply, rollback=rollback,
        depends_on={"reverse-proxy", "v2ray-config"},
        description=f"Serve {host.proxy.ws_path} over TLS for {host.domain}",
    )


def _firewall(host: HostSpec, hooks: Hooks, probe: StateProbe) -> Step:
    name = "firewall"
    path = host.paths.firewall_rules_file
    kind = ArtifactKind.FIREWALL_RULES

    def check(p: StateProbe) -> bool:
        return p.firewall_active() and p.artifact_matches(path, kind, firewall_rules(host))

    def _enforce(rules: FirewallRuleSet, action: str) -> None:
        for i, cmd in enumerate(ufw_commands(rules)):
            hooks.shell(name, f"{name}:{action}:{i}", *cmd)
        hooks.shell(name, f"{name}:{action}:enable", "ufw", "--force", "enable")

    def apply() -> None:
        rules = firewall_rules(host)
        with hooks.transaction(path):
            hooks.writer.write(path, render.render(kind, rules))
            _enforce(rules, "apply")

    def rollback() -> None:
        hooks.writer.restore(path)
        previous = probe.read_artifact(path, kind)
        if not isinstance(previous, FirewallRuleSet):
            hooks.shell(name, f"{name}:disable", "ufw", "--force", "disable")
            return
        hooks.shell(name, f"{name}:reset", "ufw", "--force", "reset")
        _enforce(previous, "restore")

    return Step(
        name=name, check=check, apply=apply, rollback=rollback,
        depends_on={"base-packages"},
        description=f"Enforce {len(host.firewall_rules)} firewall rules",
    )


# ── Outline access key ──────────────────────────────────────────


def read_access_key(text: str | None) -> dict[str, str] | None:
    """The access-key record ``outline-access-key`` keeps, if it is intact."""
    if not text:
        return None
    try:
        record = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict):
        return None
    if not all(isinstance(record.get(k), str) and record[k] for k in ("id", "name", "password")):
        return None
    return record


def outline_api_url(text: str | None) -> str | None:
    """``apiUrl`` from the installer's ``key:value`` access file."""
    for line in (text or "").splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "apiUrl" and value.strip():
            return value.strip()
    return None


def _outline_access_key(host: HostSpec, hooks: Hooks, probe: StateProbe, secrets: SecretProvisioner) -> Step:
    name = "outline-access-key"
    outline = host.outline
    record_path = outline.access_keys_file
    created: list[tuple[str, str]] = []
    renamed: list[tuple[str, str, str]] = []

    def _call(action: str, method: str, url: str, payload: dict | None = None) -> None:
        # The management API serves a self-signed certificate
        argv = ["curl", "-fsS", "--insecure", "-X", method]
        if payload is not None:
            argv += ["-H", "Content-Type: application/json", "--data", json.dumps(payload)]
        hooks.shell(name, f"{name}:{action}", *argv, url, timeout=60)

    def _undo() -> None:
        while created:
            api, key_id = created.pop()
            _call("delete", "DELETE", f"{api}/access-keys/{key_id}")
        while renamed:
            api, key_id, old_name = renamed.pop()
            _call("rename-back", "PUT", f"{api}/access-keys/{key_id}/name", {"name": old_name})

    def check(p: StateProbe) -> bool:
        record = read_access_key(p.read_text(record_path))
        return record is not None and record["name"] == outline.access_key_name

    def apply() -> None:
        api = outline_api_url(probe.read_text(outline.access_file))
        if api is None:
            raise StepApplyError(
                f"{name}: no apiUrl in {outline.access_file}; is the Outline server installed?"
            )
        record = read_access_key(probe.read_text(record_path))
        if record is None:
            credential = secrets.issue(name, kind="access_key")
            _call("create", "PUT", f"{api}/access-keys/{credential.id}", {
                "name": outline.access_key_name,
                "method": outline.cipher,
                "password": credential.value,
            })
            created.append((api, credential.id))
        else:
            credential = secrets.issue_or_reuse(
                name, record["password"], kind="access_key", existing_id=record["id"],
            )
            _call("rename", "PUT", f"{api}/access-keys/{credential.id}/name", {"name": outline.access_key_name})
            renamed.append((api, credential.id, record["name"]))

        document = {
            "id": credential.id,
            "name": outline.access_key_name,
            "password": credential.value,
            "method": outline.cipher,
        }
        try:
            with hooks.transaction(record_path):
                hooks.writer.write(record_path, json.dumps(document, indent=2) + "\n", mode=0o600)
        except Exception:
            try:
                _undo()
            except StepApplyError as e:
                logger.warning("%s: could not undo the server-side key change: %s", name, e)
            raise

    def rollback() -> None:
        hooks.writer.restore(record_path)
        _undo()

    return Step(
        name=name, check=check, apply=apply, rollback=rollback,
        depends_on={"outline-cipher"},
        idempotent=False,
        description=f"Create the '{outline.access_key_name}' Outline access key",
    )


# ── Catalog ─────────────────────────────────────────────────────


def build_steps(
    host: HostSpec,
    hooks: Hooks,
    probe: StateProbe,
    secrets: SecretProvisioner,
) -> list[Step]:
    """All steps of a VPN host, in registration order.

    Steps listed in ``host.disabled_steps`` are left out; dependencies
    on them are dropped from the remaining steps.
    """
    p = host.paths
    steps = [
        _base_packages(host, hooks),
        _service_user(host, hooks),
        _container_runtime(host, hooks),
        _runtime_daemon_config(host, hooks),
        _outline_server(host, hooks),
        _outline_cipher(host, hooks),
        _outline_access_key(host, hooks, probe, secrets),
        _v2ray_install(host, hooks),
        _v2ray_config(host, hooks, probe, secrets),
        _v2ray_service(host, hooks),
        _reverse_proxy(host, hooks),
        _reverse_proxy_vhost(host, hooks),
        _firewall(host, hooks, probe),
        _file_step(
            "kernel-tuning", p.sysctl_file, ArtifactKind.KERNEL_PARAMS,
            lambda: kernel_params(host), hooks,
            reload_cmd=("sysctl", "--system"),
            description="Network stack tuning (BBR, fq, TCP fast open)",
        ),
        _file_step(
            "file-limits", p.limits_file, ArtifactKind.FILE_LIMITS,
            lambda: host.limits, hooks,
            description="Raise the open-file limit",
        ),
        _file_step(
            "dns-resolvers", p.resolv_conf, ArtifactKind.RESOLVER_CONFIG,
            lambda: host.resolver, hooks,
            description="Pin DNS resolvers",
        ),
        _file_step(
            "auto-upgrades", p.auto_upgrades_file, ArtifactKind.AUTO_UPGRADES,
            lambda: host.auto_upgrades, hooks,
            depends_on={"base-packages"},
            description="Enable unattended upgrades",
        ),
    ]

    disabled = set(host.disabled_steps)
    if not disabled:
        return steps

    unknown = disabled - {s.name for s in steps}
    if unknown:
        logger.warning("disabled_steps names unknown steps: %s", ", ".join(sorted(unknown)))
    kept = [s for s in steps if s.name not in disabled]
    for step in kept:
        dropped = step.depends_on & disabled
        if dropped:
            logger.info("%s: ignoring disabled dependencies %s", step.name, ", ".join(sorted(dropped)))
            step.depends_on -= dropped
    return kept
