"""
Small system files: daemon.json, resolv.conf, limits.d, APT periodic.
"""

from __future__ import annotations

import json
import re

from provisioner.core.errors import InvalidConfigError
from provisioner.core.models.artifact import (
    AutoUpgrades,
    DaemonConfig,
    FileLimits,
    ResolverConfig,
)
from provisioner.core.render.common import MANAGED_HEADER, content_lines

# ── Container runtime daemon ────────────────────────────────────

_DAEMON_KEYS = {
    "mtu": "mtu",
    "max_concurrent_downloads": "max-concurrent-downloads",
    "max_concurrent_uploads": "max-concurrent-uploads",
}


def render_daemon(config: DaemonConfig) -> str:
    document = {json_key: getattr(config, attr) for attr, json_key in _DAEMON_KEYS.items()}
    return json.dumps(document, indent=2) + "\n"


def parse_daemon(text: str) -> DaemonConfig:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"daemon.json: {e}") from e
    if not isinstance(document, dict):
        raise InvalidConfigError("daemon.json: expected a JSON object")
    return DaemonConfig(**{
        attr: document[json_key]
        for attr, json_key in _DAEMON_KEYS.items()
        if json_key in document
    })


# ── Resolver ────────────────────────────────────────────────────


def render_resolver(config: ResolverConfig) -> str:
    lines = [MANAGED_HEADER]
    lines.extend(f"nameserver {ns}" for ns in config.nameservers)
    return "\n".join(lines) + "\n"


def parse_resolver(text: str) -> ResolverConfig:
    nameservers = []
    for _, line in content_lines(text):
        parts = line.split()
        if parts[0] == "nameserver" and len(parts) == 2:
            nameservers.append(parts[1])
    return ResolverConfig(nameservers=nameservers)


# ── File limits ─────────────────────────────────────────────────

_LIMIT = re.compile(r"^(\S+)\s+(soft|hard)\s+nofile\s+(\d+)$")


def render_limits(limits: FileLimits) -> str:
    return "\n".join([
        MANAGED_HEADER,
        f"{limits.domain} soft nofile {limits.soft_nofile}",
        f"{limits.domain} hard nofile {limits.hard_nofile}",
    ]) + "\n"


def parse_limits(text: str) -> FileLimits:
    found: dict[str, int] = {}
    domain = None
    for lineno, line in content_lines(text):
        m = _LIMIT.match(line)
        if not m:
            raise InvalidConfigError(f"limits line {lineno}: cannot parse {line!r}")
        if domain is not None and m.group(1) != domain:
            raise InvalidConfigError("limits: more than one domain")
        domain = m.group(1)
        found[f"{m.group(2)}_nofile"] = int(m.group(3))
    if len(found) != 2 or domain is None:
        raise InvalidConfigError("limits: expected one soft and one hard nofile entry")
    return FileLimits(domain=domain, **found)


# ── APT periodic ────────────────────────────────────────────────

_PERIODIC = re.compile(r'^APT::Periodic::([A-Za-z\-]+)\s+"(\d+)";$')
_PERIODIC_KEYS = {
    "update_package_lists": "Update-Package-Lists",
    "unattended_upgrade": "Unattended-Upgrade",
}


def render_auto_upgrades(config: AutoUpgrades) -> str:
    return "\n".join(
        f'APT::Periodic::{apt_key} "{getattr(config, attr)}";'
        for attr, apt_key in _PERIODIC_KEYS.items()
    ) + "\n"


def parse_auto_upgrades(text: str) -> AutoUpgrades:
    by_apt_key = {v: k for k, v in _PERIODIC_KEYS.items()}
    values: dict[str, int] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("//"):
            continue
        m = _PERIODIC.match(line)
        if not m or m.group(1) not in by_apt_key:
            raise InvalidConfigError(f"auto-upgrades: cannot parse {line!r}")
        values[by_apt_key[m.group(1)]] = int(m.group(2))
    return AutoUpgrades(**values)
