"""
Host model — the declarative description of a provisioned host.

Loaded from host.yml. Every fixed path, port and package list that a
shell script would hard-code lives here and is passed explicitly to
the steps that need it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from provisioner.core.models.artifact import (
    AutoUpgrades,
    DaemonConfig,
    FileLimits,
    FirewallRule,
    ResolverConfig,
)

DEFAULT_PACKAGES = [
    "curl", "wget", "jq", "ufw", "net-tools", "htop",
    "tcpdump", "iftop", "iotop", "fail2ban", "unattended-upgrades",
]

DEFAULT_KERNEL_PARAMS = {
    "net.ipv4.tcp_fastopen": "3",
    "net.core.default_qdisc": "fq",
    "net.ipv4.tcp_congestion_control": "bbr",
    "net.ipv4.tcp_slow_start_after_idle": "0",
    "net.ipv4.tcp_mtu_probing": "1",
    "net.ipv4.tcp_syncookies": "1",
    "net.ipv4.tcp_tw_reuse": "1",
    "net.ipv4.ip_local_port_range": "1024 65000",
    "net.ipv4.tcp_max_syn_backlog": "8192",
    "net.ipv4.tcp_max_tw_buckets": "5000",
}


def _default_firewall_rules() -> list[FirewallRule]:
    return [
        FirewallRule(port=22, protocol="tcp"),
        FirewallRule(port=80, protocol="tcp"),
        FirewallRule(port=443, protocol="tcp"),
        FirewallRule(port=10086, protocol="tcp"),
        FirewallRule(port=20923, protocol="tcp"),
        FirewallRule(port=35026, protocol="tcp"),
        FirewallRule(port=35026, protocol="udp"),
    ]


class ProxySettings(BaseModel):
    """The VMess-style proxy behind the reverse proxy."""

    listen_port: int = Field(default=10086, ge=1, le=65535)
    ws_path: str = "/v2ray"
    config_path: str = "/usr/local/etc/v2ray/config.json"
    binary_path: str = "/usr/local/bin/v2ray"
    unit: str = "v2ray"
    install_url: str = (
        "https://raw.githubusercontent.com/v2fly/fhs-install-v2ray/master/install-release.sh"
    )


class OutlineSettings(BaseModel):
    """The Outline (Shadowbox) container."""

    container: str = "outline-shadowbox"
    state_dir: str = "/opt/outline/persisted-state"
    cipher: str = "aes-256-gcm"
    user: str = "outline"
    # Written by the Outline installer; holds the management apiUrl
    access_file: str = "/opt/outline/access.txt"
    # Access key created for operators, and where its record is kept
    access_key_name: str = "provision"
    access_keys_file: str = "/opt/outline/access_keys.json"
    install_url: str = (
        "https://raw.githubusercontent.com/Jigsaw-Code/outline-server/master/"
        "src/server_manager/install_scripts/install_server.sh"
    )


class ReverseProxySettings(BaseModel):
    """nginx site serving the proxy over TLS."""

    site_name: str = "v2ray"
    listen_port: int = Field(default=443, ge=1, le=65535)
    sites_available: str = "/etc/nginx/sites-available"
    sites_enabled: str = "/etc/nginx/sites-enabled"
    disable_default_site: bool = True


class Paths(BaseModel):
    """System files written by the catalog."""

    sysctl_file: str = "/etc/sysctl.d/99-provision.conf"
    limits_file: str = "/etc/security/limits.d/99-provision.conf"
    resolv_conf: str = "/etc/resolv.conf"
    auto_upgrades_file: str = "/etc/apt/apt.conf.d/20auto-upgrades"
    docker_daemon_file: str = "/etc/docker/daemon.json"
    firewall_rules_file: str = "/etc/provision/firewall.rules"
    sudoers_dir: str = "/etc/sudoers.d"
    cert_root: str = "/etc/letsencrypt/live"


class HostSpec(BaseModel):
    """Root host description — loaded from host.yml."""

    version: int = 1

    name: str
    domain: str
    description: str = ""

    packages: list[str] = Field(default_factory=lambda: list(DEFAULT_PACKAGES))
    kernel_params: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_KERNEL_PARAMS))
    firewall_rules: list[FirewallRule] = Field(default_factory=_default_firewall_rules)
    default_incoming: Literal["allow", "deny"] = "deny"
    default_outgoing: Literal["allow", "deny"] = "allow"

    proxy: ProxySettings = Field(default_factory=ProxySettings)
    outline: OutlineSettings = Field(default_factory=OutlineSettings)
    reverse_proxy: ReverseProxySettings = Field(default_factory=ReverseProxySettings)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    limits: FileLimits = Field(default_factory=FileLimits)
    auto_upgrades: AutoUpgrades = Field(default_factory=AutoUpgrades)
    paths: Paths = Field(default_factory=Paths)

    docker_install_url: str = "https://get.docker.com"
    docker_users: list[str] = Field(default_factory=lambda: ["root"])

    # Steps to leave out of the plan entirely (by name).
    disabled_steps: list[str] = Field(default_factory=list)
