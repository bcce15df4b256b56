"""
Artifact models — typed config structs and the rendered artifact.

Every config file the orchestrator writes is generated from one of
these structs by the renderer and parsed back into the same struct
for verification. Constraint violations surface as pydantic
validation errors, which the renderer translates to
InvalidConfigError.
"""

from __future__ import annotations

import ipaddress
import re
import uuid
from enum import StrEnum
from typing import Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator, model_validator


class ArtifactKind(StrEnum):
    """Kinds of artifacts the renderer can emit and re-parse."""

    FIREWALL_RULES = "firewall_rules"
    REVERSE_PROXY_VHOST = "reverse_proxy_vhost"
    SERVICE_CONFIG = "service_config"
    KERNEL_PARAMS = "kernel_params"
    DAEMON_CONFIG = "daemon_config"
    RESOLVER_CONFIG = "resolver_config"
    FILE_LIMITS = "file_limits"
    AUTO_UPGRADES = "auto_upgrades"


# ── Firewall ─────────────────────────────────────────────────────────


class FirewallRule(BaseModel):
    """One firewall rule: ``allow in 443/tcp``."""

    port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"
    direction: Literal["in", "out"] = "in"
    action: Literal["allow", "deny"] = "allow"

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.protocol}"


class FirewallRuleSet(BaseModel):
    """Ordered rule list plus default policies."""

    default_incoming: Literal["allow", "deny"] = "deny"
    default_outgoing: Literal["allow", "deny"] = "allow"
    rules: list[FirewallRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _no_duplicates(self) -> FirewallRuleSet:
        seen: set[tuple[int, str, str]] = set()
        for rule in self.rules:
            key = (rule.port, rule.protocol, rule.direction)
            if key in seen:
                raise ValueError(
                    f"duplicate firewall rule for {rule.direction} {rule.spec}"
                )
            seen.add(key)
        return self


# ── Reverse proxy ────────────────────────────────────────────────────

# Characters nginx treats as syntax inside a directive argument
_NGINX_UNSAFE = re.compile(r"[\s;{}#'\"\\]")


class ReverseProxyVHost(BaseModel):
    """A TLS virtual host forwarding one path to a local upstream."""

    listen_port: int = Field(default=443, ge=1, le=65535)
    server_name: str = "_"
    tls_cert_path: str
    tls_key_path: str
    upstream_path: str
    upstream_url: str
    websocket_upgrade: bool = True

    @field_validator("server_name", "tls_cert_path", "tls_key_path", "upstream_path", "upstream_url")
    @classmethod
    def _no_directive_injection(cls, value: str) -> str:
        if not value or _NGINX_UNSAFE.search(value):
            raise ValueError(f"invalid value {value!r}")
        return value

    @field_validator("upstream_path")
    @classmethod
    def _path_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"upstream_path must be an absolute URL path, got {value!r}")
        return value

    @field_validator("upstream_url")
    @classmethod
    def _upstream_has_port(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"upstream_url must be http(s)://host:port, got {value!r}")
        try:
            port = parts.port
        except ValueError as e:
            raise ValueError(f"upstream_url has an invalid port: {value!r}") from e
        if port is None:
            raise ValueError(f"upstream_url is missing the upstream port: {value!r}")
        return value

    @property
    def upstream_port(self) -> int:
        port = urlsplit(self.upstream_url).port
        assert port is not None  # guaranteed by validator
        return port


# ── Proxy service config ─────────────────────────────────────────────


class Transport(BaseModel):
    """Stream transport of the proxy inbound."""

    type: Literal["ws", "tcp", "grpc", "http"] = "ws"
    path: str = ""

    @model_validator(mode="after")
    def _path_for_ws(self) -> Transport:
        if self.type in ("ws", "http") and not self.path.startswith("/"):
            raise ValueError(f"{self.type} transport needs an absolute path")
        if self.type == "tcp" and self.path:
            raise ValueError("tcp transport takes no path")
        return self


class ServiceConfig(BaseModel):
    """Proxy credential file: one client on one inbound port."""

    client_id: str
    transport: Transport = Field(default_factory=Transport)
    listen_port: int = Field(default=10086, ge=1, le=65535)

    @field_validator("client_id")
    @classmethod
    def _is_uuid(cls, value: str) -> str:
        try:
            return str(uuid.UUID(value))
        except (ValueError, AttributeError, TypeError) as e:
            raise ValueError(f"client_id must be a UUID, got {value!r}") from e


# ── Kernel & system ──────────────────────────────────────────────────

_SYSCTL_KEY = re.compile(r"[a-z0-9_\-]+(\.[a-z0-9_\-/]+)+")


class KernelParams(BaseModel):
    """sysctl parameter name → value."""

    params: dict[str, str] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(k): " ".join(str(v).split()) for k, v in value.items()}
        return value

    @field_validator("params")
    @classmethod
    def _valid_entries(cls, value: dict[str, str]) -> dict[str, str]:
        for key, val in value.items():
            if not _SYSCTL_KEY.fullmatch(key):
                raise ValueError(f"invalid kernel parameter name {key!r}")
            if not val:
                raise ValueError(f"kernel parameter {key!r} has an empty value")
        return value


class DaemonConfig(BaseModel):
    """Container runtime daemon settings (daemon.json)."""

    mtu: int = Field(default=1500, ge=576, le=9216)
    max_concurrent_downloads: int = Field(default=10, ge=1)
    max_concurrent_uploads: int = Field(default=10, ge=1)


class ResolverConfig(BaseModel):
    """Nameservers written to resolv.conf, in order."""

    nameservers: list[str] = Field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"])

    @field_validator("nameservers")
    @classmethod
    def _valid_ips(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one nameserver is required")
        return [str(ipaddress.ip_address(ns)) for ns in value]


_LIMITS_DOMAIN = re.compile(r"[^\s#]\S*")


class FileLimits(BaseModel):
    """Open-file limits for a limits.conf domain."""

    domain: str = "*"
    soft_nofile: int = Field(default=51200, ge=1)
    hard_nofile: int = Field(default=51200, ge=1)

    @field_validator("domain")
    @classmethod
    def _single_token(cls, value: str) -> str:
        if not _LIMITS_DOMAIN.fullmatch(value):
            raise ValueError(f"limits domain must be one word not starting with '#', got {value!r}")
        return value

    @model_validator(mode="after")
    def _soft_below_hard(self) -> FileLimits:
        if self.soft_nofile > self.hard_nofile:
            raise ValueError("soft nofile limit exceeds hard limit")
        return self


class AutoUpgrades(BaseModel):
    """APT periodic settings for unattended upgrades."""

    update_package_lists: int = Field(default=1, ge=0)
    unattended_upgrade: int = Field(default=1, ge=0)


# ── Artifact ─────────────────────────────────────────────────────────


class ConfigArtifact(BaseModel):
    """A rendered config file plus the struct it was rendered from.

    Immutable: re-render from a new struct instead of editing the text.
    """

    model_config = ConfigDict(frozen=True)

    kind: ArtifactKind
    source: SerializeAsAny[BaseModel]
    rendered_text: str
