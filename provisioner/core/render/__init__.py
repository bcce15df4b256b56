"""
ConfigRenderer — typed structs in, config file text out, and back.

``render(kind, struct)`` is pure: same struct, same bytes. ``parse(kind,
text)`` reverses it, so a probe can tell whether the file on disk says
what the struct says without comparing whitespace.

Constraint violations (a port out of range, an upstream without a port,
an unparsable file) are raised as InvalidConfigError.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from provisioner.core.errors import InvalidConfigError
from provisioner.core.models.artifact import (
    ArtifactKind,
    AutoUpgrades,
    ConfigArtifact,
    DaemonConfig,
    FileLimits,
    FirewallRuleSet,
    KernelParams,
    ResolverConfig,
    ReverseProxyVHost,
    ServiceConfig,
)
from provisioner.core.render.firewall import parse_firewall, render_firewall
from provisioner.core.render.nginx import parse_vhost, render_vhost
from provisioner.core.render.service import parse_service, render_service
from provisioner.core.render.sysctl import parse_sysctl, render_sysctl
from provisioner.core.render.system import (
    parse_auto_upgrades,
    parse_daemon,
    parse_limits,
    parse_resolver,
    render_auto_upgrades,
    render_daemon,
    render_limits,
    render_resolver,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Format:
    model: type[BaseModel]
    render: Callable[[Any], str]
    parse: Callable[[str], BaseModel]


_FORMATS: dict[ArtifactKind, _Format] = {
    ArtifactKind.FIREWALL_RULES: _Format(FirewallRuleSet, render_firewall, parse_firewall),
    ArtifactKind.REVERSE_PROXY_VHOST: _Format(ReverseProxyVHost, render_vhost, parse_vhost),
    ArtifactKind.SERVICE_CONFIG: _Format(ServiceConfig, render_service, parse_service),
    ArtifactKind.KERNEL_PARAMS: _Format(KernelParams, render_sysctl, parse_sysctl),
    ArtifactKind.DAEMON_CONFIG: _Format(DaemonConfig, render_daemon, parse_daemon),
    ArtifactKind.RESOLVER_CONFIG: _Format(ResolverConfig, render_resolver, parse_resolver),
    ArtifactKind.FILE_LIMITS: _Format(FileLimits, render_limits, parse_limits),
    ArtifactKind.AUTO_UPGRADES: _Format(AutoUpgrades, render_auto_upgrades, parse_auto_upgrades),
}


def _format_for(kind: ArtifactKind | str) -> tuple[ArtifactKind, _Format]:
    try:
        kind = ArtifactKind(kind)
    except ValueError as e:
        raise InvalidConfigError(f"Unknown artifact kind: {kind!r}") from e
    return kind, _FORMATS[kind]


def coerce(kind: ArtifactKind | str, struct: BaseModel | Mapping[str, Any]) -> BaseModel:
    """Validate ``struct`` as the model of ``kind``.

    Model instances are re-validated, since pydantic does not re-run
    validators on attribute assignment.
    """
    kind, fmt = _format_for(kind)
    if isinstance(struct, BaseModel):
        if not isinstance(struct, fmt.model):
            raise InvalidConfigError(
                f"{kind} expects {fmt.model.__name__}, got {type(struct).__name__}"
            )
        data: Any = struct.model_dump()
    else:
        data = dict(struct)
    try:
        return fmt.model.model_validate(data)
    except ValidationError as e:
        raise InvalidConfigError(f"Invalid {kind}: {_summarize(e)}") from e


def render(kind: ArtifactKind | str, struct: BaseModel | Mapping[str, Any]) -> ConfigArtifact:
    """Render ``struct`` to its file text.

    Raises:
        InvalidConfigError: The struct violates a constraint of its kind.
    """
    kind, fmt = _format_for(kind)
    source = coerce(kind, struct)
    text = fmt.render(source)
    logger.debug("Rendered %s (%d bytes)", kind, len(text))
    return ConfigArtifact(kind=kind, source=source, rendered_text=text)


def parse(kind: ArtifactKind | str, text: str) -> BaseModel:
    """Parse file text back into the struct of ``kind``.

    Raises:
        InvalidConfigError: The text is not a valid artifact of ``kind``.
    """
    kind, fmt = _format_for(kind)
    try:
        return fmt.parse(text)
    except ValidationError as e:
        raise InvalidConfigError(f"Invalid {kind}: {_summarize(e)}") from e


def matches(kind: ArtifactKind | str, text: str, struct: BaseModel | Mapping[str, Any]) -> bool:
    """Whether ``text`` parses to a struct equal to ``struct``.

    Unparsable text is simply "does not match".
    """
    desired = coerce(kind, struct)
    try:
        actual = parse(kind, text)
    except InvalidConfigError as e:
        logger.debug("Existing %s does not parse: %s", kind, e)
        return False
    return actual.model_dump() == desired.model_dump()


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "value"
        parts.append(f"{loc}: {item.get('msg', '')}")
    return "; ".join(parts)


__all__ = ["coerce", "matches", "parse", "render"]
