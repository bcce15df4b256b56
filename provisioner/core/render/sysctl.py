"""Kernel parameters ⇄ sysctl.d drop-in (``name = value`` lines)."""

from __future__ import annotations

from provisioner.core.errors import InvalidConfigError
from provisioner.core.models.artifact import KernelParams
from provisioner.core.render.common import MANAGED_HEADER, content_lines


def render_sysctl(params: KernelParams) -> str:
    lines = [MANAGED_HEADER]
    lines.extend(f"{name} = {value}" for name, value in params.params.items())
    return "\n".join(lines) + "\n"


def parse_sysctl(text: str) -> KernelParams:
    params: dict[str, str] = {}
    for lineno, line in content_lines(text):
        name, sep, value = line.partition("=")
        if not sep:
            raise InvalidConfigError(f"sysctl line {lineno}: missing '=' in {line!r}")
        params[name.strip()] = value.strip()
    return KernelParams(params=params)
