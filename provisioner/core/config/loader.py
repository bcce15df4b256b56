"""
Configuration loader — reads host.yml into a HostSpec.

Reads YAML, validates against the pydantic models and returns a typed
HostSpec. Every failure becomes a ConfigError, which the CLI maps to
exit code 2.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from provisioner.core.errors import ConfigError
from provisioner.core.models.host import HostSpec

logger = logging.getLogger(__name__)

HOST_CONFIG_FILE = "host.yml"


def find_host_file(start_dir: Path | None = None) -> Path | None:
    """Search for host.yml starting from ``start_dir`` (default: cwd), walking up."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / HOST_CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_host(path: Path | None = None) -> HostSpec:
    """Load and validate the host description.

    Args:
        path: Explicit path to host.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    if path is None:
        path = find_host_file()

    if path is None:
        raise ConfigError(
            f"No {HOST_CONFIG_FILE} found. Create one, or specify --config."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading host config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # Either flat, or wrapped under a "host" key
    host_data = data["host"] if isinstance(data.get("host"), dict) else data

    try:
        host = HostSpec.model_validate(host_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid host configuration: {e}") from e

    logger.info("Loaded host '%s' (%s)", host.name, host.domain)
    return host


def state_dir_for(config_path: Path) -> Path:
    """The .state directory next to the host file."""
    return config_path.parent.resolve() / ".state"
