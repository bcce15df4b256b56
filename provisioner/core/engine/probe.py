"""
StateProbe — read-only queries against the live host.

Steps decide whether they are satisfied by asking the probe. The probe
never mutates anything and remembers nothing between calls: every
answer comes from the host as it is right now.

Two kinds of "no" are kept apart. A query that ran and said no returns
False ("not satisfied yet"). A query that could not run at all (daemon
down, permission denied) raises ProbeUnavailableError, which aborts
the plan instead of blindly re-applying.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from provisioner.adapters.registry import AdapterRegistry
from provisioner.core import render
from provisioner.core.errors import InvalidConfigError, ProbeUnavailableError
from provisioner.core.models.action import Receipt
from provisioner.core.models.artifact import ArtifactKind
from provisioner.core.models.step import Step

logger = logging.getLogger(__name__)


class StateProbe:
    """Queries live host state through the adapter registry and the filesystem.

    Args:
        adapters: Registry used for package, container, unit and shell queries.
        root: Filesystem root prefix. ``None`` means the real root.
        which: Lookup for executables on PATH (injectable for tests).
    """

    def __init__(
        self,
        adapters: AdapterRegistry,
        root: Path | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ):
        self._adapters = adapters
        self.root = root
        self._which = which

    # ── Step entry point ────────────────────────────────────────

    def check(self, step: Step) -> bool:
        """Whether ``step`` is already satisfied.

        A step without a check is never satisfied.

        Raises:
            ProbeUnavailableError: The state could not be queried.
        """
        if step.check is None:
            return False
        try:
            return bool(step.check(self))
        except ProbeUnavailableError:
            raise
        except PermissionError as e:
            raise ProbeUnavailableError(f"{step.name}: permission denied reading {e.filename}") from e
        except Exception as e:
            raise ProbeUnavailableError(f"{step.name}: check failed: {e}") from e

    # ── Filesystem ──────────────────────────────────────────────

    def host_path(self, path: str) -> Path:
        if self.root is None:
            return Path(path)
        return self.root / path.lstrip("/")

    def file_exists(self, path: str) -> bool:
        return self.host_path(path).is_file()

    def read_text(self, path: str) -> str | None:
        """File contents, or None when the file does not exist."""
        try:
            return self.host_path(path).read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None
        except PermissionError as e:
            raise ProbeUnavailableError(f"Permission denied reading {path}") from e
        except UnicodeDecodeError:
            logger.debug("%s is not valid UTF-8", path)
            return ""

    def artifact_matches(
        self,
        path: str,
        kind: ArtifactKind,
        struct: BaseModel | Mapping[str, Any],
    ) -> bool:
        """Whether the file at ``path`` structurally equals ``struct``."""
        text = self.read_text(path)
        if text is None:
            return False
        return render.matches(kind, text, struct)

    def read_artifact(self, path: str, kind: ArtifactKind) -> BaseModel | None:
        """Parse the artifact at ``path``. Missing or unparsable → None."""
        text = self.read_text(path)
        if text is None:
            return None
        try:
            return render.parse(kind, text)
        except InvalidConfigError as e:
            logger.debug("Existing %s at %s does not parse: %s", kind, path, e)
            return None

    def symlink_points_to(self, link: str, target: str) -> bool:
        link_path = self.host_path(link)
        if not link_path.is_symlink():
            return False
        return os.readlink(link_path) == str(self.host_path(target))

    # ── Executables & packages ──────────────────────────────────

    def command_exists(self, name: str) -> bool:
        return self._which(name) is not None

    def packages_installed(self, packages: list[str]) -> bool:
        receipt = self._query("apt", "probe:packages", operation="query", packages=packages)
        missing = receipt.metadata.get("missing", packages)
        if missing:
            logger.debug("Packages not installed: %s", ", ".join(missing))
        return not missing

    # ── Services ────────────────────────────────────────────────

    def container_running(self, container: str) -> bool:
        """Whether ``container`` runs. No docker binary means "not yet"."""
        if not self.command_exists("docker"):
            return False
        receipt = self._query("docker", "probe:container", operation="inspect", container=container)
        return bool(receipt.metadata.get("running", False))

    def unit_active(self, unit: str) -> bool:
        receipt = self._query("systemd", "probe:unit", operation="is-active", unit=unit)
        return bool(receipt.metadata.get("active", False))

    def firewall_active(self) -> bool:
        if not self.command_exists("ufw"):
            return False
        receipt = self._query("shell", "probe:firewall", argv=["ufw", "status"])
        return "status: active" in receipt.output.lower()

    # ── Users ───────────────────────────────────────────────────

    def user_exists(self, user: str) -> bool:
        receipt = self._adapters.run("shell", "probe:user", argv=["id", "-u", user], timeout=10)
        rc = receipt.metadata.get("return_code")
        if receipt.failed and rc == 1:
            return False
        self._require(receipt)
        return receipt.output.strip().isdigit()

    def user_in_group(self, user: str, group: str) -> bool:
        receipt = self._adapters.run("shell", "probe:groups", argv=["id", "-nG", user], timeout=10)
        if receipt.failed and receipt.metadata.get("return_code") == 1:
            return False
        self._require(receipt)
        return group in receipt.output.split()

    # ── Internals ───────────────────────────────────────────────

    def _query(self, adapter: str, action_id: str, **params: Any) -> Receipt:
        return self._require(self._adapters.run(adapter, action_id, **params))

    @staticmethod
    def _require(receipt: Receipt) -> Receipt:
        if receipt.failed:
            raise ProbeUnavailableError(
                f"{receipt.adapter} query '{receipt.action_id}' failed: {receipt.error}"
            )
        return receipt
