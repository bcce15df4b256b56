"""
APT adapter — the package-install hook.

Refreshes package lists, installs and queries Debian packages. Installs run
non-interactively; queries go through dpkg-query so they never take
the apt lock.
"""

from __future__ import annotations

import re

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.adapters.shell.command import run_subprocess
from provisioner.core.models.action import Receipt

_PACKAGE_NAME = re.compile(r"^[a-z0-9][a-z0-9+.\-]+$")
_NONINTERACTIVE = {"DEBIAN_FRONTEND": "noninteractive"}


class AptAdapter(Adapter):
    """Debian/Ubuntu package operations.

    Action params:
        operation (str): One of 'update', 'install', 'query'.
        packages (list[str]): Package names (install, query).
        timeout (int): Timeout in seconds (default: 900).
    """

    tool = "apt-get"
    operations = frozenset({"install", "query", "update"})

    @property
    def name(self) -> str:
        return "apt"

    def check_params(self, context: ExecutionContext) -> tuple[bool, str]:
        packages = context.param("packages", [])
        if context.operation in ("install", "query"):
            if not packages:
                return False, "Missing required param: 'packages'"
            bad = [p for p in packages if not _PACKAGE_NAME.match(p)]
            if bad:
                return False, f"Invalid package name(s): {', '.join(bad)}"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        operation = context.param("operation")
        packages: list[str] = context.param("packages", [])
        timeout = context.param("timeout", 900)
        action_id = context.action.id

        if operation == "query":
            return self._query(action_id, packages)
        if operation == "install":
            cmd = ["apt-get", "install", "-y", "--no-install-recommends", *packages]
        else:
            cmd = ["apt-get", "update"]

        return run_subprocess(
            self.name, action_id, cmd, timeout=timeout, env_overrides=_NONINTERACTIVE,
        )

    def _query(self, action_id: str, packages: list[str]) -> Receipt:
        """Report which packages are installed.

        The receipt succeeds when dpkg-query itself ran; the answer is in
        ``metadata['installed']`` / ``metadata['missing']``.
        """
        receipt = run_subprocess(
            self.name,
            action_id,
            ["dpkg-query", "-W", "-f=${Package} ${Status}\\n", *packages],
            timeout=30,
        )
        stdout = receipt.metadata.get("stdout", receipt.output)
        rc = receipt.metadata.get("return_code")
        # dpkg-query exits 1 when some packages are unknown; that is an answer, not an error
        if receipt.failed and rc != 1:
            return receipt

        installed = set()
        for line in stdout.splitlines():
            parts = line.split()
            if len(parts) >= 4 and parts[-1] == "installed" and parts[-2] == "ok":
                installed.add(parts[0].split(":")[0])
        missing = [p for p in packages if p not in installed]
        return Receipt.success(
            adapter=self.name,
            action_id=action_id,
            output=" ".join(sorted(installed)),
            metadata={"installed": sorted(installed), "missing": missing},
        )
