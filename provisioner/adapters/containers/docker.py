"""
Docker adapter — the container lifecycle hook.

Uses the docker CLI, never the Docker API directly. ``inspect`` reports
whether a container is running; a daemon that cannot be reached is
reported in ``metadata['daemon_unreachable']`` so probes can tell
"container not running" apart from "cannot ask".
"""

from __future__ import annotations

import json

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.adapters.shell.command import run_subprocess
from provisioner.core.models.action import Receipt

_UNREACHABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "permission denied while trying to connect",
)


class DockerAdapter(Adapter):
    """Container operations.

    Action params:
        operation (str): One of 'inspect', 'start', 'stop', 'restart', 'remove', 'version'.
        container (str): Target container name.
        timeout (int): Timeout in seconds (default: 120).
    """

    tool = "docker"
    operations = frozenset({"inspect", "start", "stop", "restart", "remove", "version"})

    @property
    def name(self) -> str:
        return "docker"

    def check_params(self, context: ExecutionContext) -> tuple[bool, str]:
        if context.operation != "version" and not context.param("container"):
            return False, "Missing required param: 'container'"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        operation = context.param("operation")
        container = context.param("container", "")
        timeout = context.param("timeout", 120)
        action_id = context.action.id

        if operation == "inspect":
            return self._inspect(action_id, container)
        if operation == "version":
            cmd = ["docker", "version", "--format", "{{.Server.Version}}"]
        elif operation == "remove":
            cmd = ["docker", "rm", "-f", container]
        else:
            cmd = ["docker", operation, container]

        receipt = run_subprocess(self.name, action_id, cmd, timeout=timeout)
        if receipt.failed and _is_unreachable(receipt.error or ""):
            receipt.metadata["daemon_unreachable"] = True
        return receipt

    def _inspect(self, action_id: str, container: str) -> Receipt:
        receipt = run_subprocess(
            self.name,
            action_id,
            ["docker", "inspect", "--format", "{{json .State}}", container],
            timeout=30,
        )
        if receipt.failed:
            error = receipt.error or ""
            if _is_unreachable(error):
                receipt.metadata["daemon_unreachable"] = True
                return receipt
            if "no such object" in error.lower() or "no such container" in error.lower():
                return Receipt.success(
                    adapter=self.name,
                    action_id=action_id,
                    output="absent",
                    metadata={"exists": False, "running": False},
                )
            return receipt

        try:
            state = json.loads(receipt.output or "{}")
        except json.JSONDecodeError:
            return Receipt.failure(
                adapter=self.name,
                action_id=action_id,
                error=f"Unparseable docker inspect output: {receipt.output[:200]}",
            )
        running = bool(state.get("Running"))
        return Receipt.success(
            adapter=self.name,
            action_id=action_id,
            output=state.get("Status", ""),
            metadata={"exists": True, "running": running, "state": state},
        )


def _is_unreachable(error: str) -> bool:
    lowered = error.lower()
    return any(marker in lowered for marker in _UNREACHABLE_MARKERS)
