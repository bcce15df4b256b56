"""
Systemd adapter — the service lifecycle hook.

``is-active`` answers with a successful receipt either way; the unit's
state is in ``metadata['active']``. Only a failure to run systemctl at
all is reported as a failed receipt.
"""

from __future__ import annotations

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.adapters.shell.command import run_subprocess
from provisioner.core.models.action import Receipt


class SystemdAdapter(Adapter):
    """systemctl operations.

    Action params:
        operation (str): One of 'is-active', 'start', 'stop', 'restart',
                         'reload', 'enable', 'disable', 'daemon-reload'.
        unit (str): Unit name (not needed for daemon-reload).
        now (bool): Pass --now to enable/disable.
    """

    tool = "systemctl"
    operations = frozenset({
        "is-active", "start", "stop", "restart", "reload",
        "enable", "disable", "daemon-reload",
    })

    @property
    def name(self) -> str:
        return "systemd"

    def check_params(self, context: ExecutionContext) -> tuple[bool, str]:
        if context.operation != "daemon-reload" and not context.param("unit"):
            return False, "Missing required param: 'unit'"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        operation = context.param("operation")
        unit = context.param("unit", "")
        action_id = context.action.id

        if operation == "is-active":
            receipt = run_subprocess(
                self.name, action_id, ["systemctl", "is-active", unit], timeout=15,
            )
            rc = receipt.metadata.get("return_code")
            if rc is None:
                return receipt
            state = receipt.metadata.get("stdout", "") or "unknown"
            return Receipt.success(
                adapter=self.name,
                action_id=action_id,
                output=state,
                metadata={"active": rc == 0, "state": state},
            )

        cmd = ["systemctl", operation]
        if operation in ("enable", "disable") and context.param("now"):
            cmd.append("--now")
        if unit:
            cmd.append(unit)
        return run_subprocess(self.name, action_id, cmd, timeout=context.param("timeout", 120))
