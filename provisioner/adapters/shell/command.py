"""
Shell command adapter — run a host command and capture its output.

Every other host adapter is built on this pattern: one subprocess
call, output captured, return code mapped onto a Receipt.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from typing import Any

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.core.models.action import Receipt

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000


def run_subprocess(
    adapter: str,
    action_id: str,
    cmd: list[str] | str,
    *,
    shell: bool = False,
    timeout: float = 300,
    input_text: str | None = None,
    env_overrides: dict[str, str] | None = None,
) -> Receipt:
    """Run one command and translate the outcome into a Receipt.

    Used by every subprocess-backed adapter so timeout and error
    handling live in one place.
    """
    env = None
    if env_overrides:
        env = os.environ.copy()
        env.update(env_overrides)

    logger.debug("Executing: %s", cmd if isinstance(cmd, str) else " ".join(cmd))
    start = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            shell=shell,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
            env=env,
        )
    except subprocess.TimeoutExpired:
        return Receipt.failure(
            adapter=adapter,
            action_id=action_id,
            error=f"Command timed out after {timeout}s",
            metadata={"command": cmd, "timeout": timeout, "timed_out": True},
        )
    except FileNotFoundError as e:
        return Receipt.failure(
            adapter=adapter,
            action_id=action_id,
            error=f"Command not found: {e.filename or cmd}",
            metadata={"command": cmd, "return_code": 127},
        )
    except OSError as e:
        return Receipt.failure(
            adapter=adapter,
            action_id=action_id,
            error=f"Command execution error: {e}",
            metadata={"command": cmd},
        )

    elapsed_ms = int((time.monotonic() - start) * 1000)
    stdout = result.stdout.strip()[-_OUTPUT_TAIL:]
    stderr = result.stderr.strip()[-_OUTPUT_TAIL:]
    meta: dict[str, Any] = {
        "command": cmd,
        "return_code": result.returncode,
        "stdout": stdout,
        "stderr": stderr,
    }

    if result.returncode == 0:
        return Receipt.success(
            adapter=adapter, action_id=action_id, output=stdout,
            duration_ms=elapsed_ms, metadata=meta,
        )
    return Receipt.failure(
        adapter=adapter,
        action_id=action_id,
        error=stderr or f"Command exited with code {result.returncode}",
        duration_ms=elapsed_ms,
        metadata=meta,
    )


class ShellCommandAdapter(Adapter):
    """Execute host commands.

    Action params:
        argv (list[str]): Command to run without a shell.
        command (str): Command string run through ``sh -c`` (pipelines).
        timeout (int): Timeout in seconds (default: 300).
        input (str): Text piped to stdin.
        env (dict): Extra environment variables.
    """

    tool = "sh"

    @property
    def name(self) -> str:
        return "shell"

    def check_params(self, context: ExecutionContext) -> tuple[bool, str]:
        argv = context.param("argv")
        command = context.param("command")
        if not argv and not command:
            return False, "Missing required param: 'argv' or 'command'"
        if argv is not None and not isinstance(argv, list):
            return False, "'argv' must be a list of strings"
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        argv = context.param("argv")
        return run_subprocess(
            self.name,
            context.action.id,
            argv if argv else context.param("command"),
            shell=not argv,
            timeout=context.param("timeout", 300),
            input_text=context.param("input"),
            env_overrides=context.param("env"),
        )
