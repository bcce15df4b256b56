"""
Mock adapter — stands in for every host tool under ``--mock`` and in tests.

With mock mode on, the registry sends every action here regardless of
its adapter name. Responses are keyed by action id; a key may be a glob
(``probe:*``, ``outline-access-key:*``) and an exact id wins over any
glob. Unmatched actions succeed. Every call is recorded so tests can
assert on what each step asked the host to do.
"""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Any

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.core.models.action import Receipt


class MockAdapter(Adapter):
    """Scripted host: canned receipts plus a call log."""

    def __init__(
        self,
        adapter_name: str = "mock",
        available: bool = True,
        default_output: str = "[mock] executed",
    ):
        self._name = adapter_name
        self._available = available
        self._default_output = default_output
        self._responses: dict[str, Receipt] = {}
        self._call_log: list[ExecutionContext] = []

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return self._available

    # ── Scripting ───────────────────────────────────────────────

    def set_response(self, action_id: str, receipt: Receipt) -> None:
        self._responses[action_id] = receipt

    def set_output(self, action_id: str, output: str) -> None:
        """Answer ``action_id`` with a success carrying ``output``."""
        self.set_response(action_id, Receipt.success(
            adapter=self._name, action_id=action_id, output=output,
        ))

    def set_failure(self, action_id: str, error: str = "Mock failure") -> None:
        self.set_response(action_id, Receipt.failure(
            adapter=self._name, action_id=action_id, error=error,
        ))

    def _response_for(self, action_id: str) -> Receipt | None:
        if action_id in self._responses:
            return self._responses[action_id]
        for pattern, receipt in self._responses.items():
            if fnmatchcase(action_id, pattern):
                return receipt
        return None

    # ── Call log ────────────────────────────────────────────────

    @property
    def call_log(self) -> list[ExecutionContext]:
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def called_ids(self) -> list[str]:
        return [ctx.action.id for ctx in self._call_log]

    def calls_for(self, step: str) -> list[str]:
        """Action ids issued by ``step``, in call order."""
        return [ctx.action.id for ctx in self._call_log if ctx.action.step == step]

    def params_of(self, action_id: str) -> dict[str, Any]:
        """Params of the last call to ``action_id``; KeyError if never called."""
        for ctx in reversed(self._call_log):
            if ctx.action.id == action_id:
                return ctx.params
        raise KeyError(action_id)

    # ── Adapter ─────────────────────────────────────────────────

    def execute(self, context: ExecutionContext) -> Receipt:
        self._call_log.append(context)
        receipt = self._response_for(context.action.id)
        if receipt is not None:
            return receipt
        return Receipt.success(
            adapter=self._name,
            action_id=context.action.id,
            output=self._default_output,
            metadata={"mock": True},
        )

    def reset(self) -> None:
        self._call_log.clear()
        self._responses.clear()
