"""
Adapter registry — dispatch of host operations to adapters.

Steps reach the host only through ``AdapterRegistry.run``. Whatever the
adapter does (rejects its params, raises, is missing), the caller gets
a Receipt back and the step decides whether that is fatal.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.core.models.action import Action, Receipt

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Named adapters plus the mock switch used by ``--mock`` and tests.

    With mock mode on, every action goes to the mock adapter. Without
    one, mock mode answers each action with a canned success so a plan
    can be walked end to end on a machine that is not the target host.
    """

    def __init__(self, mock_mode: bool = False):
        self._adapters: dict[str, Adapter] = {}
        self._mock_mode = mock_mode
        self._mock: Adapter | None = None

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    def set_mock_mode(self, enabled: bool, mock_adapter: Adapter | None = None) -> None:
        self._mock_mode = enabled
        self._mock = mock_adapter

    def register(self, adapter: Adapter) -> None:
        if adapter.name in self._adapters:
            logger.warning("Replacing adapter %s", adapter.name)
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> Adapter | None:
        return self._adapters.get(name)

    def run(self, adapter: str, action_id: str, step: str | None = None, **params: Any) -> Receipt:
        """Build an Action for ``step`` and execute it."""
        return self.execute_action(Action(id=action_id, adapter=adapter, params=params, step=step))

    def execute_action(self, action: Action) -> Receipt:
        """Run ``action`` through its adapter. Never raises."""
        started = time.monotonic()

        if self._mock_mode and self._mock is None:
            return Receipt.success(
                adapter=action.adapter,
                action_id=action.id,
                output=f"[mock] {action.id}",
                metadata={"mock": True},
            )

        handler = self._mock if self._mock_mode else self._adapters.get(action.adapter)
        if handler is None:
            return self._fail(action, f"No adapter registered for '{action.adapter}'")

        context = ExecutionContext(action=action, params=action.params)
        try:
            valid, problem = handler.validate(context)
        except Exception as e:
            return self._fail(action, f"Validation error: {e}")
        if not valid:
            return self._fail(action, f"Validation failed: {problem}")
        if not handler.is_available():
            tool = handler.tool or handler.name
            return self._fail(action, f"{handler.name}: '{tool}' is not installed on this host")

        try:
            receipt = handler.execute(context)
        except Exception as e:
            logger.error("%s raised while running %s: %s", action.adapter, action.id, e)
            receipt = self._fail(action, f"Unexpected error: {e}")

        receipt.duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "[%s] %s → %s (%dms)", action.step or "-", action.id, receipt.status, receipt.duration_ms
        )
        return receipt

    @staticmethod
    def _fail(action: Action, error: str) -> Receipt:
        return Receipt.failure(adapter=action.adapter, action_id=action.id, error=error)
