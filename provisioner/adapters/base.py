"""
Adapter base — the contract between steps and host tools.

Steps never shell out directly. They send an Action through the
adapter registry and get a Receipt back, which keeps every host
mutation mockable and auditable.

A concrete adapter names the executable it drives (``tool``) and the
operations it accepts (``operations``); the base class turns those into
``is_available`` and the operation half of ``validate``. Anything else
an operation needs is checked in ``check_params``.
"""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from provisioner.core.models.action import Action, Receipt


class ExecutionContext(BaseModel):
    """One action plus its params, as seen by an adapter."""

    action: Action
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def operation(self) -> str:
        return str(self.params.get("operation") or "")

    @property
    def step(self) -> str:
        """Step that issued the action (``-`` for ad-hoc calls)."""
        return self.action.step or "-"

    def param(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)


class Adapter(ABC):
    """Abstract base class for all adapters.

    Adapters perform external side effects and return receipts.
    They never raise: failures are captured in the Receipt.
    """

    # Executable that must be on PATH for the adapter to work
    tool: ClassVar[str] = ""
    # Accepted values of the ``operation`` param; empty means none is taken
    operations: ClassVar[frozenset[str]] = frozenset()

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g. 'shell', 'apt', 'docker')."""

    def is_available(self) -> bool:
        """Whether ``tool`` exists on this host."""
        return bool(self.tool) and shutil.which(self.tool) is not None

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        """Returns (is_valid, error_message)."""
        if self.operations and context.operation not in self.operations:
            return False, (
                f"Unknown operation '{context.operation}'. "
                f"Valid: {', '.join(sorted(self.operations))}"
            )
        return self.check_params(context)

    def check_params(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    @abstractmethod
    def execute(self, context: ExecutionContext) -> Receipt:
        """Execute the action and return a receipt. Must never raise."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} tool={self.tool or '-'}>"
