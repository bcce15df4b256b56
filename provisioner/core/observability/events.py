"""
Progress events — one per scheduler state transition.

Subscribers receive every event synchronously, in order. A subscriber
that raises is logged and dropped from the current emit; it never
breaks the run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from provisioner.core.models.step import StepState

logger = logging.getLogger(__name__)


class ProgressEvent(BaseModel):
    """A step moved from one scheduler state to another."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    plan_id: str = ""
    step: str
    state: StepState
    previous: StepState | None = None
    message: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[ProgressEvent], None]


class EventBus:
    """Fan-out of progress events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        logger.debug("%s: %s → %s", event.step, event.previous or "-", event.state)
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception as e:
                logger.warning("Progress subscriber %r failed: %s", fn, e)

    def __len__(self) -> int:
        return len(self._subscribers)
