"""
HostState — summary of the most recent plan run.

Serialized to .state/current.json after each run. It is a report for
operators, never an input: probes always inspect the live host, so
deleting this file changes nothing about what the next run does.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RunRecord(BaseModel):
    """Summary of one plan run."""

    plan_id: str = ""
    mode: str = ""
    started_at: str = ""
    ended_at: str = ""
    status: str = ""  # ok, partial, failed
    steps_total: int = 0
    steps_applied: int = 0
    steps_skipped: int = 0
    steps_failed: int = 0
    steps_rolled_back: int = 0
    warnings: list[str] = Field(default_factory=list)


class HostState(BaseModel):
    """Root state document for one host."""

    schema_version: int = 1

    host_name: str = ""
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    last_run: RunRecord = Field(default_factory=RunRecord)
    step_status: dict[str, str] = Field(default_factory=dict)

    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        self.updated_at = _now_iso()
