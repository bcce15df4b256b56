"""
Credential model — identifiers and keys issued for rendered configs.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Credential(BaseModel):
    """A credential issued (or read back) for one step.

    ``id`` is the public identifier (the client UUID, or the access-key
    id); ``value`` is the secret material. For UUID client credentials
    the two are the same string.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    created_for: str
    value: str = Field(repr=False)
    kind: Literal["client_id", "access_key"] = "client_id"
    reused: bool = False
    issued_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
