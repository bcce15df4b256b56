"""
SecretProvisioner — issues credentials for rendered configs.

A credential is issued at most once per step per run. When the step's
artifact already exists on disk, the credential found there is reused,
so a rerun never rotates a client id that users already have.
"""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from typing import Literal

from provisioner.core.models.credential import Credential
from provisioner.core.observability.logging_config import mask_secret

logger = logging.getLogger(__name__)

CredentialKind = Literal["client_id", "access_key"]

# 32 random bytes → 256 bits for access keys; UUID4 carries 122 random bits
ACCESS_KEY_BYTES = 32


class SecretProvisioner:
    """Issues and remembers the credentials of one run."""

    def __init__(self) -> None:
        self._issued: dict[str, Credential] = {}
        self._lock = threading.Lock()

    def issue(self, step_name: str, kind: CredentialKind = "client_id") -> Credential:
        """Issue a fresh credential for ``step_name``.

        Calling it again for the same step in the same run returns the
        credential issued the first time.
        """
        with self._lock:
            existing = self._issued.get(step_name)
            if existing is not None:
                return existing
            cred_id = _new_id(kind)
            value = cred_id if kind == "client_id" else secrets.token_urlsafe(ACCESS_KEY_BYTES)
            credential = Credential(id=cred_id, created_for=step_name, value=value, kind=kind)
            self._issued[step_name] = credential
        mask_secret(credential.value)
        logger.info("Issued new %s for step '%s'", kind, step_name)
        return credential

    def issue_or_reuse(
        self,
        step_name: str,
        existing: str | None,
        kind: CredentialKind = "client_id",
        existing_id: str | None = None,
    ) -> Credential:
        """Reuse ``existing`` (read back from disk) or issue a new credential.

        ``existing_id`` names the credential when its id differs from the
        secret, as for access keys.
        """
        if not existing:
            return self.issue(step_name, kind)
        credential = Credential(
            id=existing_id or existing,
            created_for=step_name,
            value=existing,
            kind=kind,
            reused=True,
        )
        with self._lock:
            self._issued[step_name] = credential
        mask_secret(credential.value)
        logger.info("Reusing existing %s for step '%s'", kind, step_name)
        return credential

    def get(self, step_name: str) -> Credential | None:
        return self._issued.get(step_name)

    @property
    def issued(self) -> list[Credential]:
        """Credentials of this run, in issue order."""
        return list(self._issued.values())

    @property
    def new_count(self) -> int:
        return sum(1 for c in self._issued.values() if not c.reused)


def _new_id(kind: CredentialKind) -> str:
    if kind == "client_id":
        return str(uuid.uuid4())
    return secrets.token_hex(8)
