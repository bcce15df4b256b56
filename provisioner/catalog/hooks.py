"""
Hooks — what catalog steps use to touch the host.

Adapters answer with receipts and never raise. Steps, on the other
hand, must fail loudly so the scheduler can roll back. Hooks sit in
between: every failed receipt becomes a StepApplyError carrying the
adapter's error output.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from provisioner.adapters.certificates.letsencrypt import LetsEncryptCertificateProvider
from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.engine.writer import ArtifactWriter
from provisioner.core.errors import StepApplyError
from provisioner.core.models.action import Receipt

logger = logging.getLogger(__name__)


class Hooks:
    """Adapter dispatch, file writes and certificate lookup for one run."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        writer: ArtifactWriter,
        certificates: LetsEncryptCertificateProvider,
    ):
        self.adapters = adapters
        self.writer = writer
        self.certificates = certificates

    def run(self, step: str, adapter: str, action_id: str, **params: Any) -> Receipt:
        """Execute one action; raise StepApplyError when it fails."""
        receipt = self.adapters.run(adapter, action_id, step=step, **params)
        if receipt.failed:
            raise StepApplyError(f"{step}: {adapter}:{action_id} failed: {receipt.error}")
        return receipt

    def shell(self, step: str, action_id: str, *argv: str, timeout: int = 300) -> Receipt:
        return self.run(step, "shell", action_id, argv=list(argv), timeout=timeout)

    def pipeline(self, step: str, action_id: str, command: str, timeout: int = 900) -> Receipt:
        """Run a shell pipeline (``curl ... | sh``)."""
        return self.run(step, "shell", action_id, command=command, timeout=timeout)

    def apt(self, step: str, operation: str, packages: list[str] | None = None) -> Receipt:
        return self.run(step, "apt", f"apt:{operation}", operation=operation, packages=packages or [])

    def systemd(self, step: str, operation: str, unit: str, **params: Any) -> Receipt:
        return self.run(step, "systemd", f"systemd:{operation}:{unit}", operation=operation, unit=unit, **params)

    def docker(self, step: str, operation: str, container: str) -> Receipt:
        return self.run(step, "docker", f"docker:{operation}:{container}", operation=operation, container=container)

    @contextmanager
    def transaction(self, *paths: str) -> Iterator[None]:
        """Restore ``paths`` if the block raises.

        A failing step is not rolled back by the scheduler (only steps
        that reached applied are), so a step undoes its own partial
        writes here.
        """
        try:
            yield
        except Exception:
            for path in reversed(paths):
                if self.writer.touched(path):
                    logger.info("Restoring %s after failed apply", path)
                    self.writer.restore(path)
            raise
