"""
Certificate-path provider — where a domain's TLS pair lives.

Issuance is somebody else's job (certbot, an ACME client, a manual
copy). This provider only answers "which files?" and fails with
CertificateNotFoundError when they are not there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from provisioner.core.errors import CertificateNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertPaths:
    cert_path: str
    key_path: str


class LetsEncryptCertificateProvider:
    """Looks up ``<live_dir>/<domain>/{fullchain,privkey}.pem``.

    Args:
        live_dir: The certbot live directory.
        root: Optional filesystem root prefix (staging directories, tests).
    """

    CERT_FILE = "fullchain.pem"
    KEY_FILE = "privkey.pem"

    def __init__(self, live_dir: str = "/etc/letsencrypt/live", root: Path | None = None):
        self.live_dir = live_dir
        self.root = root

    def _host_path(self, path: str) -> Path:
        if self.root is None:
            return Path(path)
        return self.root / path.lstrip("/")

    def expected_paths(self, domain: str) -> CertPaths:
        """Where the pair for ``domain`` lives, whether or not it exists yet."""
        base = f"{self.live_dir.rstrip('/')}/{domain}"
        return CertPaths(cert_path=f"{base}/{self.CERT_FILE}", key_path=f"{base}/{self.KEY_FILE}")

    def paths_for(self, domain: str) -> CertPaths:
        """Return the certificate pair for ``domain``.

        Raises:
            CertificateNotFoundError: If either file is missing.
        """
        paths = self.expected_paths(domain)
        if not (self._host_path(paths.cert_path).is_file() and self._host_path(paths.key_path).is_file()):
            raise CertificateNotFoundError(domain, searched=paths.cert_path.rsplit("/", 1)[0])
        logger.debug("Certificate for %s found at %s", domain, paths.cert_path)
        return paths
