"""
Credential export — encrypted hand-off of issued credentials.

Operators need the client ids a run produced, but they should not sit
in plaintext in a terminal scrollback or a ticket. The export is a
portable JSON envelope: AES-256-GCM over the credential list, key
derived from a passphrase with PBKDF2-SHA256.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from provisioner.core.models.credential import Credential

logger = logging.getLogger(__name__)

SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
TAG_BYTES = 16

EXPORT_FORMAT = "provision-credentials-v1"
EXPORT_KDF_ITERATIONS = 600_000
MIN_PASSPHRASE = 8


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256", passphrase.encode("utf-8"), salt, iterations, dklen=KEY_BYTES,
    )


def export_credentials(
    credentials: list[Credential],
    passphrase: str,
    *,
    host: str = "",
    iterations: int = EXPORT_KDF_ITERATIONS,
) -> dict[str, Any]:
    """Encrypt credentials into an export envelope.

    Raises:
        ValueError: If the passphrase is shorter than 8 characters.
    """
    if not passphrase or len(passphrase) < MIN_PASSPHRASE:
        raise ValueError(f"Passphrase must be at least {MIN_PASSPHRASE} characters")

    plaintext = json.dumps(
        [c.model_dump(mode="json") for c in credentials], ensure_ascii=False,
    ).encode("utf-8")

    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    key = _derive_key(passphrase, salt, iterations)

    ct_and_tag = AESGCM(key).encrypt(iv, plaintext, None)
    ciphertext, tag = ct_and_tag[:-TAG_BYTES], ct_and_tag[-TAG_BYTES:]

    return {
        "format": EXPORT_FORMAT,
        "host": host,
        "count": len(credentials),
        "created_at": datetime.now(UTC).isoformat(),
        "kdf": "pbkdf2-sha256",
        "kdf_iterations": iterations,
        "salt": base64.b64encode(salt).decode("ascii"),
        "iv": base64.b64encode(iv).decode("ascii"),
        "tag": base64.b64encode(tag).decode("ascii"),
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
    }


def import_credentials(envelope: dict[str, Any], passphrase: str) -> list[Credential]:
    """Decrypt an export envelope.

    Raises:
        ValueError: Unknown format, malformed envelope, wrong passphrase.
    """
    fmt = envelope.get("format")
    if fmt != EXPORT_FORMAT:
        raise ValueError(f"Unknown export format: {fmt}")

    try:
        salt = base64.b64decode(envelope["salt"])
        iv = base64.b64decode(envelope["iv"])
        tag = base64.b64decode(envelope["tag"])
        ciphertext = base64.b64decode(envelope["ciphertext"])
        iterations = int(envelope.get("kdf_iterations", EXPORT_KDF_ITERATIONS))
    except (KeyError, ValueError) as e:
        raise ValueError(f"Invalid export envelope: {e}") from e

    key = _derive_key(passphrase, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise ValueError("Wrong passphrase or corrupted export file") from e

    return [Credential.model_validate(item) for item in json.loads(plaintext)]


def write_export(envelope: dict[str, Any], path: Path) -> None:
    """Write the envelope with owner-only permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with open(fd, "w", encoding="utf-8") as f:
        json.dump(envelope, f, indent=2)
        f.write("\n")
    logger.info("Credential export written to %s", path)
