"""
Remediation hints — operator advice derived from an error.

Pure pattern matching over the exception type and message. No I/O.
Unrecognized errors fall back to the hint carried by the exception
class, then to a generic one.
"""

from __future__ import annotations

from provisioner.core.errors import ProvisionError

GENERIC_HINT = "inspect the error above, fix the cause and rerun; satisfied steps are skipped"

# (substring in lowercased message, hint), first match wins
_MESSAGE_PATTERNS: tuple[tuple[str, str], ...] = (
    ("permission denied", "rerun with elevated privileges (sudo)"),
    ("operation not permitted", "rerun with elevated privileges (sudo)"),
    ("could not get lock", "another package manager is running; wait for it and rerun"),
    ("dpkg was interrupted", "run 'dpkg --configure -a' and rerun"),
    ("temporary failure in name resolution", "check DNS resolution and network access"),
    ("could not resolve host", "check DNS resolution and network access"),
    ("connection refused", "make sure the target service is running"),
    ("cannot connect to the docker daemon", "start the container runtime (systemctl start docker)"),
    ("no space left on device", "free disk space and rerun"),
    ("address already in use", "another process holds the port; stop it or change the port"),
    ("command not found", "install the missing tool, or let its install step run first"),
    ("configuration file", "fix the rendered configuration; the service rejected it"),
)


def remediation_for(exc: BaseException) -> str:
    """Best hint for ``exc``."""
    if isinstance(exc, PermissionError):
        return "rerun with elevated privileges (sudo)"

    message = str(exc).lower()
    cause = exc.__cause__
    if cause is not None:
        message = f"{message} {str(cause).lower()}"

    for needle, hint in _MESSAGE_PATTERNS:
        if needle in message:
            return hint

    if isinstance(exc, ProvisionError) and exc.remediation:
        return exc.remediation
    return GENERIC_HINT
