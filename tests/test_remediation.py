"""
Tests for remediation hints.
"""

import pytest

from provisioner.core.engine.remediation import GENERIC_HINT, remediation_for
from provisioner.core.errors import (
    CertificateNotFoundError,
    ProbeUnavailableError,
    StepApplyError,
    StepTimeoutError,
)


class TestRemediation:
    def test_permission_error(self):
        assert "sudo" in remediation_for(PermissionError(13, "Permission denied"))

    @pytest.mark.parametrize("message, fragment", [
        ("E: Could not get lock /var/lib/dpkg/lock-frontend", "package manager"),
        ("E: dpkg was interrupted, you must manually run ...", "dpkg --configure -a"),
        ("curl: (6) Could not resolve host: get.docker.com", "DNS"),
        ("Cannot connect to the Docker daemon at unix:///var/run/docker.sock", "systemctl start docker"),
        ("nginx: [emerg] bind() to 0.0.0.0:443 failed (98: Address already in use)", "port"),
        ("write error: No space left on device", "disk space"),
        ("sh: 1: visudo: command not found", "install the missing tool"),
    ])
    def test_message_patterns(self, message, fragment):
        assert fragment in remediation_for(StepApplyError(message))

    def test_cause_is_searched(self):
        try:
            try:
                raise OSError("Permission denied: '/etc/sudoers.d/outline'")
            except OSError as cause:
                raise StepApplyError("service-user failed") from cause
        except StepApplyError as e:
            assert "sudo" in remediation_for(e)

    def test_falls_back_to_class_hint(self):
        assert "certbot" in remediation_for(CertificateNotFoundError("vpn.example.com"))
        assert "--timeout" in remediation_for(StepTimeoutError("outline-server", 60))
        assert remediation_for(ProbeUnavailableError("x")) == ProbeUnavailableError.remediation

    def test_generic(self):
        assert remediation_for(ValueError("something odd")) == GENERIC_HINT
