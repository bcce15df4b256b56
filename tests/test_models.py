"""
Tests for models — plan results, status reports, host defaults.
"""

import pytest
from pydantic import ValidationError

from provisioner.core.models.action import Receipt
from provisioner.core.models.credential import Credential
from provisioner.core.models.host import HostSpec
from provisioner.core.models.step import PlanResult, StatusReport, StepResult, StepStatus


def _plan(*statuses: StepStatus, warnings=None, aborted=False) -> PlanResult:
    return PlanResult(
        results=[StepResult(step_name=f"s{i}", status=s) for i, s in enumerate(statuses)],
        warnings=warnings or [],
        aborted=aborted,
    )


class TestPlanResult:
    def test_all_ok(self):
        result = _plan(StepStatus.APPLIED, StepStatus.SKIPPED)
        assert result.status == "ok"
        assert result.exit_code == 0

    def test_failure_is_partial_when_something_held(self):
        result = _plan(StepStatus.SKIPPED, StepStatus.FAILED, StepStatus.PENDING)
        assert result.status == "partial"
        assert result.exit_code == 1

    def test_nothing_held(self):
        assert _plan(StepStatus.FAILED, StepStatus.ROLLED_BACK).status == "failed"

    def test_rollback_warning_fails_run(self):
        result = _plan(StepStatus.APPLIED, warnings=["Rollback of 'x' failed"])
        assert result.exit_code == 1

    def test_aborted(self):
        assert _plan(StepStatus.APPLIED, aborted=True).exit_code == 1

    def test_get_unknown_step(self):
        with pytest.raises(KeyError):
            _plan().get("ghost")

    def test_step_result_fail(self):
        record = StepResult(step_name="x")
        record.fail(TimeoutError(), "wait longer")
        assert record.status == StepStatus.FAILED
        assert record.error == "TimeoutError"
        assert record.remediation == "wait longer"
        assert record.ended_at


class TestStatusReport:
    def test_exit_codes(self):
        assert StatusReport(satisfied=["a"]).exit_code == 0
        assert StatusReport(satisfied=["a"], unsatisfied=["b"]).exit_code == 1
        assert StatusReport(unknown={"c": "daemon down"}).exit_code == 1


class TestHostSpec:
    def test_requires_name_and_domain(self):
        with pytest.raises(ValidationError):
            HostSpec.model_validate({"name": "x"})

    def test_defaults_are_independent(self):
        a = HostSpec(name="a", domain="a.example.com")
        b = HostSpec(name="b", domain="b.example.com")
        a.packages.append("vim")
        assert "vim" not in b.packages

    def test_default_firewall_covers_proxy_ports(self):
        host = HostSpec(name="a", domain="a.example.com")
        specs = {r.spec for r in host.firewall_rules}
        assert {"22/tcp", "443/tcp", "10086/tcp", "35026/udp"} <= specs

    def test_policy_literal(self):
        with pytest.raises(ValidationError):
            HostSpec(name="a", domain="a.example.com", default_incoming="reject")


class TestSmallModels:
    def test_receipt_helpers(self):
        assert Receipt.success(adapter="shell", action_id="x").ok
        assert Receipt.failure(adapter="shell", action_id="x", error="e").failed

    def test_credential_is_frozen(self):
        credential = Credential(id="a", created_for="s", value="a")
        with pytest.raises(ValidationError):
            credential.value = "b"
