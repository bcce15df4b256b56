"""
Tests for the CLI — commands, JSON output and exit codes.
"""

import json
import textwrap

import pytest
from click.testing import CliRunner

from provisioner import __version__
from provisioner.core.secrets.vault import import_credentials
from provisioner.main import cli

PASSPHRASE = "correct horse battery"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def staged_root(tmp_root):
    """A mock-mode root where a full apply can succeed."""
    live = tmp_root / "etc/letsencrypt/live/vpn.example.com"
    live.mkdir(parents=True)
    (live / "fullchain.pem").write_text("CERT")
    (live / "privkey.pem").write_text("KEY")
    outline = tmp_root / "opt/outline/persisted-state"
    outline.mkdir(parents=True)
    (outline / "shadowbox_config.json").write_text('{"encryptionMethod": "chacha20-ietf-poly1305"}')
    (tmp_root / "opt/outline/access.txt").write_text("certSha256:AB12\napiUrl:https://127.0.0.1:9443/secret\n")
    return tmp_root


def _apply(runner, host_file, root, *extra):
    return runner.invoke(cli, [
        "--config", str(host_file), "--mock", "--root", str(root), "apply", *extra,
    ])


# ── Basics ───────────────────────────────────────────────────────────


class TestBasics:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("apply", "plan", "status", "render", "credentials", "history"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


# ── plan ─────────────────────────────────────────────────────────────


class TestPlan:
    def test_lists_steps_in_order(self, runner, host_file):
        result = runner.invoke(cli, ["--config", str(host_file), "plan"])
        assert result.exit_code == 0
        assert "vpn-test" in result.output
        assert result.output.index("base-packages") < result.output.index("container-runtime")

    def test_json(self, runner, host_file):
        result = runner.invoke(cli, ["--config", str(host_file), "plan", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["host"] == "vpn-test"
        assert data["steps"][0]["name"] == "base-packages"
        runtime = next(s for s in data["steps"] if s["name"] == "container-runtime")
        assert runtime["depends_on"] == ["base-packages", "service-user"]


# ── Configuration errors → exit 2 ────────────────────────────────────


class TestConfigErrors:
    def test_missing_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["plan"])
        assert result.exit_code == 2

    def test_config_path_does_not_exist(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yml"), "plan", "--json"])
        assert result.exit_code == 2
        assert json.loads(result.output)["exit_code"] == 2

    def test_schema_violation(self, runner, tmp_path):
        path = tmp_path / "host.yml"
        path.write_text("name: vpn-test\ndomain: vpn.example.com\nfirewall_rules:\n  - {port: 0}\n")
        result = runner.invoke(cli, ["--config", str(path), "status"])
        assert result.exit_code == 2

    def test_unrenderable_value_stops_apply(self, runner, tmp_path, tmp_root):
        path = tmp_path / "host.yml"
        path.write_text(textwrap.dedent("""\
            name: vpn-test
            domain: vpn.example.com
            kernel_params:
              "Not A Key": "1"
        """))
        result = runner.invoke(cli, ["--config", str(path), "--mock", "--root", str(tmp_root), "apply"])
        assert result.exit_code == 2
        assert not (tmp_root / "etc").exists()


# ── apply / status ───────────────────────────────────────────────────


class TestApply:
    def test_mock_apply_succeeds(self, runner, host_file, staged_root):
        result = _apply(runner, host_file, staged_root)
        assert result.exit_code == 0, result.output
        assert "[mock] apply" in result.output
        assert "applied 17" in result.output
        assert (staged_root / "etc/provision/firewall.rules").is_file()

    def test_json_result(self, runner, host_file, staged_root):
        result = _apply(runner, host_file, staged_root, "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == "ok"
        assert data["counts"]["applied"] == 17

    def test_failure_exits_one(self, runner, host_file, tmp_root):
        # no certificate and no Outline config in this root
        result = _apply(runner, host_file, tmp_root, "--json")
        assert result.exit_code == 1

    def test_mock_without_root_stages_under_state_dir(self, runner, host_file):
        runner.invoke(cli, ["--config", str(host_file), "--mock", "apply"])
        assert (host_file.parent / ".state" / "mock-root" / "etc/provision/firewall.rules").is_file()

    def test_status_in_mock_mode_changes_nothing(self, runner, host_file, staged_root):
        result = runner.invoke(cli, [
            "--config", str(host_file), "--mock", "--root", str(staged_root), "status", "--json",
        ])
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["all_satisfied"] is False
        assert "base-packages" in data["unsatisfied"]
        assert not (staged_root / "etc/provision").exists()


# ── render ───────────────────────────────────────────────────────────


class TestRender:
    def test_firewall_rules(self, runner, host_file):
        result = runner.invoke(cli, ["--config", str(host_file), "render", "firewall_rules"])
        assert result.exit_code == 0
        assert "allow in 443/tcp" in result.output

    def test_service_config_json(self, runner, host_file):
        result = runner.invoke(cli, ["--config", str(host_file), "render", "service_config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["path"] == "/usr/local/etc/v2ray/config.json"
        assert data["source"]["listen_port"] == 10086

    def test_unknown_kind(self, runner, host_file):
        result = runner.invoke(cli, ["--config", str(host_file), "render", "crontab"])
        assert result.exit_code == 2


# ── credentials / history ────────────────────────────────────────────


class TestCredentials:
    def test_export_after_apply(self, runner, host_file, staged_root, tmp_path):
        _apply(runner, host_file, staged_root)
        out = tmp_path / "creds.json"
        result = runner.invoke(cli, [
            "--config", str(host_file), "--mock", "--root", str(staged_root),
            "credentials", "export", "-o", str(out), "--passphrase", PASSPHRASE,
        ])
        assert result.exit_code == 0, result.output
        restored = import_credentials(json.loads(out.read_text()), PASSPHRASE)
        config = json.loads((staged_root / "usr/local/etc/v2ray/config.json").read_text())
        assert restored[0].value == config["inbounds"][0]["settings"]["clients"][0]["id"]
        record = json.loads((staged_root / "opt/outline/access_keys.json").read_text())
        assert (restored[1].kind, restored[1].id, restored[1].value) == (
            "access_key", record["id"], record["password"],
        )

    def test_export_before_apply(self, runner, host_file, tmp_root, tmp_path):
        result = runner.invoke(cli, [
            "--config", str(host_file), "--mock", "--root", str(tmp_root),
            "credentials", "export", "-o", str(tmp_path / "c.json"),
        ], env={"PROVISION_VAULT_PASSPHRASE": PASSPHRASE})
        assert result.exit_code == 1
        assert not (tmp_path / "c.json").exists()


class TestHistory:
    def test_empty(self, runner, host_file):
        result = runner.invoke(cli, ["--config", str(host_file), "history"])
        assert result.exit_code == 0
        assert "No runs recorded yet." in result.output

    def test_lists_runs(self, runner, host_file, staged_root):
        _apply(runner, host_file, staged_root)
        result = runner.invoke(cli, ["--config", str(host_file), "history", "--json"])
        assert result.exit_code == 0
        entries = json.loads(result.output)
        assert entries[-1]["operation_type"] == "apply"
        assert entries[-1]["status"] == "ok"
