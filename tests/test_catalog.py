"""
Tests for the VPN host catalog — the full step graph against a staged root.

Everything runs through the mock adapter; files land under a tmp root.
"""

import json
import stat
import textwrap
import uuid

import pytest

from provisioner.catalog.hooks import Hooks
from provisioner.catalog.vpn_host import PREVIEW_CLIENT_ID, preview_artifact, validate_host
from provisioner.core.errors import InvalidConfigError, StepApplyError
from provisioner.core.models.action import Receipt
from provisioner.core.models.artifact import ArtifactKind
from provisioner.core.models.step import StepStatus
from provisioner.core.use_cases.provision import apply_host, build_context

ALL_STEPS = [
    "base-packages",
    "service-user",
    "container-runtime",
    "runtime-daemon-config",
    "outline-server",
    "outline-cipher",
    "outline-access-key",
    "v2ray-install",
    "v2ray-config",
    "v2ray-service",
    "reverse-proxy",
    "reverse-proxy-vhost",
    "firewall",
    "kernel-tuning",
    "file-limits",
    "dns-resolvers",
    "auto-upgrades",
]


@pytest.fixture
def seeded_root(tmp_root):
    """A root with a TLS pair and an installed-but-untuned Outline config."""
    live = tmp_root / "etc/letsencrypt/live/vpn.example.com"
    live.mkdir(parents=True)
    (live / "fullchain.pem").write_text("CERT")
    (live / "privkey.pem").write_text("KEY")
    outline = tmp_root / "opt/outline/persisted-state"
    outline.mkdir(parents=True)
    (outline / "shadowbox_config.json").write_text(
        json.dumps({"encryptionMethod": "chacha20-ietf-poly1305", "portForNewAccessKeys": 443})
    )
    (tmp_root / "opt/outline/access.txt").write_text(
        "certSha256:AB12\napiUrl:https://127.0.0.1:9443/secret\n"
    )
    return tmp_root


def _context(host_file, root, registry, which=lambda name: None):
    return build_context(host_file, root=root, adapters=registry, which=which)


def _mark_host_satisfied(mock_adapter, root):
    """Make every non-file probe answer "already done"."""
    mock_adapter.reset()
    mock_adapter.set_response("probe:packages", Receipt.success(
        adapter="apt", action_id="probe:packages", metadata={"installed": [], "missing": []},
    ))
    mock_adapter.set_output("probe:user", "1001\n")
    mock_adapter.set_output("probe:groups", "outline sudo docker\n")
    mock_adapter.set_response("probe:container", Receipt.success(
        adapter="docker", action_id="probe:container", metadata={"exists": True, "running": True},
    ))
    mock_adapter.set_response("probe:unit", Receipt.success(
        adapter="systemd", action_id="probe:unit", metadata={"active": True, "state": "active"},
    ))
    mock_adapter.set_output("probe:firewall", "Status: active\n")
    binary = root / "usr/local/bin/v2ray"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text("#!/bin/sh\n")


def _client_id(root) -> str:
    document = json.loads((root / "usr/local/etc/v2ray/config.json").read_text())
    return document["inbounds"][0]["settings"]["clients"][0]["id"]


# ── Shape ────────────────────────────────────────────────────────────


class TestCatalogShape:
    def test_plan_order(self, host_file, tmp_root, mock_registry):
        ctx = _context(host_file, tmp_root, mock_registry)
        assert ctx.scheduler.plan().names == ALL_STEPS

    def test_every_step_is_checkable(self, host_file, tmp_root, mock_registry):
        ctx = _context(host_file, tmp_root, mock_registry)
        for step in ctx.scheduler.plan():
            assert step.check is not None, step.name
            assert step.description

    def test_dependencies(self, host_file, tmp_root, mock_registry):
        registry = _context(host_file, tmp_root, mock_registry).registry
        assert registry.get("container-runtime").depends_on == {"base-packages", "service-user"}
        assert registry.get("reverse-proxy-vhost").depends_on == {"reverse-proxy", "v2ray-config"}
        assert registry.get("outline-server").idempotent is False
        assert registry.get("outline-access-key").depends_on == {"outline-cipher"}

    def test_disabled_steps_are_left_out(self, tmp_path, tmp_root, mock_registry):
        host_file = tmp_path / "host.yml"
        host_file.write_text(textwrap.dedent("""\
            name: vpn-test
            domain: vpn.example.com
            disabled_steps: [service-user, outline-server, outline-cipher]
        """))
        ctx = _context(host_file, tmp_root, mock_registry)
        names = ctx.scheduler.plan().names
        assert "outline-server" not in names
        assert "service-user" not in names
        assert ctx.registry.get("container-runtime").depends_on == {"base-packages"}


# ── Apply ────────────────────────────────────────────────────────────


class TestFreshHost:
    def test_applies_every_step(self, host_file, seeded_root, mock_registry, mock_adapter):
        ctx = _context(host_file, seeded_root, mock_registry)
        result = apply_host(ctx)

        assert result.exit_code == 0, result.to_dict()
        assert result.applied == len(ALL_STEPS)
        assert ctx.secrets.new_count == 2

        called = mock_adapter.called_ids
        assert "apt:install" in called
        assert "firewall:apply:enable" in called
        assert "reverse-proxy-vhost:test" in called
        assert "systemd:restart:nginx" in called

    def test_writes_artifacts(self, host_file, seeded_root, mock_registry):
        apply_host(_context(host_file, seeded_root, mock_registry))

        uuid.UUID(_client_id(seeded_root))
        site = seeded_root / "etc/nginx/sites-available/v2ray"
        assert "server_name vpn.example.com;" in site.read_text()
        enabled = seeded_root / "etc/nginx/sites-enabled/v2ray"
        assert enabled.is_symlink() and enabled.resolve() == site.resolve()
        assert "allow in 443/tcp" in (seeded_root / "etc/provision/firewall.rules").read_text()
        assert "net.ipv4.tcp_congestion_control = bbr" in (
            seeded_root / "etc/sysctl.d/99-provision.conf"
        ).read_text()

        outline = json.loads((seeded_root / "opt/outline/persisted-state/shadowbox_config.json").read_text())
        assert outline == {"encryptionMethod": "aes-256-gcm", "portForNewAccessKeys": 443}

        sudoers = seeded_root / "etc/sudoers.d/outline"
        assert sudoers.read_text() == "outline ALL=(ALL) NOPASSWD:ALL\n"
        assert stat.S_IMODE(sudoers.stat().st_mode) == 0o440

    def test_records_audit_and_state(self, host_file, seeded_root, mock_registry):
        ctx = _context(host_file, seeded_root, mock_registry)
        apply_host(ctx)
        assert (ctx.state_dir / "audit.ndjson").is_file()
        state = json.loads((ctx.state_dir / "current.json").read_text())
        assert state["metadata"]["credentials_issued"] == 2


class TestProvisionedHost:
    def test_second_run_changes_nothing(self, host_file, seeded_root, mock_registry, mock_adapter):
        apply_host(_context(host_file, seeded_root, mock_registry))
        first_id = _client_id(seeded_root)

        _mark_host_satisfied(mock_adapter, seeded_root)
        ctx = _context(host_file, seeded_root, mock_registry, which=lambda name: f"/usr/bin/{name}")
        result = apply_host(ctx)

        assert [r.status for r in result.results] == [StepStatus.SKIPPED] * len(ALL_STEPS)
        assert result.exit_code == 0
        assert ctx.writer.written == []
        assert ctx.secrets.new_count == 0
        assert all(action_id.startswith("probe:") for action_id in mock_adapter.called_ids)
        assert _client_id(seeded_root) == first_id

    def test_changed_port_keeps_client_id(self, tmp_path, host_file, seeded_root, mock_registry):
        apply_host(_context(host_file, seeded_root, mock_registry))
        first_id = _client_id(seeded_root)

        host_file.write_text(host_file.read_text() + "proxy:\n  listen_port: 20000\n")
        ctx = _context(host_file, seeded_root, mock_registry)
        result = apply_host(ctx)

        assert result.get("v2ray-config").status == StepStatus.APPLIED
        assert result.get("outline-cipher").status == StepStatus.SKIPPED
        assert _client_id(seeded_root) == first_id
        assert ctx.secrets.new_count == 0
        site = (seeded_root / "etc/nginx/sites-available/v2ray").read_text()
        assert "proxy_pass http://127.0.0.1:20000;" in site


# ── Outline access key ───────────────────────────────────────────────

ACCESS_KEYS = "opt/outline/access_keys.json"


def _key_call(mock_adapter, action_id):
    argv = mock_adapter.params_of(action_id)["argv"]
    body = json.loads(argv[argv.index("--data") + 1]) if "--data" in argv else None
    return argv, body


class TestOutlineAccessKey:
    def test_fresh_key_is_created_and_recorded(self, host_file, seeded_root, mock_registry, mock_adapter):
        ctx = _context(host_file, seeded_root, mock_registry)
        result = apply_host(ctx)

        assert result.get("outline-access-key").status == StepStatus.APPLIED
        record = json.loads((seeded_root / ACCESS_KEYS).read_text())
        assert record["name"] == "provision"
        assert record["method"] == "aes-256-gcm"
        assert stat.S_IMODE((seeded_root / ACCESS_KEYS).stat().st_mode) == 0o600

        argv, body = _key_call(mock_adapter, "outline-access-key:create")
        assert argv[argv.index("-X") + 1] == "PUT"
        assert argv[-1] == f"https://127.0.0.1:9443/secret/access-keys/{record['id']}"
        assert body == {"name": "provision", "method": "aes-256-gcm", "password": record["password"]}
        assert [c.kind for c in ctx.secrets.issued] == ["access_key", "client_id"]

    def test_existing_key_is_renamed_not_recreated(self, host_file, seeded_root, mock_registry, mock_adapter):
        existing = {"id": "7", "name": "old", "password": "s3cret", "method": "aes-256-gcm"}
        (seeded_root / ACCESS_KEYS).write_text(json.dumps(existing))

        ctx = _context(host_file, seeded_root, mock_registry)
        apply_host(ctx)

        assert "outline-access-key:create" not in mock_adapter.called_ids
        argv, body = _key_call(mock_adapter, "outline-access-key:rename")
        assert argv[-1] == "https://127.0.0.1:9443/secret/access-keys/7/name"
        assert body == {"name": "provision"}
        record = json.loads((seeded_root / ACCESS_KEYS).read_text())
        assert (record["id"], record["password"], record["name"]) == ("7", "s3cret", "provision")
        assert ctx.secrets.new_count == 1

    def test_rerun_leaves_key_alone(self, host_file, seeded_root, mock_registry, mock_adapter):
        apply_host(_context(host_file, seeded_root, mock_registry))
        first = (seeded_root / ACCESS_KEYS).read_text()

        _mark_host_satisfied(mock_adapter, seeded_root)
        result = apply_host(_context(host_file, seeded_root, mock_registry, which=lambda name: f"/usr/bin/{name}"))

        assert result.get("outline-access-key").status == StepStatus.SKIPPED
        assert mock_adapter.calls_for("outline-access-key") == []
        assert (seeded_root / ACCESS_KEYS).read_text() == first

    def test_missing_api_url_fails_step(self, host_file, seeded_root, mock_registry, mock_adapter):
        (seeded_root / "opt/outline/access.txt").unlink()
        result = apply_host(_context(host_file, seeded_root, mock_registry))

        record = result.get("outline-access-key")
        assert record.status == StepStatus.FAILED
        assert "apiUrl" in record.error
        assert not (seeded_root / ACCESS_KEYS).exists()
        assert "outline-access-key:create" not in mock_adapter.called_ids

    def test_rollback_deletes_created_key(self, host_file, seeded_root, mock_registry, mock_adapter):
        mock_adapter.set_failure("kernel-tuning:reload", "sysctl: permission denied")
        result = apply_host(_context(host_file, seeded_root, mock_registry))

        assert result.get("outline-access-key").status == StepStatus.ROLLED_BACK
        create, _ = _key_call(mock_adapter, "outline-access-key:create")
        delete, body = _key_call(mock_adapter, "outline-access-key:delete")
        assert delete[delete.index("-X") + 1] == "DELETE"
        assert delete[-1] == create[-1]
        assert body is None
        assert not (seeded_root / ACCESS_KEYS).exists()

    def test_failed_create_writes_no_record(self, host_file, seeded_root, mock_registry, mock_adapter):
        mock_adapter.set_failure("outline-access-key:create", "curl: (7) Failed to connect")
        result = apply_host(_context(host_file, seeded_root, mock_registry))

        assert result.get("outline-access-key").status == StepStatus.FAILED
        assert not (seeded_root / ACCESS_KEYS).exists()
        assert "outline-access-key:delete" not in mock_adapter.called_ids


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    def test_missing_certificate(self, host_file, seeded_root, mock_registry):
        for pem in (seeded_root / "etc/letsencrypt/live/vpn.example.com").iterdir():
            pem.unlink()
        result = apply_host(_context(host_file, seeded_root, mock_registry))

        record = result.get("reverse-proxy-vhost")
        assert record.status == StepStatus.FAILED
        assert record.error_type == "CertificateNotFoundError"
        assert "certbot" in record.remediation
        assert not (seeded_root / "etc/nginx/sites-available/v2ray").exists()
        assert result.exit_code == 1

    def test_nginx_test_failure_restores_files(self, host_file, seeded_root, mock_registry, mock_adapter):
        default_site = seeded_root / "etc/nginx/sites-enabled/default"
        default_site.parent.mkdir(parents=True)
        default_site.write_text("server { listen 80 default_server; }\n")
        mock_adapter.set_failure("reverse-proxy-vhost:test", "nginx: [emerg] unknown directive")

        result = apply_host(_context(host_file, seeded_root, mock_registry))

        assert result.get("reverse-proxy-vhost").status == StepStatus.FAILED
        assert not (seeded_root / "etc/nginx/sites-available/v2ray").exists()
        assert not (seeded_root / "etc/nginx/sites-enabled/v2ray").is_symlink()
        assert default_site.read_text() == "server { listen 80 default_server; }\n"
        # earlier steps were rolled back, including the proxy config
        assert result.get("v2ray-config").status == StepStatus.ROLLED_BACK
        assert not (seeded_root / "usr/local/etc/v2ray/config.json").exists()
        # independent steps after the failure still ran
        assert result.get("firewall").status == StepStatus.APPLIED

    def test_outline_cipher_needs_installed_server(self, host_file, tmp_root, mock_registry):
        result = apply_host(_context(host_file, tmp_root, mock_registry))
        record = result.get("outline-cipher")
        assert record.status == StepStatus.FAILED
        assert record.error_type == "StepApplyError"
        assert "shadowbox_config.json" in record.error

    def test_firewall_rollback_disables_fresh_firewall(self, host_file, seeded_root, mock_registry, mock_adapter):
        mock_adapter.set_failure("kernel-tuning:reload", "sysctl: cannot stat /proc/sys/net/core/default_qdisc")
        result = apply_host(_context(host_file, seeded_root, mock_registry))

        assert result.get("kernel-tuning").status == StepStatus.FAILED
        assert result.get("firewall").status == StepStatus.ROLLED_BACK
        assert "firewall:disable" in mock_adapter.called_ids
        assert not (seeded_root / "etc/sysctl.d/99-provision.conf").exists()
        assert not (seeded_root / "etc/provision/firewall.rules").exists()


# ── Preview & validation ─────────────────────────────────────────────


class TestPreview:
    def test_service_config_placeholder_before_apply(self, host_file, tmp_root, mock_registry):
        ctx = _context(host_file, tmp_root, mock_registry)
        artifact = preview_artifact(ctx.host, ArtifactKind.SERVICE_CONFIG, ctx.hooks, ctx.probe)
        assert PREVIEW_CLIENT_ID in artifact.rendered_text
        assert ctx.secrets.issued == []

    def test_service_config_uses_deployed_id(self, host_file, seeded_root, mock_registry):
        apply_host(_context(host_file, seeded_root, mock_registry))
        ctx = _context(host_file, seeded_root, mock_registry)
        artifact = preview_artifact(ctx.host, ArtifactKind.SERVICE_CONFIG, ctx.hooks, ctx.probe)
        assert _client_id(seeded_root) in artifact.rendered_text

    def test_validate_rejects_bad_kernel_param(self, tmp_path, tmp_root, mock_registry):
        host_file = tmp_path / "host.yml"
        host_file.write_text(textwrap.dedent("""\
            name: vpn-test
            domain: vpn.example.com
            kernel_params:
              "not a key": "1"
        """))
        ctx = _context(host_file, tmp_root, mock_registry)
        with pytest.raises(InvalidConfigError):
            validate_host(ctx.host, ctx.hooks, ctx.probe)

    def test_validate_renders_every_kind(self, host_file, tmp_root, mock_registry):
        ctx = _context(host_file, tmp_root, mock_registry)
        kinds = [a.kind for a in validate_host(ctx.host, ctx.hooks, ctx.probe)]
        assert kinds == list(ArtifactKind)


# ── Hooks ────────────────────────────────────────────────────────────


class TestHooks:
    def test_failed_receipt_raises(self, host_file, tmp_root, mock_registry, mock_adapter):
        hooks: Hooks = _context(host_file, tmp_root, mock_registry).hooks
        mock_adapter.set_failure("apt:install", "E: Unable to locate package nope")
        with pytest.raises(StepApplyError, match="Unable to locate"):
            hooks.apt("base-packages", "install", ["nope"])

    def test_transaction_restores_on_error(self, host_file, tmp_root, mock_registry):
        hooks: Hooks = _context(host_file, tmp_root, mock_registry).hooks
        target = tmp_root / "etc/motd"
        target.parent.mkdir(parents=True)
        target.write_text("welcome\n")

        with pytest.raises(RuntimeError):
            with hooks.transaction("/etc/motd"):
                hooks.writer.write("/etc/motd", "changed\n")
                raise RuntimeError("boom")
        assert target.read_text() == "welcome\n"

    def test_action_is_tagged_with_step(self, host_file, tmp_root, mock_registry, mock_adapter):
        hooks: Hooks = _context(host_file, tmp_root, mock_registry).hooks
        hooks.systemd("v2ray-service", "start", "v2ray")
        action = mock_adapter.call_log[-1].action
        assert action.id == "systemd:start:v2ray"
        assert action.step == "v2ray-service"
        assert action.params == {"operation": "start", "unit": "v2ray"}
