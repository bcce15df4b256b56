"""
Shared test fixtures and configuration.
"""

import textwrap
from pathlib import Path

import pytest

from provisioner.adapters.mock import MockAdapter
from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.engine.probe import StateProbe

HOST_YML = textwrap.dedent("""\
    name: vpn-test
    domain: vpn.example.com
    description: "Test VPN host"
""")


@pytest.fixture
def mock_adapter() -> MockAdapter:
    return MockAdapter()


@pytest.fixture
def mock_registry(mock_adapter: MockAdapter) -> AdapterRegistry:
    """Adapter registry that routes every action to ``mock_adapter``."""
    registry = AdapterRegistry()
    registry.set_mock_mode(True, mock_adapter)
    return registry


@pytest.fixture
def tmp_root(tmp_path: Path) -> Path:
    """Staging filesystem root for written artifacts."""
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def probe(mock_registry: AdapterRegistry, tmp_root: Path) -> StateProbe:
    """Probe over the mock registry with no executables on PATH."""
    return StateProbe(mock_registry, root=tmp_root, which=lambda name: None)


@pytest.fixture
def host_file(tmp_path: Path) -> Path:
    path = tmp_path / "host.yml"
    path.write_text(HOST_YML)
    return path
