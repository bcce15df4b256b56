"""
Adapters — pluggable host operations.

Each adapter wraps one external tool behind the Adapter protocol and
returns Receipts instead of raising.
"""

from provisioner.adapters.base import Adapter, ExecutionContext
from provisioner.adapters.mock import MockAdapter
from provisioner.adapters.registry import AdapterRegistry

__all__ = ["Adapter", "AdapterRegistry", "ExecutionContext", "MockAdapter"]
