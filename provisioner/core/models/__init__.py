"""
Domain models — step, artifact, credential and host types.

All models are re-exported here for convenient access:

    from provisioner.core.models import Step, StepStatus, HostSpec, ConfigArtifact
"""

from provisioner.core.models.action import Action, Receipt
from provisioner.core.models.artifact import (
    ArtifactKind,
    AutoUpgrades,
    ConfigArtifact,
    DaemonConfig,
    FileLimits,
    FirewallRule,
    FirewallRuleSet,
    KernelParams,
    ResolverConfig,
    ReverseProxyVHost,
    ServiceConfig,
    Transport,
)
from provisioner.core.models.credential import Credential
from provisioner.core.models.host import HostSpec
from provisioner.core.models.state import HostState, RunRecord
from provisioner.core.models.step import (
    PlanResult,
    StatusReport,
    Step,
    StepResult,
    StepState,
    StepStatus,
)

__all__ = [
    "Action",
    "ArtifactKind",
    "AutoUpgrades",
    "ConfigArtifact",
    "Credential",
    "DaemonConfig",
    "FileLimits",
    "FirewallRule",
    "FirewallRuleSet",
    "HostSpec",
    "HostState",
    "KernelParams",
    "PlanResult",
    "Receipt",
    "ResolverConfig",
    "ReverseProxyVHost",
    "RunRecord",
    "ServiceConfig",
    "StatusReport",
    "Step",
    "StepResult",
    "StepState",
    "StepStatus",
    "Transport",
]
