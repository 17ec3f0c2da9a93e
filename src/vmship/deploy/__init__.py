"""Container deployment to the target host."""

from .channel import RemoteChannel, SSHChannel
from .commands import ContainerCommands
from .health import CommandHealthProbe, HealthProbe, HttpHealthProbe, ProbeResult
from .models import (
    CommandOutcome,
    CommandRecord,
    CommandResult,
    DeploymentRecord,
    DeploymentStatus,
    HealthAttempt,
    StatusTransition,
)
from .orchestrator import ContainerDeployer

__all__ = [
    "RemoteChannel",
    "SSHChannel",
    "ContainerCommands",
    "HealthProbe",
    "HttpHealthProbe",
    "CommandHealthProbe",
    "ProbeResult",
    "CommandOutcome",
    "CommandRecord",
    "CommandResult",
    "DeploymentRecord",
    "DeploymentStatus",
    "HealthAttempt",
    "StatusTransition",
    "ContainerDeployer",
]
