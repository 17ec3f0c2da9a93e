"""Data models for container deployments."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class DeploymentStatus(Enum):
    """Status of a deployment."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Allowed transitions of the deployment state machine
TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.IN_PROGRESS, DeploymentStatus.FAILED},
    DeploymentStatus.IN_PROGRESS: {DeploymentStatus.HEALTHY, DeploymentStatus.FAILED},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.HEALTHY: set(),
    DeploymentStatus.ROLLED_BACK: set(),
}


class CommandOutcome(Enum):
    """Outcome of one remote command."""

    SUCCEEDED = "succeeded"
    TOLERATED = "tolerated"  # Non-zero exit accepted, e.g. stopping a missing container
    FAILED = "failed"
    CANCELLED = "cancelled"


class CommandResult(BaseModel):
    """Exit status and captured output of one remote command."""

    command: str = Field(..., description="Shell command as sent to the host")
    exit_code: Optional[int] = Field(None, description="Exit status (None if never run)")
    stdout: str = Field("", description="Captured standard output")
    stderr: str = Field("", description="Captured standard error")
    duration: float = Field(0.0, description="Duration in seconds")

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandRecord(BaseModel):
    """Audit entry for a command run during a deployment."""

    phase: str = Field(..., description="Deployment or rollback")
    step: str = Field(..., description="Step name (login, pull, stop, run, probe)")
    command: str = Field(..., description="Shell command")
    exit_code: Optional[int] = Field(None, description="Exit status")
    output: str = Field("", description="Captured output")
    outcome: CommandOutcome = Field(..., description="Command outcome")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class StatusTransition(BaseModel):
    """One state machine transition."""

    status: DeploymentStatus
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    note: Optional[str] = None


class HealthAttempt(BaseModel):
    """Result of one health probe attempt."""

    phase: str = Field(..., description="Deployment or rollback")
    attempt: int = Field(..., ge=1)
    healthy: bool
    detail: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class DeploymentRecord(BaseModel):
    """Audit record of one deployment and its rollback, if any."""

    deployment_id: str = Field(..., description="Unique deployment ID")
    artifact_ref: str = Field(..., description="Artifact (image) reference being deployed")
    target_host: str = Field(..., description="Host the container runs on")
    previous_artifact_ref: Optional[str] = Field(None, description="Rollback target")
    status: DeploymentStatus = Field(DeploymentStatus.PENDING, description="Current status")
    transitions: List[StatusTransition] = Field(default_factory=list)
    commands: List[CommandRecord] = Field(default_factory=list)
    health_attempts: List[HealthAttempt] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = Field(None, description="Error that ended the deployment")
    rollback_error: Optional[str] = Field(None, description="Error that ended the rollback")

    def transition(self, status: DeploymentStatus, note: Optional[str] = None) -> None:
        """Move to a new status and record the transition.

        Raises:
            ValueError: If the state machine does not allow the transition
        """
        if status not in TRANSITIONS[self.status]:
            raise ValueError(f"Invalid deployment transition {self.status.value} -> {status.value}")
        self.status = status
        self.transitions.append(StatusTransition(status=status, note=note))

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
