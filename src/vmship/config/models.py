"""Pydantic models for configuration schema."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from vmship.state.models import ResourceKind


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    region: str = Field("us-east-1", min_length=1)
    provider: str = Field("aws", pattern="^(aws|memory)$")
    profile: Optional[str] = Field(None, description="AWS profile name")
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format (e.g. us-east-1)."""
        parts = v.split("-")
        if len(parts) < 3 or not parts[-1].isdigit():
            raise ValueError(f"Invalid AWS region: {v}")
        return v


class StateConfig(BaseModel):
    """State store configuration."""

    path: str = Field(".vmship/state.json", min_length=1)
    lock_timeout: float = Field(30.0, gt=0)


class RetryConfig(BaseModel):
    """Retry policy for provider calls. Disabled unless enabled explicitly."""

    enabled: bool = False
    max_attempts: int = Field(3, ge=1, le=10)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)
    jitter: bool = True


class ExecutorConfig(BaseModel):
    """Plan executor configuration."""

    workers: int = Field(1, ge=1, le=32)
    timeout: Optional[float] = Field(None, gt=0, description="Seconds per provider call")
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ResourceConfig(BaseModel):
    """A declared resource."""

    id: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z][A-Za-z0-9_-]*$")
    kind: ResourceKind
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("attributes")
    @classmethod
    def validate_tags(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Tags, when given, map tag keys to values."""
        if "tags" in v and not isinstance(v["tags"], dict):
            raise ValueError("attributes.tags must be a mapping of tag keys to values")
        return v


class SSHConfig(BaseModel):
    """SSH access to the target host."""

    user: Optional[str] = "ec2-user"
    port: Optional[int] = Field(None, ge=1, le=65535)
    identity_file: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    connect_timeout: int = Field(10, ge=1)


class HealthConfig(BaseModel):
    """Health probe configuration."""

    probe: str = Field("http", pattern="^(http|command)$")
    path: str = Field("/", pattern="^/")
    attempts: int = Field(5, ge=1, le=100)
    interval: float = Field(2.0, ge=0)
    timeout: float = Field(5.0, gt=0, description="Seconds per probe request")
    expected_status: int = Field(200, ge=100, le=599)


class DeploymentConfig(BaseModel):
    """Container deployment configuration."""

    host_resource: Optional[str] = Field(None, description="Resource ID of the target instance")
    host_attribute: str = Field("public_ip", min_length=1)
    container_name: str = Field("site", pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    port: int = Field(80, ge=1, le=65535, description="Host port the service listens on")
    container_port: int = Field(80, ge=1, le=65535)
    registry: Optional[str] = Field(None, description="Registry host (default: from the artifact)")
    login_command: Optional[str] = Field(None, description="Custom registry login command")
    run_args: List[str] = Field(default_factory=list, description="Extra docker run arguments")
    env: Dict[str, str] = Field(default_factory=dict)
    command_timeout: float = Field(300.0, gt=0)
    history_dir: str = Field(".vmship/history", min_length=1)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    @model_validator(mode="after")
    def validate_env(self):
        """Validate environment variable names."""
        for key in self.env:
            if not key or not (key[0].isalpha() or key[0] == "_"):
                raise ValueError(f"Invalid environment variable name: {key!r}")
        return self
