"""Configuration management for vmship."""

from .models import (
    DeploymentConfig,
    ExecutorConfig,
    HealthConfig,
    ProjectConfig,
    ResourceConfig,
    RetryConfig,
    SSHConfig,
    StateConfig,
)
from .parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE

__all__ = [
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
    "ProjectConfig",
    "StateConfig",
    "ExecutorConfig",
    "RetryConfig",
    "ResourceConfig",
    "DeploymentConfig",
    "SSHConfig",
    "HealthConfig",
]
