"""YAML configuration parser for vmship."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from vmship.state.models import ResourceSpec
from vmship.utils.errors import ConfigurationError

from .models import (
    DeploymentConfig,
    ExecutorConfig,
    ProjectConfig,
    ResourceConfig,
    StateConfig,
)

DEFAULT_CONFIG_FILE = "vmship.yaml"


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(
            message,
            suggestions=[f"Fix the listed fields in {DEFAULT_CONFIG_FILE}"] if self.errors else None,
        )

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Configuration manager for vmship."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to vmship.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.state: StateConfig = StateConfig()
        self.executor: ExecutorConfig = ExecutorConfig()
        self.resources: List[ResourceConfig] = []
        self.deployment: DeploymentConfig = DeploymentConfig()

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            ConfigurationError: If the configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self.config_path}",
                suggestions=["Pass --config or create vmship.yaml in the working directory"],
            )

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration must be a mapping at the top level")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        self.state = StateConfig(**self.data.get("state", {}))
        self.executor = ExecutorConfig(**self.data.get("executor", {}))
        self.resources = [ResourceConfig(**item) for item in self.data.get("resources", [])]
        self.deployment = DeploymentConfig(**self.data.get("deployment", {}))

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._check(ProjectConfig, self.data["project"], ["project"]))

        for section, model in (
            ("state", StateConfig),
            ("executor", ExecutorConfig),
            ("deployment", DeploymentConfig),
        ):
            if section in self.data:
                errors.extend(self._check(model, self.data[section], [section]))

        resources = self.data.get("resources", [])
        if not isinstance(resources, list):
            errors.append({"loc": ["resources"], "msg": "Resources must be a list"})
            return errors

        seen = set()
        for idx, item in enumerate(resources):
            errors.extend(self._check(ResourceConfig, item, ["resources", idx]))
            resource_id = item.get("id") if isinstance(item, dict) else None
            if resource_id in seen:
                errors.append({
                    "loc": ["resources", idx, "id"],
                    "msg": f"Duplicate resource id '{resource_id}'",
                })
            seen.add(resource_id)

        host_resource = (self.data.get("deployment") or {}).get("host_resource")
        if host_resource and host_resource not in seen:
            errors.append({
                "loc": ["deployment", "host_resource"],
                "msg": f"Unknown resource '{host_resource}'",
            })

        return errors

    @staticmethod
    def _check(model: type, data: Any, loc: List) -> List[Dict]:
        """Validate one section, prefixing error locations."""
        if not isinstance(data, dict):
            return [{"loc": loc, "msg": "Must be a mapping"}]
        try:
            model(**data)
        except ValidationError as e:
            return [
                {"loc": loc + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def resource_specs(self) -> List[ResourceSpec]:
        """Declared resources in file order, as ResourceSpecs.

        Project tags are merged under each resource's own ``tags``, which
        win on key clashes.
        """
        specs = []
        for resource in self.resources:
            attributes = dict(resource.attributes)
            if self.project.tags:
                attributes["tags"] = {**self.project.tags, **attributes.get("tags", {})}
            specs.append(ResourceSpec(
                id=resource.id,
                kind=resource.kind,
                attributes=attributes,
                depends_on=tuple(resource.depends_on),
            ))
        return specs

    def resolve_path(self, path: str) -> Path:
        """Resolve a path relative to the configuration file's directory."""
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.config_path.resolve().parent / candidate

    @property
    def state_path(self) -> Path:
        return self.resolve_path(self.state.path)

    @property
    def history_dir(self) -> Path:
        return self.resolve_path(self.deployment.history_dir)

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        def dump(model: Optional[BaseModel]) -> Dict:
            return model.model_dump(mode="json") if model else {}

        return {
            "project": dump(self.project),
            "state": dump(self.state),
            "executor": dump(self.executor),
            "resources": [dump(resource) for resource in self.resources],
            "deployment": dump(self.deployment),
        }
