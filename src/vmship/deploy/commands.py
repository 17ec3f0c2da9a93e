"""Shell commands that manage the service container on the target host."""

import re
import shlex
from typing import List, Optional

from vmship.config.models import DeploymentConfig

# <account>.dkr.ecr.<region>.amazonaws.com
ECR_REGISTRY_PATTERN = re.compile(r"^\d{12}\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com(\.cn)?$")

# Output docker prints when the container to stop does not exist
NO_SUCH_CONTAINER = "No such container"


def registry_host(artifact_ref: str) -> Optional[str]:
    """Registry host of an image reference, or None for Docker Hub images.

    The first path component is a registry host when it contains a dot or
    a port, or is ``localhost``.
    """
    if "/" not in artifact_ref:
        return None
    first = artifact_ref.split("/", 1)[0]
    if "." in first or ":" in first or first == "localhost":
        return first
    return None


class ContainerCommands:
    """Builds the docker commands for one deployment."""

    def __init__(self, settings: DeploymentConfig):
        self.settings = settings

    def login(self, artifact_ref: str) -> Optional[str]:
        """Registry login command, or None when the registry needs no login."""
        if self.settings.login_command:
            return self.settings.login_command

        registry = self.settings.registry or registry_host(artifact_ref)
        if registry is None:
            return None

        match = ECR_REGISTRY_PATTERN.match(registry)
        if match:
            region = match.group(1)
            return (
                f"aws ecr get-login-password --region {shlex.quote(region)} "
                f"| docker login --username AWS --password-stdin {shlex.quote(registry)}"
            )
        # Other registries rely on credentials already stored on the host
        return None

    def pull(self, artifact_ref: str) -> str:
        return f"docker pull {shlex.quote(artifact_ref)}"

    def stop(self) -> str:
        name = shlex.quote(self.settings.container_name)
        return f"docker stop {name} && docker rm {name}"

    def run(self, artifact_ref: str) -> str:
        parts: List[str] = [
            "docker", "run", "-d",
            "--name", self.settings.container_name,
            "--restart", "unless-stopped",
            "-p", f"{self.settings.port}:{self.settings.container_port}",
        ]
        for key, value in sorted(self.settings.env.items()):
            parts.extend(["-e", f"{key}={value}"])
        parts.extend(self.settings.run_args)
        parts.append(artifact_ref)
        return " ".join(shlex.quote(part) for part in parts)

    def probe(self) -> str:
        """curl command that succeeds only on the expected HTTP status."""
        health = self.settings.health
        url = f"http://localhost:{self.settings.port}{health.path}"
        return (
            f"test \"$(curl -s -o /dev/null -w '%{{http_code}}' --max-time {health.timeout:g} "
            f"{shlex.quote(url)})\" = {health.expected_status}"
        )

    @staticmethod
    def is_missing_container(output: str) -> bool:
        return NO_SUCH_CONTAINER in output
