"""Shared fixtures for the vmship test suite."""

import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest
import yaml

from vmship.config.models import DeploymentConfig, HealthConfig
from vmship.deploy.channel import RemoteChannel
from vmship.deploy.health import HealthProbe, ProbeResult
from vmship.deploy.models import CommandResult
from vmship.orchestrator.dependency_graph import build
from vmship.providers.memory import InMemoryProvider
from vmship.state.models import ResourceKind, ResourceSpec
from vmship.state.store import FileStateStore


def make_spec(
    resource_id: str,
    kind: ResourceKind = ResourceKind.COMPUTE_INSTANCE,
    depends_on: Sequence[str] = (),
    **attributes
) -> ResourceSpec:
    """Resource spec whose ``name`` attribute defaults to its ID."""
    attributes.setdefault("name", resource_id)
    return ResourceSpec(id=resource_id, kind=kind, attributes=attributes, depends_on=tuple(depends_on))


def abc_specs() -> List[ResourceSpec]:
    """A security group, a repository after it, and an instance using both."""
    return [
        make_spec("A", ResourceKind.SECURITY_GROUP),
        make_spec("B", ResourceKind.REPOSITORY, depends_on=["A"]),
        make_spec("C", security_group_ids=["${A.group_id}"], depends_on=["B"]),
    ]


class ScriptedChannel(RemoteChannel):
    """Channel that records commands and fails the ones it is told to."""

    def __init__(self):
        self.commands: List[Tuple[str, str]] = []  # (host, command)
        self._failures: List[Dict] = []
        self.after_command: Optional[Callable[[str], None]] = None

    def fail_on(self, fragment: str, exit_code: int = 1, stderr: str = "error", times: int = 1) -> None:
        self._failures.append({"fragment": fragment, "exit_code": exit_code, "stderr": stderr, "times": times})

    def run_commands(self, host, commands, timeout=None):
        results = []
        failed = False
        for command in commands:
            if failed:
                results.append(CommandResult(command=command))
                continue
            self.commands.append((host, command))
            result = CommandResult(command=command, exit_code=0, stdout="ok")
            for failure in self._failures:
                if failure["times"] > 0 and failure["fragment"] in command:
                    failure["times"] -= 1
                    result = CommandResult(
                        command=command, exit_code=failure["exit_code"], stderr=failure["stderr"]
                    )
                    break
            results.append(result)
            failed = not result.succeeded
            if self.after_command:
                self.after_command(command)
        return results

    def ran(self, fragment: str) -> List[str]:
        return [command for _, command in self.commands if fragment in command]


class ScriptedProbe(HealthProbe):
    """Probe returning scripted answers; the last answer repeats."""

    def __init__(self, answers: Iterable[bool] = (True,)):
        self.answers = list(answers)
        self.checked: List[str] = []
        self._lock = threading.Lock()

    def check(self, host: str) -> ProbeResult:
        with self._lock:
            self.checked.append(host)
            healthy = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        return ProbeResult(healthy=healthy, detail="scripted")


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def store(tmp_path) -> FileStateStore:
    return FileStateStore(str(tmp_path / "state.json"), lock_timeout=5.0)


@pytest.fixture
def abc_graph():
    return build(abc_specs())


@pytest.fixture
def channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture
def deploy_settings() -> DeploymentConfig:
    """Three probe attempts with no wait between them."""
    return DeploymentConfig(health=HealthConfig(attempts=3, interval=0))


@pytest.fixture
def write_config(tmp_path):
    """Write a configuration file into tmp_path and return its path."""
    def write(resources: Optional[List[Dict]] = None, **sections) -> str:
        data = {"project": {"name": "demo", "region": "us-east-1", "provider": "memory"}}
        if resources is not None:
            data["resources"] = resources
        data.update(sections)
        path = tmp_path / "vmship.yaml"
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return str(path)
    return write
