"""Engine facade that wires configuration, planning, execution and deployment."""

import threading
from typing import List, Optional

from vmship.config.parser import DEFAULT_CONFIG_FILE, Config
from vmship.deploy.channel import RemoteChannel, SSHChannel
from vmship.deploy.commands import ContainerCommands
from vmship.deploy.health import CommandHealthProbe, HealthProbe, HttpHealthProbe
from vmship.deploy.models import DeploymentRecord
from vmship.deploy.orchestrator import ContainerDeployer
from vmship.history.manager import DeploymentHistory
from vmship.orchestrator.dependency_graph import DependencyGraph, build
from vmship.orchestrator.executor import ExecutionReport, PlanExecutor, ProgressCallback
from vmship.orchestrator.planner import ChangePlanner, PlanAction
from vmship.providers.aws import AWSProvider
from vmship.providers.base import ProviderClient
from vmship.providers.memory import InMemoryProvider
from vmship.state.store import FileStateStore
from vmship.utils.errors import ErrorContext, TargetResolutionError
from vmship.utils.logging import get_logger
from vmship.utils.retry import RetryPolicy

logger = get_logger(__name__)


class Engine:
    """Coordinates the plan, apply and deploy operations for one project.

    Collaborators not passed in are built from the configuration file.
    """

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_FILE,
        provider: Optional[ProviderClient] = None,
        state_store: Optional[FileStateStore] = None,
        channel: Optional[RemoteChannel] = None,
        probe: Optional[HealthProbe] = None,
        history: Optional[DeploymentHistory] = None
    ):
        """Initialize engine.

        Args:
            config_path: Default configuration file
            provider: Provider client (default: from project.provider)
            state_store: State store (default: file from state.path)
            channel: Remote channel (default: SSH with deployment.ssh settings)
            probe: Health probe (default: from deployment.health)
            history: Deployment history (default: deployment.history_dir)
        """
        self.config_path = config_path
        self._provider = provider
        self._state_store = state_store
        self._channel = channel
        self._probe = probe
        self._history = history
        self.planner = ChangePlanner()
        self.logger = get_logger(__name__)

    def load_config(self, config_path: Optional[str] = None) -> Config:
        return Config(config_path or self.config_path).load()

    def build_graph(self, config: Config) -> DependencyGraph:
        """Build the validated dependency graph of the declared resources."""
        return build(config.resource_specs())

    def plan(self, config_path: Optional[str] = None) -> List[PlanAction]:
        """Compute the change plan without mutating anything.

        Raises:
            DependencyError: If the declared graph is invalid
        """
        config = self.load_config(config_path)
        graph = self.build_graph(config)
        return self.planner.plan(graph, self.state_store(config).load())

    def apply(
        self,
        config_path: Optional[str] = None,
        workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
        plan: Optional[List[PlanAction]] = None
    ) -> ExecutionReport:
        """Plan from a fresh state load and execute the plan.

        Args:
            config_path: Configuration file (default: the engine's)
            workers: Override of executor.workers
            cancel_event: Cancellation signal
            progress_callback: Optional callback for progress updates
            plan: Previously computed plan to execute instead of re-planning

        Raises:
            DependencyError: If the declared graph is invalid
            ConcurrentModificationError: If another run changed the state
        """
        config = self.load_config(config_path)
        store = self.state_store(config)
        if plan is None:
            plan = self.planner.plan(self.build_graph(config), store.load())

        settings = config.executor
        executor = PlanExecutor(
            provider=self.provider(config),
            state_store=store,
            max_workers=workers or settings.workers,
            timeout=settings.timeout,
            retry_policy=self.retry_policy(config),
        )
        return executor.apply(plan, cancel_event=cancel_event, progress_callback=progress_callback)

    def deploy(
        self,
        artifact_ref: str,
        config_path: Optional[str] = None,
        target_host: Optional[str] = None,
        previous_artifact_ref: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> DeploymentRecord:
        """Deploy an artifact to the host discovered from state.

        Raises:
            TargetResolutionError: If no target host can be determined
        """
        config = self.load_config(config_path)
        settings = config.deployment
        host = target_host or self.resolve_target_host(config)
        channel = self.channel(config)

        if self._probe is not None:
            probe = self._probe
        elif settings.health.probe == "command":
            probe = CommandHealthProbe(
                channel,
                ContainerCommands(settings).probe(),
                timeout=settings.health.timeout + settings.ssh.connect_timeout,
            )
        else:
            probe = HttpHealthProbe(port=settings.port, settings=settings.health)

        deployer = ContainerDeployer(
            channel=channel,
            probe=probe,
            settings=settings,
            history=self.history(config),
        )
        return deployer.deploy(
            artifact_ref,
            host,
            previous_artifact_ref=previous_artifact_ref,
            cancel_event=cancel_event,
        )

    def resolve_target_host(self, config: Config) -> str:
        """Read the target host from the state record of the host resource."""
        settings = config.deployment
        if not settings.host_resource:
            raise TargetResolutionError(
                "No target host: deployment.host_resource is not configured",
                suggestions=["Set deployment.host_resource or pass --host"],
            )

        record = self.state_store(config).get(settings.host_resource)
        if record is None:
            raise TargetResolutionError(
                f"Resource '{settings.host_resource}' has not been applied yet",
                context=ErrorContext(resource_id=settings.host_resource),
                suggestions=["Run 'vmship apply' first"],
            )

        host = record.output(settings.host_attribute)
        if not host:
            raise TargetResolutionError(
                f"Resource '{settings.host_resource}' has no '{settings.host_attribute}' value",
                context=ErrorContext(resource_id=settings.host_resource, remote_id=record.remote_id),
            )
        return str(host)

    def state_store(self, config: Config) -> FileStateStore:
        if self._state_store is None:
            self._state_store = FileStateStore(str(config.state_path), lock_timeout=config.state.lock_timeout)
        return self._state_store

    def provider(self, config: Config) -> ProviderClient:
        if self._provider is None:
            project = config.project
            if project.provider == "memory":
                self._provider = InMemoryProvider()
            else:
                self._provider = AWSProvider(region=project.region, profile=project.profile)
        return self._provider

    def channel(self, config: Config) -> RemoteChannel:
        if self._channel is None:
            ssh = config.deployment.ssh
            self._channel = SSHChannel(
                user=ssh.user,
                port=ssh.port,
                identity_file=ssh.identity_file,
                options=ssh.options,
                connect_timeout=ssh.connect_timeout,
            )
        return self._channel

    def history(self, config: Config) -> DeploymentHistory:
        if self._history is None:
            self._history = DeploymentHistory(str(config.history_dir))
        return self._history

    @staticmethod
    def retry_policy(config: Config) -> Optional[RetryPolicy]:
        retry = config.executor.retry
        if not retry.enabled:
            return None
        return RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
        )
