"""Container replacement on the target host with health check and rollback."""

import threading
import uuid
from datetime import datetime
from typing import List, Optional, Tuple, TYPE_CHECKING

from vmship.config.models import DeploymentConfig
from vmship.deploy.channel import RemoteChannel
from vmship.deploy.commands import ContainerCommands
from vmship.deploy.health import HealthProbe
from vmship.deploy.models import (
    CommandOutcome,
    CommandRecord,
    DeploymentRecord,
    DeploymentStatus,
    HealthAttempt,
    StatusTransition,
)
from vmship.utils.errors import DeploymentError, ErrorContext, HealthCheckError, VmshipError
from vmship.utils.logging import get_logger, log_context

if TYPE_CHECKING:
    from vmship.history.manager import DeploymentHistory

logger = get_logger(__name__)

DEPLOY_PHASE = "deploy"
ROLLBACK_PHASE = "rollback"

# Pseudo-command recorded for the health probe loop
PROBE_STEP = ("probe", "health probe")


class DeploymentCancelled(DeploymentError):
    """The cancellation signal was set before a step could start."""


def new_deployment_id() -> str:
    return f"dep-{datetime.utcnow().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"


class ContainerDeployer:
    """Replaces the service container on a single host.

    Steps run in strict order: registry login, pull, stop the running
    container, start the new one, then probe until healthy. Any failure
    triggers exactly one rollback to the previous artifact.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        probe: HealthProbe,
        settings: Optional[DeploymentConfig] = None,
        history: Optional["DeploymentHistory"] = None
    ):
        """
        Initialize ContainerDeployer.

        Args:
            channel: Remote execution channel to the host
            probe: Health probe for the service
            settings: Deployment settings (container name, ports, health budget)
            history: Optional history that stores every finished record
        """
        self.channel = channel
        self.probe = probe
        self.settings = settings or DeploymentConfig()
        self.history = history
        self.commands = ContainerCommands(self.settings)

    def deploy(
        self,
        artifact_ref: str,
        target_host: str,
        previous_artifact_ref: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> DeploymentRecord:
        """
        Deploy an artifact to the target host.

        Args:
            artifact_ref: Image reference to deploy
            target_host: Host name or address
            previous_artifact_ref: Rollback target (default: last active artifact in history)
            cancel_event: When set, no further step starts

        Returns:
            DeploymentRecord in status Healthy, RolledBack or Failed
        """
        cancel_event = cancel_event or threading.Event()
        if previous_artifact_ref is None and self.history is not None:
            previous_artifact_ref = self.history.last_active_artifact(target_host)

        record = DeploymentRecord(
            deployment_id=new_deployment_id(),
            artifact_ref=artifact_ref,
            target_host=target_host,
            previous_artifact_ref=previous_artifact_ref,
            transitions=[StatusTransition(status=DeploymentStatus.PENDING)],
        )

        with log_context(deployment_id=record.deployment_id, host=target_host):
            logger.info(f"Deploying {artifact_ref} to {target_host}")
            try:
                if cancel_event.is_set():
                    self._cancel_remaining(record, DEPLOY_PHASE, self._steps(artifact_ref) + [PROBE_STEP])
                    raise DeploymentCancelled("Deployment cancelled before it started")

                record.transition(DeploymentStatus.IN_PROGRESS)
                self._release(record, artifact_ref, DEPLOY_PHASE, cancel_event)
                record.transition(DeploymentStatus.HEALTHY, note="Health probe succeeded")
                logger.info(f"Deployment of {artifact_ref} is healthy")

            except DeploymentCancelled as e:
                record.error = e.message
                record.transition(DeploymentStatus.FAILED, note="cancelled")
                logger.warning("Deployment cancelled; remaining steps were not run")

            except VmshipError as e:
                record.error = e.message
                record.transition(DeploymentStatus.FAILED, note=e.message)
                logger.error(f"Deployment failed: {e.message}")
                self._rollback(record, cancel_event)

            finally:
                record.finished_at = datetime.utcnow()
                if self.history is not None:
                    self.history.save(record)

        return record

    def _rollback(self, record: DeploymentRecord, cancel_event: threading.Event) -> None:
        """Re-deploy the previous artifact once."""
        previous = record.previous_artifact_ref
        if not previous:
            record.rollback_error = "No previous artifact to roll back to"
            logger.error("No previous artifact recorded; manual intervention required")
            return

        logger.warning(f"Rolling back to {previous}")
        try:
            self._release(record, previous, ROLLBACK_PHASE, cancel_event)
        except DeploymentCancelled as e:
            record.rollback_error = e.message
            logger.warning("Rollback cancelled; manual intervention required")
            return
        except VmshipError as e:
            record.rollback_error = e.message
            logger.critical(f"Rollback to {previous} failed: {e.message}; manual intervention required")
            return

        record.transition(DeploymentStatus.ROLLED_BACK, note=f"Restored {previous}")
        logger.info(f"Rolled back to {previous}")

    def _steps(self, artifact_ref: str) -> List[Tuple[str, str]]:
        """(step, command) pairs in execution order."""
        steps = []
        login = self.commands.login(artifact_ref)
        if login:
            steps.append(("login", login))
        steps.append(("pull", self.commands.pull(artifact_ref)))
        steps.append(("stop", self.commands.stop()))
        steps.append(("run", self.commands.run(artifact_ref)))
        return steps

    def _release(
        self,
        record: DeploymentRecord,
        artifact_ref: str,
        phase: str,
        cancel_event: threading.Event
    ) -> None:
        """Run the container steps and the probe loop for one artifact.

        Raises:
            DeploymentCancelled: If cancelled between steps
            DeploymentError: If a command fails
            HealthCheckError: If the probe never succeeds
            ChannelError: If the host cannot be reached
        """
        steps = self._steps(artifact_ref)
        host = record.target_host

        for index, (step, command) in enumerate(steps):
            if cancel_event.is_set():
                self._cancel_remaining(record, phase, steps[index:] + [PROBE_STEP])
                raise DeploymentCancelled(f"{phase.capitalize()} cancelled before step '{step}'")

            result = self.channel.run(host, command, timeout=self.settings.command_timeout)
            output = result.output

            if result.succeeded:
                outcome = CommandOutcome.SUCCEEDED
            elif step == "stop" and self.commands.is_missing_container(output):
                outcome = CommandOutcome.TOLERATED
            else:
                outcome = CommandOutcome.FAILED

            record.commands.append(CommandRecord(
                phase=phase,
                step=step,
                command=command,
                exit_code=result.exit_code,
                output=output,
                outcome=outcome,
            ))

            if outcome == CommandOutcome.FAILED:
                raise DeploymentError(
                    f"Step '{step}' failed on {host} (exit {result.exit_code}): {output or 'no output'}",
                    context=ErrorContext(host=host, operation=step),
                )

        self._wait_until_healthy(record, phase, cancel_event)

    def _wait_until_healthy(
        self,
        record: DeploymentRecord,
        phase: str,
        cancel_event: threading.Event
    ) -> None:
        health = self.settings.health
        host = record.target_host

        for attempt in range(1, health.attempts + 1):
            result = self.probe.check(host)
            record.health_attempts.append(HealthAttempt(
                phase=phase, attempt=attempt, healthy=result.healthy, detail=result.detail
            ))
            if result.healthy:
                logger.info(f"Health probe succeeded on attempt {attempt}/{health.attempts}")
                return

            logger.debug(f"Health probe attempt {attempt}/{health.attempts} failed: {result.detail}")
            if attempt < health.attempts and cancel_event.wait(health.interval):
                self._cancel_remaining(record, phase, [PROBE_STEP])
                raise DeploymentCancelled(f"{phase.capitalize()} cancelled during health probe")

        raise HealthCheckError(
            f"Service on {host} not healthy after {health.attempts} attempts",
            context=ErrorContext(host=host, operation="probe"),
        )

    @staticmethod
    def _cancel_remaining(
        record: DeploymentRecord,
        phase: str,
        steps: List[Tuple[str, str]]
    ) -> None:
        for step, command in steps:
            record.commands.append(CommandRecord(
                phase=phase, step=step, command=command, outcome=CommandOutcome.CANCELLED
            ))
