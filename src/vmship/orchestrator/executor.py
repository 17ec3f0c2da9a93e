"""Plan executor with dependency-aware parallel execution."""

import hashlib
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from vmship.orchestrator.planner import ActionType, PlanAction
from vmship.orchestrator.references import resolve_references
from vmship.providers.base import ProviderClient
from vmship.state.models import StateRecord
from vmship.state.store import FileStateStore
from vmship.utils.errors import (
    ConcurrentModificationError,
    ConflictError,
    DependencyError,
    ErrorContext,
    ErrorSeverity,
    NotFoundError,
    ProviderTimeoutError,
    ResourceNotFoundError,
    UnresolvedReferenceError,
    VmshipError,
    error_handler,
)
from vmship.utils.logging import get_logger
from vmship.utils.retry import RetryPolicy

logger = get_logger(__name__)


class ActionOutcome(Enum):
    """Outcome of a single plan action."""
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"  # A dependency failed, was skipped or was cancelled
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionStatus(Enum):
    """Overall status of an apply run."""
    FULL_SUCCESS = "full_success"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


EXIT_CODES = {
    ExecutionStatus.FULL_SUCCESS: 0,
    ExecutionStatus.PARTIAL_FAILURE: 3,
    ExecutionStatus.TOTAL_FAILURE: 4,
}


@dataclass
class ActionResult:
    """Result of executing a single plan action."""

    logical_id: str
    action: ActionType
    outcome: ActionOutcome
    record: Optional[StateRecord] = None  # Committed record (create/update)
    error: Optional[VmshipError] = None
    attempts: int = 0
    duration: float = 0.0  # seconds
    blocked_by: Optional[str] = None  # Dependency that caused a skip
    possibly_created: bool = False  # A create timed out and may still have made the resource

    def is_success(self) -> bool:
        """Check if the action reached its desired state."""
        return self.outcome in (ActionOutcome.APPLIED, ActionOutcome.UNCHANGED)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'logical_id': self.logical_id,
            'action': self.action.value,
            'outcome': self.outcome.value,
            'attempts': self.attempts,
            'duration': round(self.duration, 3),
        }
        if self.record is not None:
            data['remote_id'] = self.record.remote_id
            data['version'] = self.record.version
        if self.error is not None:
            data['error'] = self.error.to_dict()
        if self.blocked_by:
            data['blocked_by'] = self.blocked_by
        if self.possibly_created:
            data['possibly_created'] = True
        return data


@dataclass
class ExecutionReport:
    """Structured result of an apply run."""

    results: List[ActionResult] = field(default_factory=list)  # Plan order
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    @property
    def status(self) -> ExecutionStatus:
        if all(result.is_success() for result in self.results):
            return ExecutionStatus.FULL_SUCCESS
        if any(result.outcome == ActionOutcome.APPLIED for result in self.results):
            return ExecutionStatus.PARTIAL_FAILURE
        return ExecutionStatus.TOTAL_FAILURE

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def get(self, logical_id: str) -> Optional[ActionResult]:
        """Get the result for a logical ID, or None if it was not in the plan."""
        for result in self.results:
            if result.logical_id == logical_id:
                return result
        return None

    def count(self, outcome: ActionOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    def failed(self) -> List[ActionResult]:
        return [result for result in self.results if result.outcome == ActionOutcome.FAILED]

    def possibly_created(self) -> List[ActionResult]:
        """Failed creates whose resource may exist remotely without a state record."""
        return [result for result in self.results if result.possibly_created]

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for JSON output."""
        return {
            'status': self.status.value,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration': round(self.duration, 3),
            'summary': {outcome.value: self.count(outcome) for outcome in ActionOutcome},
            'results': [result.to_dict() for result in self.results],
        }


# Called from the scheduling thread: (logical_id, outcome or None when started, error message)
ProgressCallback = Callable[[str, Optional[ActionOutcome], Optional[str]], None]


def create_token(run_id: str, action: PlanAction) -> str:
    """Idempotency key for the create of one action within one apply run."""
    digest = hashlib.sha256(f"{action.logical_id}:{action.expected_version}".encode()).hexdigest()
    return f"vmship-{run_id}-{digest[:16]}"


class PlanExecutor:
    """Applies a change plan through a provider and commits state.

    Each action starts only after every action in its ``depends_on`` has
    been applied or was unchanged. With ``max_workers=1`` actions run one
    at a time in plan order; with more workers independent branches run
    concurrently.
    """

    def __init__(
        self,
        provider: ProviderClient,
        state_store: FileStateStore,
        max_workers: int = 1,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """Initialize plan executor.

        Args:
            provider: Provider client performing remote changes
            state_store: Store receiving a commit after every remote change
            max_workers: Maximum number of concurrent actions
            timeout: Seconds allowed per provider call (None = unbounded)
            retry_policy: Retry policy for provider calls (None = no retries)
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provider = provider
        self.state_store = state_store
        self.max_workers = max_workers
        self.timeout = timeout
        self.retry_policy = retry_policy
        self.logger = get_logger(__name__)

    def apply(
        self,
        plan: Sequence[PlanAction],
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ExecutionReport:
        """Execute a plan.

        Args:
            plan: Ordered plan actions
            cancel_event: When set, no new action starts; in-flight actions finish
            progress_callback: Optional callback for progress updates

        Returns:
            ExecutionReport with one result per action

        Raises:
            ConcurrentModificationError: If a state commit hit a version conflict
        """
        cancel_event = cancel_event or threading.Event()
        run_id = uuid.uuid4().hex[:12]
        start_time = datetime.utcnow()
        started = time.monotonic()
        self.logger.info(f"Applying plan with {len(plan)} actions (workers={self.max_workers})")

        plan_ids = {action.logical_id for action in plan}
        results: Dict[str, ActionResult] = {}
        pending: List[PlanAction] = list(plan)
        running: Dict[Future, PlanAction] = {}
        conflict: Optional[ConflictError] = None

        def finish(action: PlanAction, result: ActionResult) -> None:
            results[action.logical_id] = result
            if progress_callback:
                message = result.error.message if result.error else None
                progress_callback(action.logical_id, result.outcome, message)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while pending or running:
                if conflict is None and not cancel_event.is_set():
                    for action in list(pending):
                        if len(running) >= self.max_workers:
                            break

                        deps = [dep for dep in action.depends_on if dep in plan_ids]
                        blocker = next(
                            (dep for dep in deps if dep in results and not results[dep].is_success()),
                            None
                        )
                        if blocker is not None:
                            pending.remove(action)
                            self.logger.warning(
                                f"Skipping {action.logical_id}: dependency {blocker} did not succeed",
                                extra={'resource_id': action.logical_id, 'action': action.action.value}
                            )
                            finish(action, ActionResult(
                                logical_id=action.logical_id,
                                action=action.action,
                                outcome=ActionOutcome.SKIPPED,
                                blocked_by=blocker,
                            ))
                            continue

                        if not all(dep in results for dep in deps):
                            continue

                        pending.remove(action)
                        if action.action == ActionType.NO_OP:
                            finish(action, ActionResult(
                                logical_id=action.logical_id,
                                action=action.action,
                                outcome=ActionOutcome.UNCHANGED,
                                record=action.record,
                            ))
                            continue

                        if progress_callback:
                            progress_callback(action.logical_id, None, None)
                        running[pool.submit(self._execute_action, action, run_id)] = action

                if not running:
                    # Nothing in flight and nothing could start
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    action = running.pop(future)
                    try:
                        result = future.result()
                    except ConflictError as e:
                        conflict = conflict or e
                        self.logger.error(
                            f"State conflict while committing {action.logical_id}; aborting run",
                            extra={'resource_id': action.logical_id, 'action': action.action.value}
                        )
                        result = ActionResult(
                            logical_id=action.logical_id,
                            action=action.action,
                            outcome=ActionOutcome.FAILED,
                            error=e,
                            attempts=1,
                        )
                    finish(action, result)

        for action in pending:
            finish(action, ActionResult(
                logical_id=action.logical_id,
                action=action.action,
                outcome=ActionOutcome.CANCELLED,
            ))

        report = ExecutionReport(
            results=[results[action.logical_id] for action in plan],
            start_time=start_time,
            end_time=datetime.utcnow(),
            duration=time.monotonic() - started,
        )

        if conflict is not None:
            raise ConcurrentModificationError(conflict, report)

        if report.status == ExecutionStatus.FULL_SUCCESS:
            self.logger.info(
                f"Apply completed: {report.count(ActionOutcome.APPLIED)} applied, "
                f"{report.count(ActionOutcome.UNCHANGED)} unchanged in {report.duration:.1f}s"
            )
        else:
            self.logger.error(
                f"Apply finished with status {report.status.value}: "
                f"{report.count(ActionOutcome.FAILED)} failed, "
                f"{report.count(ActionOutcome.SKIPPED)} skipped, "
                f"{report.count(ActionOutcome.CANCELLED)} cancelled"
            )
        return report

    def _execute_action(self, action: PlanAction, run_id: str) -> ActionResult:
        """Run one action in a worker thread.

        Raises:
            ConflictError: If the state commit lost a race
        """
        extra = {'resource_id': action.logical_id, 'action': action.action.value}
        started = time.monotonic()
        attempts = [0]

        def count_attempt(attempt: int) -> None:
            attempts[0] = attempt

        self.logger.info(f"{action.action.value.capitalize()} {action.logical_id} ({action.kind.value})", extra=extra)

        try:
            if action.action == ActionType.DELETE:
                record = None
                self._delete(action, count_attempt)
            else:
                record = self._create_or_update(action, count_attempt, create_token(run_id, action))
        except ConflictError:
            raise
        except Exception as e:
            error = error_handler.handle_exception(
                e,
                ErrorContext(
                    resource_id=action.logical_id,
                    resource_kind=action.kind.value,
                    operation=action.action.value,
                    remote_id=action.remote_id,
                )
            )
            duration = time.monotonic() - started
            self.logger.error(
                f"{action.action.value.capitalize()} {action.logical_id} failed: {error.message}",
                extra={**extra, 'duration': duration}
            )
            possibly_created = action.action == ActionType.CREATE and isinstance(error, ProviderTimeoutError)
            if possibly_created:
                error.suggestions.append(
                    f"The {action.kind.value} for '{action.logical_id}' may have been created "
                    f"without a state record; check the provider and remove it before re-applying"
                )
                self.logger.warning(
                    f"Create of {action.logical_id} timed out and may have left an untracked resource",
                    extra=extra
                )
            return ActionResult(
                logical_id=action.logical_id,
                action=action.action,
                outcome=ActionOutcome.FAILED,
                error=error,
                attempts=max(attempts[0], 1),
                duration=duration,
                possibly_created=possibly_created,
            )

        duration = time.monotonic() - started
        self.logger.info(
            f"{action.action.value.capitalize()} {action.logical_id} applied in {duration:.2f}s",
            extra={**extra, 'duration': duration}
        )
        return ActionResult(
            logical_id=action.logical_id,
            action=action.action,
            outcome=ActionOutcome.APPLIED,
            record=record,
            attempts=attempts[0],
            duration=duration,
        )

    def _create_or_update(
        self,
        action: PlanAction,
        on_attempt: Callable[[int], None],
        token: str
    ) -> StateRecord:
        """Perform the remote change, then commit the new record.

        Retries of a create reuse ``token`` so the provider can return the
        resource an earlier attempt made.
        """
        spec = action.node.spec
        attributes = resolve_references(
            spec.attributes,
            lambda ref_id, output: self._lookup_output(action.logical_id, ref_id, output)
        )

        if action.action == ActionType.CREATE:
            result = self._call_provider(
                lambda: self.provider.create(action.kind, attributes, token=token), action, on_attempt
            )
            remote_id = result.remote_id
            outputs = dict(result.attributes)
        else:
            remote_id = action.record.remote_id
            outputs = dict(action.record.outputs)
            changed = {key: attributes.get(key) for key in action.diff.keys()}
            if changed:
                outputs.update(self._call_provider(
                    lambda: self.provider.update(remote_id, action.kind, changed), action, on_attempt
                ) or {})
            else:
                on_attempt(0)

        record = StateRecord(
            id=action.logical_id,
            kind=action.kind,
            remote_id=remote_id,
            attributes=dict(spec.attributes),
            outputs=outputs,
            dependencies=list(action.node.dependencies),
        )
        return self.state_store.compare_and_swap(action.logical_id, action.expected_version, record)

    def _delete(self, action: PlanAction, on_attempt: Callable[[int], None]) -> None:
        """Delete the remote resource, then remove its record."""
        try:
            self._call_provider(
                lambda: self.provider.delete(action.record.remote_id, action.kind), action, on_attempt
            )
        except ResourceNotFoundError:
            self.logger.warning(
                f"Remote resource {action.record.remote_id} for {action.logical_id} was already gone",
                extra={'resource_id': action.logical_id, 'action': action.action.value}
            )

        try:
            self.state_store.remove(action.logical_id, expected_version=action.expected_version)
        except NotFoundError:
            # Removed by someone else since planning
            raise ConflictError(action.logical_id, action.expected_version, 0)

    def _call_provider(
        self,
        func: Callable[[], Any],
        action: PlanAction,
        on_attempt: Callable[[int], None]
    ) -> Any:
        """Call the provider under the timeout, retrying if a policy is set."""
        def call() -> Any:
            return self._with_timeout(func, action)

        if self.retry_policy is None:
            on_attempt(1)
            return call()
        return self.retry_policy.execute(call, on_attempt=on_attempt)

    def _with_timeout(self, func: Callable[[], Any], action: PlanAction) -> Any:
        if self.timeout is None:
            return func()

        # The call keeps running in its own thread if it overruns
        caller = ThreadPoolExecutor(max_workers=1)
        future = caller.submit(func)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            # The abandoned call may still finish, so a second create could
            # race it and leave two resources behind
            raise ProviderTimeoutError(
                f"Provider {action.action.value} for '{action.logical_id}' did not finish "
                f"within {self.timeout}s",
                retryable=action.action != ActionType.CREATE,
                context=ErrorContext(
                    resource_id=action.logical_id,
                    resource_kind=action.kind.value,
                    operation=action.action.value,
                    remote_id=action.remote_id,
                )
            )
        finally:
            caller.shutdown(wait=False)

    def _lookup_output(self, resource_id: str, ref_id: str, output: str) -> Any:
        """Resolve ``${ref_id.output}`` from committed state."""
        record = self.state_store.get(ref_id)
        if record is None:
            raise UnresolvedReferenceError(ref_id, resource_id=resource_id)

        value = record.output(output)
        if value is None:
            raise DependencyError(
                f"Resource '{resource_id}' references output '{output}' which '{ref_id}' does not provide",
                severity=ErrorSeverity.ERROR,
                context=ErrorContext(resource_id=resource_id, operation='resolve'),
            )
        return value
