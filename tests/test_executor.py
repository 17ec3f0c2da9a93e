"""Tests for plan execution."""

import threading
import time

import pytest

from conftest import abc_specs, make_spec
from vmship.orchestrator.dependency_graph import build
from vmship.orchestrator.executor import ActionOutcome, ExecutionStatus, PlanExecutor
from vmship.orchestrator.planner import ActionType, plan
from vmship.providers.memory import InMemoryProvider
from vmship.state.models import ResourceKind, StateRecord
from vmship.state.store import FileStateStore
from vmship.utils.errors import (
    ConcurrentModificationError,
    ConflictError,
    DependencyError,
    ProviderError,
    ProviderTimeoutError,
)
from vmship.utils.retry import RetryPolicy


def apply_specs(specs, provider, store, **kwargs):
    actions = plan(build(specs), store.load())
    return PlanExecutor(provider, store, **kwargs).apply(actions)


class TestApply:

    def test_creates_resources_and_commits_state(self, provider, store) -> None:
        report = apply_specs(abc_specs(), provider, store)

        assert report.status == ExecutionStatus.FULL_SUCCESS
        assert report.exit_code == 0
        assert [r.outcome for r in report.results] == [ActionOutcome.APPLIED] * 3

        records = store.load()
        assert set(records) == {"A", "B", "C"}
        assert all(record.version == 1 for record in records.values())
        assert records["C"].dependencies == ["B", "A"]

    def test_references_resolved_for_provider_but_stored_declared(self, provider, store) -> None:
        apply_specs(abc_specs(), provider, store)
        records = store.load()

        group_id = records["A"].output("group_id")
        remote = provider.resources[records["C"].remote_id]
        assert remote["attributes"]["security_group_ids"] == [group_id]
        assert records["C"].attributes["security_group_ids"] == ["${A.group_id}"]

    def test_outputs_are_recorded(self, provider, store) -> None:
        apply_specs(abc_specs(), provider, store)
        record = store.get("C")
        assert record.output("public_ip").startswith("203.0.113.")
        assert record.output("id") == record.remote_id

    def test_no_op_makes_no_provider_calls(self, provider, store) -> None:
        apply_specs(abc_specs(), provider, store)
        calls = len(provider.calls)

        report = apply_specs(abc_specs(), provider, store)
        assert [r.outcome for r in report.results] == [ActionOutcome.UNCHANGED] * 3
        assert len(provider.calls) == calls
        assert report.status == ExecutionStatus.FULL_SUCCESS

    def test_update_sends_only_changed_keys(self, provider, store) -> None:
        apply_specs(abc_specs(), provider, store)
        remote_id = store.get("B").remote_id

        specs = abc_specs()
        specs[1] = make_spec("B", ResourceKind.REPOSITORY, depends_on=["A"], scan_on_push=True)
        report = apply_specs(specs, provider, store)

        assert report.get("B").action == ActionType.UPDATE
        assert report.get("B").outcome == ActionOutcome.APPLIED
        assert provider.calls[-1] == ("update", remote_id)
        assert provider.resources[remote_id]["attributes"]["scan_on_push"] is True
        assert store.get("B").version == 2
        assert store.get("A").version == 1

    def test_removed_attribute_is_cleared_remotely(self, provider, store) -> None:
        apply_specs([make_spec("A", ResourceKind.REPOSITORY, scan_on_push=True)], provider, store)
        remote_id = store.get("A").remote_id

        apply_specs([make_spec("A", ResourceKind.REPOSITORY)], provider, store)
        assert "scan_on_push" not in provider.resources[remote_id]["attributes"]
        assert "scan_on_push" not in store.get("A").attributes

    def test_delete_removes_remote_and_record(self, provider, store) -> None:
        apply_specs(abc_specs(), provider, store)
        remote_id = store.get("C").remote_id

        report = apply_specs(abc_specs()[:2], provider, store)
        assert report.get("C").outcome == ActionOutcome.APPLIED
        assert ("delete", remote_id) in provider.calls
        assert remote_id not in provider.resources
        assert store.get("C") is None

    def test_delete_of_missing_remote_resource_succeeds(self, provider, store) -> None:
        apply_specs([make_spec("A")], provider, store)
        del provider.resources[store.get("A").remote_id]

        report = apply_specs([], provider, store)
        assert report.get("A").outcome == ActionOutcome.APPLIED
        assert store.load() == {}

    def test_missing_output_fails_the_action(self, provider, store) -> None:
        specs = [make_spec("A", ResourceKind.SECURITY_GROUP), make_spec("B", group="${A.nope}")]
        report = apply_specs(specs, provider, store)

        assert report.get("A").outcome == ActionOutcome.APPLIED
        result = report.get("B")
        assert result.outcome == ActionOutcome.FAILED
        assert isinstance(result.error, DependencyError)
        assert report.status == ExecutionStatus.PARTIAL_FAILURE
        assert store.get("B") is None

    def test_progress_callback_sees_start_and_finish(self, provider, store) -> None:
        events = []
        actions = plan(build([make_spec("A")]), {})
        PlanExecutor(provider, store).apply(
            actions, progress_callback=lambda rid, outcome, error: events.append((rid, outcome))
        )
        assert events == [("A", None), ("A", ActionOutcome.APPLIED)]


class TestFailures:

    def test_failure_skips_dependents(self, provider, store) -> None:
        provider.fail("create", "A")
        report = apply_specs(abc_specs(), provider, store)

        assert report.get("A").outcome == ActionOutcome.FAILED
        assert report.get("B").outcome == ActionOutcome.SKIPPED
        assert report.get("B").blocked_by == "A"
        assert report.get("C").outcome == ActionOutcome.SKIPPED
        assert report.get("C").blocked_by == "B"
        assert report.status == ExecutionStatus.TOTAL_FAILURE
        assert report.exit_code == 4
        assert store.load() == {}
        assert [op for op, _ in provider.calls] == ["create"]

    def test_independent_branch_still_applies(self, provider, store) -> None:
        provider.fail("create", "A")
        report = apply_specs(abc_specs() + [make_spec("D")], provider, store)

        assert report.get("D").outcome == ActionOutcome.APPLIED
        assert report.status == ExecutionStatus.PARTIAL_FAILURE
        assert report.exit_code == 3
        assert set(store.load()) == {"D"}

    def test_failure_names_the_logical_id(self, provider, store) -> None:
        provider.fail("create", "A", error=RuntimeError("boom"))
        report = apply_specs([make_spec("A")], provider, store)

        error = report.get("A").error
        assert isinstance(error, ProviderError)
        assert error.context.resource_id == "A"
        assert "boom" in error.message

    def test_failed_results_listed(self, provider, store) -> None:
        provider.fail("create", "A")
        report = apply_specs([make_spec("A"), make_spec("B")], provider, store)
        assert [r.logical_id for r in report.failed()] == ["A"]
        assert report.to_dict()["summary"]["failed"] == 1


class TestConcurrency:

    def test_independent_actions_run_in_parallel(self, store) -> None:
        provider = InMemoryProvider(delay=0.1)
        specs = [make_spec(f"r{i}") for i in range(4)]
        report = apply_specs(specs, provider, store, max_workers=4)

        assert report.status == ExecutionStatus.FULL_SUCCESS
        assert provider.max_concurrency > 1

    def test_single_worker_runs_in_plan_order(self, store) -> None:
        provider = InMemoryProvider(delay=0.01)
        specs = [make_spec(f"r{i}") for i in range(4)]
        apply_specs(specs, provider, store, max_workers=1)

        assert provider.max_concurrency == 1
        assert provider.calls == [("create", f"r{i}") for i in range(4)]

    def test_dependencies_respected_with_many_workers(self, store) -> None:
        provider = InMemoryProvider(delay=0.02)
        specs = abc_specs() + [make_spec("D"), make_spec("E", depends_on=["D"])]
        report = apply_specs(specs, provider, store, max_workers=8)

        assert report.status == ExecutionStatus.FULL_SUCCESS
        started = [target for _, target in provider.calls]
        assert started.index("A") < started.index("B") < started.index("C")
        assert started.index("D") < started.index("E")

    def test_invalid_worker_count(self, provider, store) -> None:
        with pytest.raises(ValueError):
            PlanExecutor(provider, store, max_workers=0)


class TestConflicts:

    def test_conflicting_commit_aborts_run(self, provider, store) -> None:
        actions = plan(build([make_spec("A"), make_spec("X")]), store.load())

        other = FileStateStore(str(store.state_path))
        other.compare_and_swap(
            "A", 0, StateRecord(id="A", kind=ResourceKind.COMPUTE_INSTANCE, remote_id="i-other")
        )

        with pytest.raises(ConcurrentModificationError) as exc_info:
            PlanExecutor(provider, store).apply(actions)

        error = exc_info.value
        assert isinstance(error.conflict, ConflictError)
        assert error.conflict.resource_id == "A"
        assert error.report.get("A").outcome == ActionOutcome.FAILED
        assert error.report.get("X").outcome == ActionOutcome.CANCELLED
        assert store.get("A").remote_id == "i-other"
        assert store.get("X") is None

    def test_record_removed_since_planning_conflicts(self, provider, store) -> None:
        apply_specs([make_spec("A")], provider, store)
        actions = plan(build([]), store.load())
        FileStateStore(str(store.state_path)).remove("A")

        with pytest.raises(ConcurrentModificationError):
            PlanExecutor(provider, store).apply(actions)


class TestCancellation:

    def test_cancel_before_start(self, provider, store) -> None:
        cancel = threading.Event()
        cancel.set()
        actions = plan(build(abc_specs()), {})
        report = PlanExecutor(provider, store).apply(actions, cancel_event=cancel)

        assert [r.outcome for r in report.results] == [ActionOutcome.CANCELLED] * 3
        assert provider.calls == []
        assert report.status == ExecutionStatus.TOTAL_FAILURE

    def test_cancel_between_actions(self, provider, store) -> None:
        cancel = threading.Event()

        def on_progress(logical_id, outcome, error):
            if logical_id == "A" and outcome is not None:
                cancel.set()

        actions = plan(build(abc_specs()), {})
        report = PlanExecutor(provider, store).apply(
            actions, cancel_event=cancel, progress_callback=on_progress
        )

        assert report.get("A").outcome == ActionOutcome.APPLIED
        assert report.get("B").outcome == ActionOutcome.CANCELLED
        assert report.get("C").outcome == ActionOutcome.CANCELLED
        assert report.status == ExecutionStatus.PARTIAL_FAILURE
        assert set(store.load()) == {"A"}


class TestRetryAndTimeout:

    def test_no_retry_without_policy(self, provider, store) -> None:
        provider.fail("create", "A", error=ProviderError("throttled", retryable=True))
        report = apply_specs([make_spec("A")], provider, store)

        assert report.get("A").outcome == ActionOutcome.FAILED
        assert report.get("A").attempts == 1

    def test_retryable_error_is_retried(self, provider, store) -> None:
        provider.fail("create", "A", error=ProviderError("throttled", retryable=True), times=2)
        policy = RetryPolicy(max_attempts=3, sleep=lambda delay: None)
        report = apply_specs([make_spec("A")], provider, store, retry_policy=policy)

        result = report.get("A")
        assert result.outcome == ActionOutcome.APPLIED
        assert result.attempts == 3
        assert provider.calls.count(("create", "A")) == 3

    def test_non_retryable_error_is_not_retried(self, provider, store) -> None:
        provider.fail("create", "A", times=3)
        policy = RetryPolicy(max_attempts=3, sleep=lambda delay: None)
        report = apply_specs([make_spec("A")], provider, store, retry_policy=policy)

        assert report.get("A").outcome == ActionOutcome.FAILED
        assert report.get("A").attempts == 1

    def test_slow_provider_call_times_out(self, store) -> None:
        provider = InMemoryProvider(delay=0.5)
        report = apply_specs([make_spec("A")], provider, store, timeout=0.05)

        result = report.get("A")
        assert result.outcome == ActionOutcome.FAILED
        assert isinstance(result.error, ProviderTimeoutError)
        assert result.error.context.resource_id == "A"
        assert store.get("A") is None

    def test_timed_out_create_is_not_retried(self, store) -> None:
        provider = InMemoryProvider(delay=0.3)
        policy = RetryPolicy(max_attempts=2, sleep=lambda delay: None)
        report = apply_specs([make_spec("A")], provider, store, timeout=0.1, retry_policy=policy)

        result = report.get("A")
        assert result.outcome == ActionOutcome.FAILED
        assert result.attempts == 1
        assert not result.error.retryable
        assert result.possibly_created
        assert report.possibly_created() == [result]
        assert result.to_dict()["possibly_created"] is True
        assert any("may have been created" in s for s in result.error.suggestions)

        # The abandoned call still finishes: exactly one resource, no record
        time.sleep(0.5)
        assert len(provider.resources) == 1
        assert provider.calls == [("create", "A")]
        assert store.get("A") is None

    def test_timed_out_update_stays_retryable(self, store) -> None:
        provider = InMemoryProvider()
        apply_specs([make_spec("A", instance_type="t3.micro")], provider, store)
        provider.delay = 0.3

        policy = RetryPolicy(max_attempts=2, sleep=lambda delay: None)
        report = apply_specs(
            [make_spec("A", instance_type="t3.small")], provider, store, timeout=0.1, retry_policy=policy
        )

        result = report.get("A")
        assert result.outcome == ActionOutcome.FAILED
        assert result.attempts == 2
        assert not result.possibly_created

    def test_retried_create_reuses_its_token(self, store) -> None:
        seen = []

        class RecordingProvider(InMemoryProvider):
            def create(self, kind, attributes, token=None):
                seen.append(token)
                return super().create(kind, attributes, token=token)

        provider = RecordingProvider()
        provider.fail("create", "A", error=ProviderError("throttled", retryable=True))
        policy = RetryPolicy(max_attempts=2, sleep=lambda delay: None)
        report = apply_specs([make_spec("A"), make_spec("B")], provider, store, retry_policy=policy)

        assert report.status == ExecutionStatus.FULL_SUCCESS
        assert len(seen) == 3
        assert seen[0] == seen[1]
        assert seen[2] != seen[0]
        assert all(token.startswith("vmship-") and len(token) <= 64 for token in seen)
