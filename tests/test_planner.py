"""Tests for change planning."""

import pytest

from conftest import abc_specs, make_spec
from vmship.orchestrator.dependency_graph import build
from vmship.orchestrator.executor import PlanExecutor
from vmship.orchestrator.planner import (
    ActionType,
    ChangePlanner,
    diff_attributes,
    format_plan,
    has_changes,
    plan,
    plan_summary,
)
from vmship.state.models import ResourceKind, StateRecord
from vmship.utils.errors import UnresolvedReferenceError


def stored(resource_id, kind=ResourceKind.COMPUTE_INSTANCE, version=1, dependencies=(), **attributes):
    attributes.setdefault("name", resource_id)
    return StateRecord(
        id=resource_id,
        kind=kind,
        remote_id=f"r-{resource_id}",
        attributes=attributes,
        dependencies=list(dependencies),
        version=version,
    )


def abc_state():
    return {
        "A": stored("A", ResourceKind.SECURITY_GROUP),
        "B": stored("B", ResourceKind.REPOSITORY, dependencies=["A"]),
        "C": stored("C", security_group_ids=["${A.group_id}"], dependencies=["B", "A"]),
    }


class TestDiffAttributes:

    def test_added_changed_removed(self) -> None:
        diff = diff_attributes({"a": 1, "b": 2, "c": 3}, {"a": 1, "b": 5, "d": 4})
        assert diff.added == {"d": 4}
        assert diff.changed == {"b": (2, 5)}
        assert diff.removed == ("c",)
        assert diff.keys() == ["b", "c", "d"]

    def test_nested_values_compared_by_content(self) -> None:
        diff = diff_attributes({"rules": [{"port": 80}]}, {"rules": [{"port": 80}]})
        assert diff.is_empty()

    def test_desired_values_skip_removed_keys(self) -> None:
        diff = diff_attributes({"a": 1, "b": 2}, {"a": 3, "c": 4})
        assert diff.desired_values() == {"a": 3, "c": 4}


class TestPlan:

    def test_empty_state_creates_everything_in_order(self, abc_graph) -> None:
        actions = plan(abc_graph, {})
        assert [(a.action, a.logical_id) for a in actions] == [
            (ActionType.CREATE, "A"),
            (ActionType.CREATE, "B"),
            (ActionType.CREATE, "C"),
        ]
        assert [a.position for a in actions] == [1, 2, 3]
        assert all(a.expected_version == 0 for a in actions)
        assert actions[2].depends_on == ("B", "A")

    def test_matching_state_is_all_no_op(self, abc_graph) -> None:
        actions = plan(abc_graph, abc_state())
        assert [a.action for a in actions] == [ActionType.NO_OP] * 3
        assert not has_changes(actions)

    def test_changed_attribute_is_an_update(self, abc_graph) -> None:
        state = abc_state()
        state["B"] = stored("B", ResourceKind.REPOSITORY, version=4, dependencies=["A"], name="old")
        actions = plan(abc_graph, state)
        update = actions[1]
        assert update.action == ActionType.UPDATE
        assert update.diff.changed == {"name": ("old", "B")}
        assert update.expected_version == 4
        assert update.remote_id == "r-B"

    def test_changed_kind_is_an_update(self) -> None:
        graph = build([make_spec("A", ResourceKind.REPOSITORY)])
        actions = plan(graph, {"A": stored("A", ResourceKind.SECURITY_GROUP)})
        assert actions[0].action == ActionType.UPDATE
        assert actions[0].diff.keys() == ["name"]

    def test_changed_dependencies_refresh_the_record(self) -> None:
        graph = build([make_spec("A"), make_spec("B")])
        state = {"A": stored("A"), "B": stored("B", dependencies=["A"])}
        actions = plan(graph, state)
        assert actions[1].action == ActionType.UPDATE
        assert actions[1].diff.is_empty()

    def test_removed_resource_is_deleted_last(self) -> None:
        graph = build(abc_specs()[:2])
        actions = plan(graph, abc_state())
        assert [(a.action, a.logical_id) for a in actions] == [
            (ActionType.NO_OP, "A"),
            (ActionType.NO_OP, "B"),
            (ActionType.DELETE, "C"),
        ]
        assert actions[2].expected_version == 1
        assert actions[2].record.remote_id == "r-C"

    def test_deletes_run_dependents_first(self) -> None:
        actions = plan(build([]), abc_state())
        assert [a.logical_id for a in actions] == ["C", "B", "A"]
        assert all(a.action == ActionType.DELETE for a in actions)
        assert actions[0].depends_on == ()
        assert actions[1].depends_on == ("C",)
        assert actions[2].depends_on == ("B", "C")

    def test_delete_waits_for_kept_former_dependents(self) -> None:
        graph = build([make_spec("B")])
        state = {"A": stored("A"), "B": stored("B", dependencies=["A"])}
        actions = plan(graph, state)
        assert [(a.action, a.logical_id) for a in actions] == [
            (ActionType.UPDATE, "B"),
            (ActionType.DELETE, "A"),
        ]
        assert actions[1].depends_on == ("B",)

    def test_removing_a_referenced_resource_fails_to_build(self) -> None:
        specs = [spec for spec in abc_specs() if spec.id != "A"]
        with pytest.raises(UnresolvedReferenceError):
            build(specs)

    def test_plan_is_deterministic(self, abc_graph) -> None:
        state = abc_state()
        state["B"] = stored("B", ResourceKind.REPOSITORY, dependencies=["A"], name="old")
        state["orphan"] = stored("orphan")
        first = format_plan(plan(abc_graph, state))
        for _ in range(3):
            assert format_plan(ChangePlanner().plan(build(abc_specs()), dict(state))) == first

    def test_planning_does_not_touch_state(self, abc_graph) -> None:
        state = abc_state()
        before = {key: value.model_dump() for key, value in state.items()}
        plan(abc_graph, state)
        assert {key: value.model_dump() for key, value in state.items()} == before


class TestPlanOutput:

    def test_summary_counts(self, abc_graph) -> None:
        state = {"A": stored("A", ResourceKind.SECURITY_GROUP), "gone": stored("gone")}
        summary = plan_summary(plan(abc_graph, state))
        assert summary == {"create": 2, "update": 0, "delete": 1, "no-op": 1}

    def test_format_plan(self, abc_graph) -> None:
        text = format_plan(plan(abc_graph, {}))
        lines = text.splitlines()
        assert lines[0] == "  1. + create A (security_group)"
        assert lines[2] == "  3. + create C (compute_instance) after B, A"
        assert lines[-1] == "Plan: 3 to create, 0 to update, 0 to delete, 0 unchanged."


class TestIdempotence:

    def test_plan_after_apply_is_all_no_op(self, abc_graph, provider, store) -> None:
        report = PlanExecutor(provider, store).apply(plan(abc_graph, {}))
        assert report.exit_code == 0

        actions = plan(build(abc_specs()), store.load())
        assert [a.action for a in actions] == [ActionType.NO_OP] * 3
