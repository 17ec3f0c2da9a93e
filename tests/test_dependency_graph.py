"""Tests for the resource graph builder."""

import pytest

from conftest import abc_specs, make_spec
from vmship.orchestrator.dependency_graph import DependencyGraph, build, build_from_records
from vmship.state.models import ResourceKind, StateRecord
from vmship.utils.errors import CycleError, DependencyError, DuplicateResourceError, UnresolvedReferenceError


class TestBuild:

    def test_dependencies_come_before_dependents(self) -> None:
        graph = build(abc_specs())
        assert graph.topological_sort() == ["A", "B", "C"]

    def test_references_become_dependencies(self) -> None:
        graph = build(abc_specs())
        assert graph.get_dependencies("C") == ["B", "A"]
        assert graph.get_dependents("A") == {"B", "C"}

    def test_declaration_order_breaks_ties(self) -> None:
        graph = build([make_spec("zeta"), make_spec("alpha"), make_spec("mid")])
        assert graph.topological_sort() == ["zeta", "alpha", "mid"]

    def test_forward_declaration_is_allowed(self) -> None:
        graph = build([make_spec("web", depends_on=["sg"]), make_spec("sg", ResourceKind.SECURITY_GROUP)])
        assert graph.topological_sort() == ["sg", "web"]

    def test_order_is_stable_across_builds(self) -> None:
        specs = [
            make_spec("d", depends_on=["a"]),
            make_spec("c"),
            make_spec("a"),
            make_spec("b", depends_on=["c"]),
        ]
        orders = {tuple(build(specs).topological_sort()) for _ in range(5)}
        assert orders == {("c", "a", "d", "b")}

    def test_empty_input(self) -> None:
        graph = build([])
        assert graph.is_empty()
        assert graph.topological_sort() == []

    def test_duplicate_id_rejected(self) -> None:
        with pytest.raises(DuplicateResourceError) as exc_info:
            build([make_spec("A"), make_spec("A")])
        assert exc_info.value.resource_id == "A"

    def test_unknown_dependency_rejected(self) -> None:
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build([make_spec("A", depends_on=["ghost"])])
        assert exc_info.value.missing_id == "ghost"
        assert exc_info.value.resource_id == "A"

    def test_unknown_reference_rejected(self) -> None:
        with pytest.raises(UnresolvedReferenceError):
            build([make_spec("A", subnet="${net.id}")])

    def test_cycle_rejected(self) -> None:
        specs = [
            make_spec("A", depends_on=["C"]),
            make_spec("B", depends_on=["A"]),
            make_spec("C", depends_on=["B"]),
        ]
        with pytest.raises(CycleError) as exc_info:
            build(specs)
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A", "B", "C"}

    def test_self_dependency_is_a_cycle(self) -> None:
        with pytest.raises(CycleError):
            build([make_spec("A", depends_on=["A"])])

    def test_planning_errors_share_a_base(self) -> None:
        for specs in ([make_spec("A"), make_spec("A")], [make_spec("A", depends_on=["A"])]):
            with pytest.raises(DependencyError):
                build(specs)


class TestGraphQueries:

    def test_transitive_dependents(self) -> None:
        graph = build(abc_specs())
        assert graph.get_all_dependents("A") == {"B", "C"}
        assert graph.get_all_dependents("C") == set()

    def test_destruction_order_is_reversed(self) -> None:
        graph = build(abc_specs())
        assert graph.get_destruction_order() == ["C", "B", "A"]

    def test_iteration_follows_declaration_order(self) -> None:
        graph = DependencyGraph()
        graph.add_resource(make_spec("second", depends_on=["first"]))
        graph.add_resource(make_spec("first"))
        assert [node.id for node in graph] == ["second", "first"]
        assert graph.get_dependents("first") == {"second"}


class TestBuildFromRecords:

    def test_orders_records_by_recorded_dependencies(self) -> None:
        records = [
            StateRecord(id="web", kind=ResourceKind.COMPUTE_INSTANCE, remote_id="i-1", dependencies=["sg"]),
            StateRecord(id="sg", kind=ResourceKind.SECURITY_GROUP, remote_id="sg-1"),
        ]
        graph = build_from_records(records)
        assert graph.get_destruction_order() == ["web", "sg"]

    def test_ignores_dependencies_outside_the_subset(self) -> None:
        records = [
            StateRecord(id="web", kind=ResourceKind.COMPUTE_INSTANCE, remote_id="i-1", dependencies=["kept"]),
        ]
        graph = build_from_records(records)
        assert graph.topological_sort() == ["web"]
