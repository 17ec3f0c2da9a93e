"""Planner that reconciles the declared graph against stored state."""

from typing import Any, Dict, List, Mapping, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum

from vmship.orchestrator.dependency_graph import DependencyGraph, ResourceNode, build_from_records
from vmship.state.models import ResourceKind, StateRecord
from vmship.utils.logging import get_logger

logger = get_logger(__name__)


class ActionType(Enum):
    """Type of change for a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass(frozen=True)
class AttributeDiff:
    """Shallow key-by-key difference between stored and desired attributes."""

    added: Dict[str, Any] = field(default_factory=dict)
    changed: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)  # key -> (old, new)
    removed: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)

    def desired_values(self) -> Dict[str, Any]:
        """Keys to set on the remote resource, with their new values."""
        values = dict(self.added)
        values.update({key: new for key, (_, new) in self.changed.items()})
        return values

    def keys(self) -> List[str]:
        return sorted(set(self.added) | set(self.changed) | set(self.removed))


@dataclass(frozen=True)
class PlanAction:
    """One step of a change plan."""

    action: ActionType
    logical_id: str
    kind: ResourceKind
    position: int
    diff: AttributeDiff = field(default_factory=AttributeDiff)
    depends_on: Tuple[str, ...] = ()  # Plan actions that must finish first
    expected_version: int = 0  # State version observed when planning (0 = absent)
    node: Optional[ResourceNode] = None  # Target node (create/update/no-op)
    record: Optional[StateRecord] = None  # Stored record (update/delete/no-op)

    @property
    def is_mutation(self) -> bool:
        return self.action != ActionType.NO_OP

    @property
    def remote_id(self) -> Optional[str]:
        return self.record.remote_id if self.record else None

    def describe(self) -> str:
        """Single-line human-readable description."""
        symbol = {
            ActionType.CREATE: "+",
            ActionType.UPDATE: "~",
            ActionType.DELETE: "-",
            ActionType.NO_OP: " ",
        }[self.action]
        line = f"{self.position:>3}. {symbol} {self.action.value:<6} {self.logical_id} ({self.kind.value})"
        if self.action == ActionType.UPDATE:
            line += f" [{', '.join(self.diff.keys())}]"
        if self.depends_on:
            line += f" after {', '.join(self.depends_on)}"
        return line


def diff_attributes(current: Mapping[str, Any], desired: Mapping[str, Any]) -> AttributeDiff:
    """Compare two attribute mappings key by key.

    Values are compared by equality, so nested lists and dicts are compared
    by content rather than identity.
    """
    added = {}
    changed = {}
    for key in sorted(desired):
        if key not in current:
            added[key] = desired[key]
        elif current[key] != desired[key]:
            changed[key] = (current[key], desired[key])
    removed = tuple(sorted(key for key in current if key not in desired))
    return AttributeDiff(added=added, changed=changed, removed=removed)


class ChangePlanner:
    """Creates change plans. Never performs I/O."""

    def __init__(self):
        """Initialize planner."""
        self.logger = get_logger(__name__)

    def plan(
        self,
        graph: DependencyGraph,
        current_state: Mapping[str, StateRecord]
    ) -> List[PlanAction]:
        """Create a plan by comparing the declared graph with stored state.

        Every node yields a create, update or no-op action in topological
        order. Stored records without a node yield delete actions, in
        reverse dependency order, after everything else.

        Args:
            graph: Validated dependency graph of declared resources
            current_state: Stored records keyed by logical ID

        Returns:
            Ordered list of PlanAction
        """
        actions: List[PlanAction] = []

        for resource_id in graph.topological_sort():
            node = graph.nodes[resource_id]
            record = current_state.get(resource_id)
            actions.append(self._plan_node(node, record, len(actions) + 1))

        orphaned = [record for rid, record in current_state.items() if not graph.has_resource(rid)]
        if orphaned:
            kept = [record for rid, record in current_state.items() if graph.has_resource(rid)]
            actions.extend(self._plan_deletes(orphaned, kept, start=len(actions) + 1))

        summary = plan_summary(actions)
        self.logger.info(
            f"Plan created: {summary['create']} create, {summary['update']} update, "
            f"{summary['delete']} delete, {summary['no-op']} unchanged"
        )
        return actions

    def _plan_node(
        self,
        node: ResourceNode,
        record: Optional[StateRecord],
        position: int
    ) -> PlanAction:
        """Plan a single declared resource."""
        desired = node.spec.attributes
        depends_on = tuple(node.dependencies)

        if record is None:
            return PlanAction(
                action=ActionType.CREATE,
                logical_id=node.id,
                kind=node.spec.kind,
                position=position,
                diff=diff_attributes({}, desired),
                depends_on=depends_on,
                expected_version=0,
                node=node,
            )

        if record.kind != node.spec.kind:
            # Report every key so the provider sees the full desired shape
            diff = AttributeDiff(
                added={},
                changed={key: (record.attributes.get(key), value) for key, value in sorted(desired.items())},
                removed=tuple(sorted(key for key in record.attributes if key not in desired)),
            )
        else:
            diff = diff_attributes(record.attributes, desired)

        dependencies_changed = list(record.dependencies) != list(node.dependencies)
        action = ActionType.UPDATE if (not diff.is_empty() or record.kind != node.spec.kind) else ActionType.NO_OP
        if action == ActionType.NO_OP and dependencies_changed:
            # Only the recorded edges moved; refresh the record without touching the remote
            action = ActionType.UPDATE

        return PlanAction(
            action=action,
            logical_id=node.id,
            kind=node.spec.kind,
            position=position,
            diff=diff,
            depends_on=depends_on,
            expected_version=record.version,
            node=node,
            record=record,
        )

    def _plan_deletes(
        self,
        records: List[StateRecord],
        kept: List[StateRecord],
        start: int
    ) -> List[PlanAction]:
        """Plan deletes so dependents are removed before their dependencies.

        A delete waits for the deletes of every record that depended on it,
        and for the actions of kept resources that depended on it when they
        were last applied (those actions drop the edge).
        """
        by_id = {record.id: record for record in records}
        record_graph = build_from_records(records)

        actions = []
        for offset, resource_id in enumerate(record_graph.get_destruction_order()):
            record = by_id[resource_id]
            waits_for = set(record_graph.get_dependents(resource_id))
            waits_for.update(other.id for other in kept if resource_id in other.dependencies)
            waits_for = tuple(sorted(waits_for))
            actions.append(PlanAction(
                action=ActionType.DELETE,
                logical_id=resource_id,
                kind=record.kind,
                position=start + offset,
                diff=diff_attributes(record.attributes, {}),
                depends_on=waits_for,
                expected_version=record.version,
                record=record,
            ))
        return actions


def plan(graph: DependencyGraph, current_state: Mapping[str, StateRecord]) -> List[PlanAction]:
    """Create a change plan; see :meth:`ChangePlanner.plan`."""
    return ChangePlanner().plan(graph, current_state)


def plan_summary(actions: List[PlanAction]) -> Dict[str, int]:
    """Count actions by type."""
    summary = {action_type.value: 0 for action_type in ActionType}
    for action in actions:
        summary[action.action.value] += 1
    return summary


def has_changes(actions: List[PlanAction]) -> bool:
    """Check if the plan contains any mutation."""
    return any(action.is_mutation for action in actions)


def format_plan(actions: List[PlanAction]) -> str:
    """Render the plan as deterministic human-readable text."""
    summary = plan_summary(actions)
    lines = [action.describe() for action in actions]
    lines.append(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['no-op']} unchanged."
    )
    return "\n".join(lines)
