"""Dependency graph builder for resource ordering."""

import heapq
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set
from dataclasses import dataclass, field
from collections import deque

from vmship.orchestrator.references import find_references
from vmship.state.models import ResourceSpec
from vmship.utils.errors import CycleError, DuplicateResourceError, UnresolvedReferenceError


@dataclass
class ResourceNode:
    """Node in the dependency graph."""

    spec: ResourceSpec
    index: int  # Position in the declared sequence
    dependencies: List[str]  # Resource IDs this node depends on, first-seen order
    dependents: Set[str] = field(default_factory=set)  # Resource IDs that depend on this node

    @property
    def id(self) -> str:
        return self.spec.id


class DependencyGraph:
    """Directed acyclic graph (DAG) of declared resources.

    Edges point from a dependency to its dependents. Use :func:`build` to
    construct a validated graph from a ResourceSpec sequence.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, ResourceNode] = {}

    def add_resource(self, spec: ResourceSpec) -> ResourceNode:
        """Add a declared resource to the graph.

        Dependencies are the explicit ``depends_on`` IDs followed by every
        resource referenced from the attributes.

        Args:
            spec: Resource to add

        Raises:
            DuplicateResourceError: If the ID is already in the graph
        """
        if spec.id in self.nodes:
            raise DuplicateResourceError(spec.id)

        dependencies = list(spec.depends_on)
        for ref_id, _ in find_references(spec.attributes):
            if ref_id not in dependencies:
                dependencies.append(ref_id)

        node = ResourceNode(spec=spec, index=len(self.nodes), dependencies=dependencies)
        self.nodes[spec.id] = node

        # Wire edges in both directions for nodes already present
        for dep_id in dependencies:
            if dep_id in self.nodes:
                self.nodes[dep_id].dependents.add(spec.id)
        for other in self.nodes.values():
            if spec.id in other.dependencies and other.id != spec.id:
                node.dependents.add(other.id)

        return node

    def get_dependencies(self, resource_id: str) -> List[str]:
        """Get direct dependencies of a resource.

        Args:
            resource_id: ID of resource

        Returns:
            List of resource IDs that this resource depends on
        """
        if resource_id not in self.nodes:
            return []
        return list(self.nodes[resource_id].dependencies)

    def get_dependents(self, resource_id: str) -> Set[str]:
        """Get direct dependents of a resource.

        Args:
            resource_id: ID of resource

        Returns:
            Set of resource IDs that depend on this resource
        """
        if resource_id not in self.nodes:
            return set()
        return set(self.nodes[resource_id].dependents)

    def get_all_dependents(self, resource_id: str) -> Set[str]:
        """Get all transitive dependents of a resource.

        Args:
            resource_id: ID of resource

        Returns:
            Set of all resource IDs that depend on this resource
        """
        visited = set()
        queue = deque([resource_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue

            visited.add(current_id)

            for dependent_id in self.get_dependents(current_id):
                if dependent_id not in visited:
                    queue.append(dependent_id)

        visited.discard(resource_id)
        return visited

    def find_unresolved(self) -> Optional[tuple]:
        """Find the first dependency that names an undeclared resource.

        Returns:
            (resource_id, missing_id) or None if every dependency resolves
        """
        for node in self.ordered_nodes():
            for dep_id in node.dependencies:
                if dep_id not in self.nodes:
                    return node.id, dep_id
        return None

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            Path of resource IDs forming a cycle (first ID repeated at the
            end), or None if no cycle exists
        """
        # White (0): unvisited, Gray (1): on the current path, Black (2): done
        color = {node_id: 0 for node_id in self.nodes}
        path: List[str] = []

        def dfs(node_id: str) -> Optional[List[str]]:
            color[node_id] = 1
            path.append(node_id)

            for dep_id in self.nodes[node_id].dependencies:
                if dep_id not in self.nodes:
                    continue
                if color[dep_id] == 1:
                    # Back edge to a node on the current path
                    return path[path.index(dep_id):] + [dep_id]
                if color[dep_id] == 0:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle

            path.pop()
            color[node_id] = 2
            return None

        for node in self.ordered_nodes():
            if color[node.id] == 0:
                cycle = dfs(node.id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            UnresolvedReferenceError: If a dependency names an undeclared resource
            CycleError: If the graph contains a cycle
        """
        unresolved = self.find_unresolved()
        if unresolved:
            resource_id, missing_id = unresolved
            raise UnresolvedReferenceError(missing_id, resource_id=resource_id)

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Among nodes whose dependencies are all emitted, the one declared
        first is emitted first, so the order is stable for a given input.

        Returns:
            List of resource IDs in dependency order (dependencies before dependents)

        Raises:
            CycleError: If graph contains cycles
        """
        self.validate()

        # Kahn's algorithm with declaration index as priority
        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        ready = [(node.index, node.id) for node in self.nodes.values() if in_degree[node.id] == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node_id = heapq.heappop(ready)
            result.append(node_id)

            for dependent_id in self.nodes[node_id].dependents:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(ready, (self.nodes[dependent_id].index, dependent_id))

        if len(result) != len(self.nodes):
            remaining = [node_id for node_id in self.nodes if node_id not in result]
            raise CycleError(remaining)

        return result

    def get_destruction_order(self) -> List[str]:
        """Get resource destruction order (reverse of creation order)."""
        return list(reversed(self.topological_sort()))

    def ordered_nodes(self) -> List[ResourceNode]:
        """Nodes in declaration order."""
        return sorted(self.nodes.values(), key=lambda node: node.index)

    def has_resource(self, resource_id: str) -> bool:
        """Check if a resource exists in the graph."""
        return resource_id in self.nodes

    def is_empty(self) -> bool:
        """Check if the graph is empty."""
        return len(self.nodes) == 0

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.ordered_nodes())

    def __len__(self) -> int:
        return len(self.nodes)


def build(specs: Sequence[ResourceSpec]) -> DependencyGraph:
    """Build a validated dependency graph from declared resources.

    Pure function: no I/O and no remote calls.

    Args:
        specs: Declared resources, in declaration order

    Returns:
        Validated DependencyGraph

    Raises:
        DuplicateResourceError: If two specs share an ID
        UnresolvedReferenceError: If a dependency or reference names an undeclared ID
        CycleError: If the dependencies form a cycle
    """
    graph = DependencyGraph()
    for spec in specs:
        graph.add_resource(spec)
    graph.validate()
    return graph


def build_from_records(records: Iterable) -> DependencyGraph:
    """Graph over stored records' recorded dependencies, in logical ID order.

    Dependencies on records that are not part of ``records`` are ignored, so
    the result can be used to order any subset of stored records.
    """
    records = sorted(records, key=lambda record: record.id)
    ids = {record.id for record in records}
    graph = DependencyGraph()
    for record in records:
        graph.add_resource(ResourceSpec(
            id=record.id,
            kind=record.kind,
            depends_on=tuple(dep for dep in record.dependencies if dep in ids),
        ))
    return graph
