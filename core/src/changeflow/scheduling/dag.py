"""Dependency graph of derived tables."""

from collections import defaultdict, deque
from typing import Dict, List, Set

from pydantic import Field

from changeflow.types.base import ChangeFlowModel
from changeflow.types.materialization import DependencyEdge


class DependencyDAG(ChangeFlowModel):
    """Directed acyclic graph of derived tables and the sources they read.

    Nodes are derived tables. Each node maps to the list of sources it reads,
    which may be base tables (never nodes themselves) or other derived
    tables. Ordering operations only consider edges between nodes.

    Attributes:
        adjacency_list: Maps each derived table to its sources
    """
    adjacency_list: Dict[str, List[str]] = Field(default_factory=dict)

    def add_node(self, node: str, sources: List[str]) -> None:
        """Add a derived table and its source edges.

        Args:
            node: Derived table name
            sources: Tables it reads
        """
        deps = self.adjacency_list.setdefault(node, [])
        for source in sources:
            if source not in deps:
                deps.append(source)

    def remove_node(self, node: str) -> None:
        self.adjacency_list.pop(node, None)

    def has_node(self, node: str) -> bool:
        return node in self.adjacency_list

    def edges(self) -> List[DependencyEdge]:
        return [
            DependencyEdge(source_id=source, target_id=node)
            for node, sources in self.adjacency_list.items()
            for source in sources
        ]

    def get_dependencies(self, node: str) -> List[str]:
        """Direct sources of a node that are themselves derived tables."""
        return [dep for dep in self.adjacency_list.get(node, []) if dep in self.adjacency_list]

    def get_all_dependencies(self, node: str) -> Set[str]:
        """Derived tables a node depends on, directly or transitively."""
        all_deps = set()
        to_process = deque(self.get_dependencies(node))

        while to_process:
            dep = to_process.popleft()
            if dep not in all_deps:
                all_deps.add(dep)
                to_process.extend(self.get_dependencies(dep))

        return all_deps

    def get_dependents(self, node: str) -> List[str]:
        """Derived tables that read ``node`` directly."""
        return [n for n, deps in self.adjacency_list.items() if node in deps]

    def get_all_dependents(self, node: str) -> Set[str]:
        """Derived tables that read ``node`` directly or transitively."""
        all_dependents = set()
        to_process = deque(self.get_dependents(node))

        while to_process:
            dep = to_process.popleft()
            if dep not in all_dependents:
                all_dependents.add(dep)
                to_process.extend(self.get_dependents(dep))

        return all_dependents

    def is_reachable(self, from_node: str, to_node: str) -> bool:
        """True if ``from_node`` depends on ``to_node``, directly or transitively."""
        return to_node in self.get_all_dependencies(from_node)

    def would_create_cycle(self, node: str, sources: List[str]) -> List[str]:
        """Sources that would close a cycle back to ``node`` if added.

        A source closes a cycle when it is ``node`` itself or already depends
        on ``node``.
        """
        return [
            source for source in sources
            if source == node or (source in self.adjacency_list and self.is_reachable(source, node))
        ]

    def has_cycles(self) -> bool:
        """Check if the DAG has cycles using DFS.

        Returns:
            True if cycles are detected, False otherwise
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color = defaultdict(lambda: WHITE)

        def has_cycle_from(node: str) -> bool:
            if color[node] == GRAY:
                return True  # back edge
            if color[node] == BLACK:
                return False
            color[node] = GRAY
            for neighbor in self.get_dependencies(node):
                if has_cycle_from(neighbor):
                    return True
            color[node] = BLACK
            return False

        for node in self.adjacency_list:
            if color[node] == WHITE:
                if has_cycle_from(node):
                    return True

        return False

    def topological_sort(self) -> List[str]:
        """Return derived tables upstream-first using Kahn's algorithm.

        Raises:
            ValueError: If the graph contains cycles
        """
        if self.has_cycles():
            raise ValueError("Cannot perform topological sort on a graph with cycles")

        in_degree = {node: len(self.get_dependencies(node)) for node in self.adjacency_list}
        queue = deque(sorted(node for node, degree in in_degree.items() if degree == 0))
        result = []

        while queue:
            node = queue.popleft()
            result.append(node)
            for dependent in sorted(self.get_dependents(node)):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def get_execution_stages(self) -> List[List[str]]:
        """Group derived tables into stages that can refresh in parallel.

        Raises:
            ValueError: If the graph contains cycles
        """
        if self.has_cycles():
            raise ValueError("Cannot create execution stages for a graph with cycles")

        stages = []
        in_degree = {node: len(self.get_dependencies(node)) for node in self.adjacency_list}
        processed = set()

        while len(processed) < len(self.adjacency_list):
            current_stage = sorted(
                node for node in self.adjacency_list
                if in_degree[node] == 0 and node not in processed
            )
            if not current_stage:
                raise ValueError("Could not create execution stages - possible hidden cycle")

            stages.append(current_stage)
            for node in current_stage:
                processed.add(node)
                for dependent in self.get_dependents(node):
                    in_degree[dependent] -= 1

        return stages

    def copy_graph(self) -> "DependencyDAG":
        return DependencyDAG(adjacency_list={n: list(deps) for n, deps in self.adjacency_list.items()})
