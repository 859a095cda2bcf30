"""Dependency graph used to order stages and template resources."""

import heapq
from typing import Any, Dict, Iterable, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from cfn_deploy.utils.errors import DependencyError


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    node_id: str
    payload: Any = None
    dependencies: Set[str] = field(default_factory=set)  # Node IDs this node depends on
    index: int = 0  # Insertion order, used to break ordering ties


class DependencyGraph:
    """Directed acyclic graph (DAG) of node dependencies.

    Orderings are deterministic: whenever several nodes are ready at the same
    time they come out in insertion order.
    """

    def __init__(self, kind: str = "node"):
        """Initialize empty dependency graph.

        Args:
            kind: Noun used in error messages ("stage", "resource")
        """
        self.kind = kind
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)
        self._next_index = 0

    def add_node(self, node_id: str, dependencies: Iterable[str] = (), payload: Any = None) -> None:
        """Add or replace a node.

        Args:
            node_id: Unique node ID
            dependencies: IDs of nodes this node depends on
            payload: Arbitrary object carried by the node
        """
        new_deps = set(dependencies)

        if node_id in self.nodes:
            node = self.nodes[node_id]
            for dep_id in node.dependencies - new_deps:
                self._adjacency_list[dep_id].discard(node_id)
            node.dependencies = new_deps
            node.payload = payload if payload is not None else node.payload
        else:
            self.nodes[node_id] = DependencyNode(
                node_id=node_id,
                payload=payload,
                dependencies=new_deps,
                index=self._next_index,
            )
            self._next_index += 1

        for dep_id in new_deps:
            self._adjacency_list[dep_id].add(node_id)

    def remove_node(self, node_id: str) -> None:
        """Remove a node and its edges."""
        if node_id not in self.nodes:
            return

        node = self.nodes.pop(node_id)
        for dep_id in node.dependencies:
            self._adjacency_list[dep_id].discard(node_id)
        for dependent_id in self._adjacency_list.pop(node_id, set()):
            if dependent_id in self.nodes:
                self.nodes[dependent_id].dependencies.discard(node_id)

    def get_dependencies(self, node_id: str) -> Set[str]:
        """Get direct dependencies of a node."""
        if node_id not in self.nodes:
            return set()
        return self.nodes[node_id].dependencies.copy()

    def get_dependents(self, node_id: str) -> Set[str]:
        """Get direct dependents of a node."""
        return {d for d in self._adjacency_list.get(node_id, set()) if d in self.nodes}

    def get_all_dependencies(self, node_id: str) -> Set[str]:
        """Get all transitive dependencies of a node."""
        return self._walk(node_id, lambda n: self.get_dependencies(n))

    def get_all_dependents(self, node_id: str) -> Set[str]:
        """Get all transitive dependents of a node."""
        return self._walk(node_id, lambda n: self.get_dependents(n))

    def _walk(self, start: str, neighbours) -> Set[str]:
        visited = set()
        queue = deque([start])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            for next_id in neighbours(current_id):
                if next_id not in visited:
                    queue.append(next_id)

        visited.discard(start)
        return visited

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            Node IDs forming a cycle (first node repeated at the end), or None
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {node_id: 0 for node_id in self.nodes}
        stack: List[str] = []

        def dfs(node_id: str) -> Optional[List[str]]:
            color[node_id] = 1
            stack.append(node_id)

            for dep_id in sorted(self.nodes[node_id].dependencies, key=self._order_key):
                if dep_id not in self.nodes:
                    continue
                if color[dep_id] == 1:
                    cycle = stack[stack.index(dep_id):] + [dep_id]
                    # Report in dependency direction: producer first
                    return list(reversed(cycle))
                if color[dep_id] == 0:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle

            stack.pop()
            color[node_id] = 2
            return None

        for node_id in self.nodes:
            if color[node_id] == 0:
                cycle = dfs(node_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            DependencyError: On missing dependencies or cycles
        """
        for node_id, node in self.nodes.items():
            for dep_id in sorted(node.dependencies):
                if dep_id not in self.nodes:
                    raise DependencyError(
                        f"{self.kind.capitalize()} '{node_id}' depends on '{dep_id}' which does not exist"
                    )

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise DependencyError(
                f"Circular dependency detected between {self.kind}s: {' -> '.join(cycle)}"
            )

    def _order_key(self, node_id: str) -> int:
        node = self.nodes.get(node_id)
        return node.index if node else -1

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Returns:
            Node IDs with dependencies before dependents; ties keep insertion order

        Raises:
            DependencyError: If graph is invalid
        """
        self.validate()

        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        ready = [(node.index, node_id) for node_id, node in self.nodes.items() if in_degree[node_id] == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node_id = heapq.heappop(ready)
            result.append(node_id)

            for dependent_id in self.get_dependents(node_id):
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(ready, (self.nodes[dependent_id].index, dependent_id))

        if len(result) != len(self.nodes):
            raise DependencyError(f"Cannot order {self.kind}s: graph contains cycles")

        return result

    def get_deployment_waves(self) -> List[List[str]]:
        """Group nodes into waves.

        Nodes in the same wave do not depend on each other and can be
        applied concurrently.

        Raises:
            DependencyError: If graph is invalid
        """
        self.validate()

        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        current_wave = [node_id for node_id in self.nodes if in_degree[node_id] == 0]
        waves = []

        while current_wave:
            current_wave.sort(key=self._order_key)
            waves.append(current_wave)
            next_wave = []

            for node_id in current_wave:
                for dependent_id in self.get_dependents(node_id):
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_wave.append(dependent_id)

            current_wave = next_wave

        if sum(len(wave) for wave in waves) != len(self.nodes):
            raise DependencyError(f"Cannot group {self.kind}s into waves: graph contains cycles")

        return waves

    def get_destruction_order(self) -> List[str]:
        """Get teardown order: the exact reverse of the deployment order."""
        return list(reversed(self.topological_sort()))

    def subgraph(self, node_ids: Iterable[str]) -> "DependencyGraph":
        """Graph restricted to ``node_ids``, keeping insertion order.

        Edges to nodes outside the selection are dropped.
        """
        keep = set(node_ids)
        graph = DependencyGraph(kind=self.kind)
        for node_id, node in sorted(self.nodes.items(), key=lambda item: item[1].index):
            if node_id in keep:
                graph.add_node(node_id, node.dependencies & keep, node.payload)
        return graph

    def size(self) -> int:
        return len(self.nodes)

    def is_empty(self) -> bool:
        return len(self.nodes) == 0
