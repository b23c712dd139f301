"""Task dependency graph."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass
class TaskNode:
    """A node in the task DAG."""

    task_id: str
    depends_on: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)  # Tasks that depend on this one


@dataclass
class DAGValidationError(Exception):
    """Error raised when DAG validation fails."""

    message: str
    details: dict[str, list[str]] | None = None

    def __str__(self) -> str:
        return self.message


def parse_task_dag(dependencies: Mapping[str, list[str] | set[str]]) -> dict[str, TaskNode]:
    """Parse a task -> dependencies mapping into a DAG representation.

    Args:
        dependencies: Map of task_id to the task ids it depends on

    Returns:
        Dictionary mapping task_id to TaskNode
    """
    nodes: dict[str, TaskNode] = {
        task_id: TaskNode(task_id=task_id, depends_on=set(deps))
        for task_id, deps in dependencies.items()
    }

    for task_id, node in nodes.items():
        for dep_id in node.depends_on:
            if dep_id in nodes:
                nodes[dep_id].dependents.add(task_id)

    return nodes


def detect_cycles(nodes: dict[str, TaskNode]) -> list[list[str]]:
    """Detect cycles in the task DAG.

    Uses DFS-based cycle detection.

    Returns:
        List of cycles found (each cycle is a list of task IDs)
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = {node_id: WHITE for node_id in nodes}
    parent: dict[str, str | None] = {node_id: None for node_id in nodes}
    cycles: list[list[str]] = []

    def dfs(node_id: str) -> None:
        color[node_id] = GRAY

        for dep_id in nodes[node_id].depends_on:
            if dep_id not in nodes:
                continue

            if color[dep_id] == GRAY:
                cycle = [dep_id]
                current = node_id
                while current != dep_id:
                    cycle.append(current)
                    current = parent.get(current)
                    if current is None:
                        break
                cycle.append(dep_id)
                cycle.reverse()
                cycles.append(cycle)

            elif color[dep_id] == WHITE:
                parent[dep_id] = node_id
                dfs(dep_id)

        color[node_id] = BLACK

    for node_id in nodes:
        if color[node_id] == WHITE:
            dfs(node_id)

    return cycles


def validate_dag(dependencies: Mapping[str, list[str] | set[str]]) -> None:
    """Validate a dependency mapping.

    Raises:
        DAGValidationError: On references to unknown tasks or cycles
    """
    nodes = parse_task_dag(dependencies)

    missing_deps: dict[str, list[str]] = defaultdict(list)
    for task_id, node in nodes.items():
        for dep_id in sorted(node.depends_on):
            if dep_id not in nodes:
                missing_deps[task_id].append(dep_id)

    if missing_deps:
        raise DAGValidationError(
            message="Tasks reference non-existent dependencies",
            details=dict(missing_deps),
        )

    cycles = detect_cycles(nodes)
    if cycles:
        raise DAGValidationError(
            message="Circular dependencies detected",
            details={"cycles": [" -> ".join(c) for c in cycles]},
        )


def get_task_dependents(task_id: str, nodes: dict[str, TaskNode]) -> set[str]:
    """Get all tasks that transitively depend on this task."""
    if task_id not in nodes:
        return set()

    visited: set[str] = set()
    stack = list(nodes[task_id].dependents)

    while stack:
        current = stack.pop()
        if current in visited or current not in nodes:
            continue
        visited.add(current)
        stack.extend(nodes[current].dependents)

    return visited


def rollback_order(task_id: str, nodes: dict[str, TaskNode]) -> list[str]:
    """Order a task and its transitive dependents leaves first.

    Post-order traversal over dependents: every task appears after all
    tasks that depend on it, and the root task comes last.
    """
    visited: set[str] = set()
    order: list[str] = []

    def visit(tid: str) -> None:
        if tid in visited:
            return
        visited.add(tid)
        node = nodes.get(tid)
        if node is not None:
            for dependent in sorted(node.dependents):
                visit(dependent)
        order.append(tid)

    visit(task_id)
    return order
