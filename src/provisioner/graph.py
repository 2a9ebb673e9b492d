"""Dependency graph construction and ordering.

This module implements dependency management for resource descriptors:
1. Edge derivation from references (one descriptor reading another's output)
2. Topological sorting for apply order
3. Cycle detection before any provider call
4. Ready-set computation for concurrent scheduling

DESIGN:
- Edges are never declared by hand except through `dependsOn`; they are
  derived from OutputRef values so ordering is an inspectable artifact
- Existing (read-only) descriptors are leaves that are only read
- Siblings carry no ordering; the orchestrator may apply them in parallel

EXAMPLE MANIFEST FRAGMENT:
```yaml
acrPull:
  kind: roleAssignment
  properties:
    principalId: {$output: identity.principalId}   # edge acrPull -> identity
    target: {$output: registry.id}                 # edge acrPull -> registry
    role: AcrPull
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .descriptors import ResourceDescriptor

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CycleError(DependencyError):
    """Raised when a dependency cycle is detected.

    Attributes:
        cycle: Descriptor ids participating in the cycle, in edge order.
    """

    def __init__(self, cycle: list[str]) -> None:
        path = " -> ".join([*cycle, cycle[0]]) if cycle else ""
        super().__init__(f"Circular dependency detected involving: {cycle} ({path})")
        self.cycle = cycle


class UnknownDependencyError(DependencyError):
    """Raised when a descriptor depends on a name not declared in the manifest."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: set[str] = field(default_factory=set)
    existing: bool = False


@dataclass
class DependencyGraph:
    """Directed acyclic graph of descriptor dependencies.

    Edges point from a descriptor to the descriptors it reads from.
    """

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(
        self, name: str, depends_on: Iterable[str] | None = None, existing: bool = False
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Descriptor id.
            depends_on: Descriptor ids this one depends on.
            existing: Whether the descriptor is a read-only existing reference.
        """
        if name in self.nodes:
            self.nodes[name].depends_on.update(depends_on or ())
            self.nodes[name].existing = existing
        else:
            self.nodes[name] = DependencyNode(
                name=name, depends_on=set(depends_on or ()), existing=existing
            )

    def edges(self) -> list[tuple[str, str]]:
        """All (from, to) edges, sorted."""
        return sorted(
            (node.name, dep) for node in self.nodes.values() for dep in node.depends_on
        )

    def validate(self) -> None:
        """Validate the graph: every edge target exists and there is no cycle.

        Raises:
            UnknownDependencyError: If an edge points at an undeclared node.
            CycleError: If a cycle is detected.
        """
        for node in self.nodes.values():
            unknown = sorted(dep for dep in node.depends_on if dep not in self.nodes)
            if unknown:
                raise UnknownDependencyError(
                    f"'{node.name}' depends on undeclared resources: {unknown}"
                )

        # Kahn's algorithm for cycle detection
        in_degree = {name: len(node.depends_on) for name, node in self.nodes.items()}
        dependents = self._dependents_index()
        queue = [name for name, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop()
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            residual = {name for name, degree in in_degree.items() if degree > 0}
            raise CycleError(self._find_cycle(residual))

    def _dependents_index(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
        return dependents

    def _find_cycle(self, residual: set[str]) -> list[str]:
        """Extract one concrete cycle from the nodes Kahn's algorithm could not order.

        The residual set also holds nodes downstream of a cycle, so a
        depth-first walk restricted to it is used to name only the members.
        """
        visiting: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def visit(name: str) -> list[str] | None:
            visiting.append(name)
            on_path.add(name)
            for dep in sorted(self.nodes[name].depends_on):
                if dep not in residual or dep in done:
                    continue
                if dep in on_path:
                    return visiting[visiting.index(dep) :]
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            on_path.discard(name)
            done.add(name)
            return None

        for start in sorted(residual):
            if start not in done:
                cycle = visit(start)
                if cycle:
                    return cycle
        return sorted(residual)

    def topological_sort(self) -> list[str]:
        """Return descriptor ids in dependency order (dependencies first).

        Raises:
            CycleError: If a cycle is detected.
        """
        return [name for level in self.levels() for name in level]

    def levels(self) -> list[list[str]]:
        """Group descriptors into waves that can be applied in parallel.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        dependents = self._dependents_index()
        in_degree = {name: len(node.depends_on) for name, node in self.nodes.items()}
        current = sorted(name for name, degree in in_degree.items() if degree == 0)
        result: list[list[str]] = []

        while current:
            result.append(current)
            following: list[str] = []
            for name in current:
                for dependent in dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            # Sort for deterministic ordering among siblings
            current = sorted(following)

        return result

    def get_ready(self, applied: set[str], excluded: set[str]) -> list[str]:
        """Get descriptors that are ready to apply (all dependencies applied).

        Args:
            applied: Descriptor ids already applied.
            excluded: Descriptor ids already started, applied or failed.

        Returns:
            Sorted list of eligible descriptor ids.
        """
        ready = [
            node.name
            for node in self.nodes.values()
            if node.name not in excluded and node.depends_on <= applied
        ]
        return sorted(ready)

    def dependents_of(self, name: str) -> set[str]:
        """All transitive dependents of a descriptor."""
        dependents = self._dependents_index()
        seen: set[str] = set()
        stack = list(dependents.get(name, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dependents[current])
        return seen


def build_graph(descriptors: Iterable[ResourceDescriptor]) -> DependencyGraph:
    """Derive the dependency graph from descriptor references.

    Args:
        descriptors: All descriptors of a manifest.

    Returns:
        A validated DAG.

    Raises:
        UnknownDependencyError: If a reference names an undeclared descriptor.
        CycleError: If the references form a cycle.
    """
    graph = DependencyGraph()
    for descriptor in descriptors:
        graph.add_node(
            descriptor.name,
            descriptor.output_dependencies(),
            existing=descriptor.is_existing,
        )

    graph.validate()
    logger.info(
        "Dependency graph built",
        extra={"nodes": len(graph.nodes), "edges": len(graph.edges())},
    )
    return graph
