"""Resource dependency graph construction and ordering.

This module implements dependency management for declared resources:
1. Graph construction from cross-resource references and explicit depends_on
2. Reference validation (every edge target must be declared)
3. Cycle detection by depth-first search with recursion-stack marking
4. Topological sorting for execution order

Nodes are addressed by their canonical address string rather than linked by
object pointers, which keeps the graph trivially safe to traverse from
concurrent workers.

EXAMPLE:
```yaml
resources:
  - kind: service_account
    name: api
    attributes:
      account_id: api
  - kind: iam_binding
    name: api_logs
    attributes:
      role: roles/logging.logWriter
      members: ["serviceAccount:${service_account.api.email}"]
```
`iam_binding.api_logs` depends on `service_account.api`.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from .models import ResourceNode

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        path = " -> ".join([*cycle, cycle[0]]) if cycle else ""
        super().__init__(f"Circular dependency detected: {path}")


class UnresolvedReferenceError(DependencyError):
    """Raised when a node references an address that is not declared."""

    def __init__(
        self,
        address: str,
        attribute: str | None,
        target: str,
        reason: str = "references undeclared resource",
    ) -> None:
        self.address = address
        self.attribute = attribute
        self.target = target
        where = f"{address}.{attribute}" if attribute else f"{address} (depends_on)"
        super().__init__(f"{where} {reason} '{target}'")


class DuplicateAddressError(DependencyError):
    """Raised when two declarations resolve to the same address."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    address: str
    depends_on: list[str] = field(default_factory=list)
    # Declaration order, used to break ties deterministically
    order: int = 0


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(
        self, address: str, depends_on: list[str] | None = None, order: int | None = None
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            address: Resource address.
            depends_on: Addresses this node must wait for.
            order: Declaration order (defaults to insertion order).

        Raises:
            DuplicateAddressError: If the address is already present.
        """
        if address in self.nodes:
            raise DuplicateAddressError(f"Duplicate resource address: {address}")
        self.nodes[address] = DependencyNode(
            address=address,
            depends_on=list(depends_on or []),
            order=len(self.nodes) if order is None else order,
        )

    def find_cycle(self) -> list[str] | None:
        """Find one dependency cycle, if any.

        Iterative depth-first search: a node still on the recursion stack
        (GREY) that is reached again closes a cycle.

        Returns:
            Addresses on the cycle in dependency order, or None.
        """
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self.nodes, white)

        for root in sorted(self.nodes.values(), key=lambda n: n.order):
            if color[root.address] != white:
                continue

            color[root.address] = grey
            path = [root.address]
            stack = [iter(root.depends_on)]

            while stack:
                for dep in stack[-1]:
                    if dep not in self.nodes:
                        continue
                    if color[dep] == grey:
                        return path[path.index(dep) :]
                    if color[dep] == white:
                        color[dep] = grey
                        path.append(dep)
                        stack.append(iter(self.nodes[dep].depends_on))
                        break
                else:
                    color[path.pop()] = black
                    stack.pop()

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            UnresolvedReferenceError: If a dependency is not a node of the graph.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise UnresolvedReferenceError(node.address, None, dep)

        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)

    def topological_sort(self) -> list[str]:
        """Return addresses in dependency order (dependencies first).

        Ties among independent nodes are broken by declaration order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        # Reversed adjacency - edges point to dependents
        dependents: dict[str, list[str]] = {address: [] for address in self.nodes}
        in_degree: dict[str, int] = dict.fromkeys(self.nodes, 0)

        for node in self.nodes.values():
            for dep in set(node.depends_on):
                dependents[dep].append(node.address)
                in_degree[node.address] += 1

        # Kahn's algorithm with a heap keyed by declaration order
        heap = [
            (self.nodes[address].order, address)
            for address, degree in in_degree.items()
            if degree == 0
        ]
        heapq.heapify(heap)
        result: list[str] = []

        while heap:
            _, current = heapq.heappop(heap)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].order, dependent))

        return result

    def dependencies_of(self, address: str, transitive: bool = False) -> set[str]:
        """Addresses the given node depends on."""
        direct = set(self.nodes[address].depends_on)
        if not transitive:
            return direct
        seen: set[str] = set()
        pending = list(direct)
        while pending:
            current = pending.pop()
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            pending.extend(self.nodes[current].depends_on)
        return seen

    def dependents_of(self, address: str, transitive: bool = False) -> set[str]:
        """Addresses that depend on the given node."""
        direct = {n.address for n in self.nodes.values() if address in n.depends_on}
        if not transitive:
            return direct
        seen: set[str] = set()
        pending = list(direct)
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(
                n.address for n in self.nodes.values() if current in n.depends_on
            )
        return seen

    def get_ready(self, satisfied: set[str]) -> list[str]:
        """Get nodes whose dependencies are all satisfied.

        Args:
            satisfied: Addresses already applied.

        Returns:
            Addresses that can be applied now, in declaration order.
        """
        ready = [
            node
            for node in self.nodes.values()
            if node.address not in satisfied
            and all(dep in satisfied for dep in node.depends_on)
        ]
        return [node.address for node in sorted(ready, key=lambda n: n.order)]


def build_graph(nodes: list[ResourceNode]) -> DependencyGraph:
    """Build and validate the dependency graph for a set of declarations.

    Args:
        nodes: Declared resource instances.

    Returns:
        Validated, acyclic dependency graph.

    Raises:
        DuplicateAddressError: If two nodes share an address.
        UnresolvedReferenceError: If a reference targets an undeclared address.
        CyclicDependencyError: If the references form a cycle.
    """
    graph = DependencyGraph()
    declared = {node.address for node in nodes}

    for node in nodes:
        for attribute, ref in node.references():
            if ref.address not in declared:
                raise UnresolvedReferenceError(node.address, attribute, ref.address)
        for dep in node.depends_on:
            if dep not in declared:
                raise UnresolvedReferenceError(node.address, None, dep)

        graph.add_node(node.address, node.dependency_addresses(), order=node.order)

    graph.validate()

    logger.debug(
        "Built dependency graph",
        extra={
            "node_count": len(graph.nodes),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph
