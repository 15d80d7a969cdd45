"""Dependency resolution — deterministic topological ordering.

Kahn's algorithm with a stable tie-break: among nodes whose prerequisites are
all emitted, the one declared first goes first, so repeated runs over
identical input produce identical orders.

Two refinements serve the plan builder:

- ``exempt`` edges are ignored entirely (neither ordering nor cycles).
- ``deferred`` nodes, and everything ordered after them, are emitted after
  every other node. The destroy step of a create-before-destroy replacement
  is deferred this way so the original outlives every re-pointed dependent.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping, Sequence

from strataform.core.graph import ResourceGraph
from strataform.errors import CycleError


def topological_order(
    nodes: Sequence[str],
    prerequisites: Mapping[str, Iterable[str]],
    *,
    exempt: Iterable[tuple[str, str]] = (),
    deferred: Iterable[str] = (),
) -> list[str]:
    """Order *nodes* so each appears after all of its prerequisites.

    Parameters
    ----------
    nodes:
        Every node, in tie-break order (usually declaration order).
    prerequisites:
        node -> nodes that must come first. Entries naming nodes outside
        *nodes* are ignored.
    exempt:
        ``(node, prerequisite)`` pairs to ignore.
    deferred:
        Nodes to push to the end of the order, together with every node
        that transitively follows them.

    Raises
    ------
    CycleError
        If the remaining edges contain a cycle.
    """
    position = {node: i for i, node in enumerate(nodes)}
    skip = set(exempt)
    prereqs: dict[str, set[str]] = {node: set() for node in nodes}
    followers: dict[str, list[str]] = {node: [] for node in nodes}
    for node in nodes:
        for prereq in prerequisites.get(node, ()):
            if prereq not in position or (node, prereq) in skip:
                continue
            if prereq not in prereqs[node]:
                prereqs[node].add(prereq)
                followers[prereq].append(node)

    # Everything ordered after a deferred node is deferred too.
    late: set[str] = set()
    stack = [node for node in deferred if node in position]
    while stack:
        node = stack.pop()
        if node in late:
            continue
        late.add(node)
        stack.extend(followers[node])

    early_nodes = [node for node in nodes if node not in late]
    late_nodes = [node for node in nodes if node in late]

    order: list[str] = []
    for group in (early_nodes, late_nodes):
        members = set(group)
        in_degree = {
            node: sum(1 for p in prereqs[node] if p in members) for node in group
        }
        heap = [(position[node], node) for node in group if in_degree[node] == 0]
        heapq.heapify(heap)
        emitted = 0
        while heap:
            _, node = heapq.heappop(heap)
            order.append(node)
            emitted += 1
            for follower in followers[node]:
                if follower in members:
                    in_degree[follower] -= 1
                    if in_degree[follower] == 0:
                        heapq.heappush(heap, (position[follower], follower))
        if emitted != len(group):
            cycle_nodes = sorted(
                {n for component in find_cycles(nodes, prereqs) for n in component},
                key=position.__getitem__,
            )
            if not cycle_nodes:
                cycle_nodes = [n for n in group if n not in set(order)]
            raise CycleError(cycle_nodes)
    return order


def find_cycles(
    nodes: Sequence[str], prerequisites: Mapping[str, Iterable[str]]
) -> list[list[str]]:
    """Return every cycle's members (Tarjan's strongly connected components).

    Components of size one are reported only when the node depends on
    itself.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0
    known = set(nodes)

    def edges(node: str) -> list[str]:
        return [p for p in prerequisites.get(node, ()) if p in known]

    for root in nodes:
        if root in index_of:
            continue
        # Iterative Tarjan so deep graphs don't hit the recursion limit.
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, child_pos = work.pop()
            if child_pos == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            children = edges(node)
            recurse = False
            for i in range(child_pos, len(children)):
                child = children[i]
                if child not in index_of:
                    work.append((node, i + 1))
                    work.append((child, 0))
                    recurse = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if recurse:
                continue
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in edges(node):
                    components.append(component)
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
    return components


class DependencyResolver:
    """Orders the nodes of a ``ResourceGraph``.

    Parameters
    ----------
    graph:
        The reference graph to order.
    """

    def __init__(self, graph: ResourceGraph) -> None:
        self._graph = graph

    def order(self, *, exempt: Iterable[tuple[str, str]] = ()) -> list[str]:
        """Every node after all nodes it references (creation order)."""
        return topological_order(
            self._graph.addresses, self._graph.prerequisites(), exempt=exempt
        )

    def reverse_order(self, *, exempt: Iterable[tuple[str, str]] = ()) -> list[str]:
        """Every node before all nodes it references (destruction order)."""
        return list(reversed(self.order(exempt=exempt)))
