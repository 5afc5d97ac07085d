"""
converge/graph/digraph.py

A small directed graph keyed by stable, orderable node keys (addresses or
plan entry keys). Nodes hold no references to each other: the graph is two
adjacency maps, so cycle detection, ordering and teardown are plain graph
algorithms.

Edge direction: add_edge(a, b) means "a depends on b", i.e. b must finish
before a starts.
"""

from __future__ import annotations

import heapq
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterator,
    List,
    Optional,
    Set,
    TypeVar,
)

K = TypeVar("K", bound=Hashable)


class Digraph(Generic[K]):
    """Adjacency-list digraph with deterministic ordering algorithms."""

    def __init__(self) -> None:
        self._deps: Dict[K, Set[K]] = {}
        self._rdeps: Dict[K, Set[K]] = {}

    # ------------------------------------------------------------------
    def add_node(self, node: K) -> None:
        self._deps.setdefault(node, set())
        self._rdeps.setdefault(node, set())

    def add_edge(self, node: K, depends_on: K) -> None:
        """Record that `node` must wait for `depends_on`."""
        self.add_node(node)
        self.add_node(depends_on)
        self._deps[node].add(depends_on)
        self._rdeps[depends_on].add(node)

    @property
    def nodes(self) -> List[K]:
        return sorted(self._deps, key=str)

    def dependencies(self, node: K) -> List[K]:
        return sorted(self._deps[node], key=str)

    def dependents(self, node: K) -> List[K]:
        return sorted(self._rdeps[node], key=str)

    def __contains__(self, node: object) -> bool:
        return node in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    # ------------------------------------------------------------------
    def ancestors(self, node: K) -> Set[K]:
        """Everything `node` transitively depends on."""
        return self._reach(node, self._deps)

    def descendants(self, node: K) -> Set[K]:
        """Everything that transitively depends on `node`."""
        return self._reach(node, self._rdeps)

    def has_path(self, source: K, target: K) -> bool:
        """True if `source` transitively depends on `target`."""
        return target in self.ancestors(source)

    def _reach(self, start: K, adjacency: Dict[K, Set[K]]) -> Set[K]:
        seen: Set[K] = set()
        stack = list(adjacency[start])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(adjacency[current])
        return seen

    # ------------------------------------------------------------------
    def topological_order(self, key: Optional[Callable[[K], Any]] = None) -> List[K]:
        """Dependencies first; ties broken by `key` (default: the nodes' string form).

        Raises:
            ValueError: If the graph has a cycle. Callers that need the cycle
                members use strongly_connected_cycles() first.
        """
        rank = key or str
        remaining = {node: len(deps) for node, deps in self._deps.items()}
        ready = [
            (rank(node), str(node), node)
            for node, count in remaining.items()
            if count == 0
        ]
        heapq.heapify(ready)
        order: List[K] = []
        while ready:
            _, _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._rdeps[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (rank(dependent), str(dependent), dependent))
        if len(order) != len(self._deps):
            raise ValueError("Graph contains a cycle")
        return order

    def strongly_connected_cycles(self) -> List[List[K]]:
        """Return each cycle as the sorted members of its strongly connected component.

        Uses an iterative Tarjan's algorithm so deep graphs do not hit the
        recursion limit. Single nodes count only when they depend on themselves.
        """
        index_of: Dict[K, int] = {}
        lowlink: Dict[K, int] = {}
        on_stack: Set[K] = set()
        stack: List[K] = []
        cycles: List[List[K]] = []
        counter = 0

        for root in self.nodes:
            if root in index_of:
                continue
            work: List[tuple[K, Iterator[K]]] = [(root, iter(self.dependencies(root)))]
            index_of[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)

            while work:
                node, children = work[-1]
                advanced = False
                for child in children:
                    if child not in index_of:
                        index_of[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(self.dependencies(child))))
                        advanced = True
                        break
                    if child in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[child])
                if advanced:
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])

                if lowlink[node] == index_of[node]:
                    component: List[K] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1 or node in self._deps[node]:
                        cycles.append(sorted(component, key=str))

        return sorted(cycles, key=lambda members: str(members[0]))


__all__ = ["Digraph"]
