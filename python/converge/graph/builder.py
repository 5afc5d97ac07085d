"""
converge/graph/builder.py

Builds the resource DependencyGraph from a set of ResourceSpecs. An edge runs
from the referencing resource to the referenced one, for every Reference in
its attributes and every explicit depends_on entry.

build_graph is a pure function: it validates, builds and returns, with no
side effects.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from converge.errors import ConfigError, CycleError
from converge.graph.digraph import Digraph
from converge.models.resource import ResourceAddress, ResourceSpec


class DependencyGraph(Digraph[ResourceAddress]):
    """Acyclic graph of resource addresses; edges mean 'must be applied after'."""


def index_specs(specs: Iterable[ResourceSpec]) -> Dict[ResourceAddress, ResourceSpec]:
    """Key specs by address, rejecting duplicates.

    Raises:
        ConfigError: If two specs share an address.
    """
    indexed: Dict[ResourceAddress, ResourceSpec] = {}
    for spec in specs:
        if spec.address in indexed:
            raise ConfigError(f"Duplicate resource address: {spec.address}")
        indexed[spec.address] = spec
    return indexed


def build_graph(specs: Iterable[ResourceSpec]) -> DependencyGraph:
    """Construct the dependency graph for a complete set of resource specs.

    Args:
        specs: Every declared resource.

    Returns:
        DependencyGraph: One node per spec, edges from referencing to referenced.

    Raises:
        ConfigError: On duplicate addresses or references to undeclared resources.
        CycleError: If references form a cycle (self references included).
    """
    indexed = index_specs(specs)
    graph = DependencyGraph()

    for address in sorted(indexed):
        graph.add_node(address)

    for address, spec in sorted(indexed.items()):
        for target in spec.dependency_addresses():
            if target not in indexed:
                raise ConfigError(
                    f"{address} references undeclared resource {target}"
                )
            graph.add_edge(address, target)

    cycles = graph.strongly_connected_cycles()
    if cycles:
        members: List[str] = [str(addr) for cycle in cycles for addr in cycle]
        raise CycleError(members)

    return graph


__all__ = ["DependencyGraph", "build_graph", "index_specs"]
