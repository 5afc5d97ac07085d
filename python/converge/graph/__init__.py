"""
graph/__init__.py

Dependency graph construction and the generic digraph algorithms behind it.
"""

from converge.graph.digraph import Digraph
from converge.graph.builder import DependencyGraph, build_graph, index_specs

__all__ = ["Digraph", "DependencyGraph", "build_graph", "index_specs"]
