"""
Topological traversal helpers used by the pathway and integration analyses.
"""

from __future__ import annotations

from typing import Dict, List, Mapping

from .ir import ArchitectureGraph


def reverse_topological_order(graph: ArchitectureGraph) -> List[str]:
    """Outputs first, inputs last."""
    return list(reversed(graph.topological_order()))


def heaviest_downstream_mass(
    graph: ArchitectureGraph, weights: Mapping[str, float]
) -> Dict[str, float]:
    """
    For each component, the largest sum of `weights` along any path from one of
    its successors to an output (the component itself excluded).

    Propagated from outputs toward inputs. Skip edges that point backwards in
    topological order are ignored so the recursion stays well founded.
    """
    position = {name: idx for idx, name in enumerate(graph.topological_order())}
    downstream: Dict[str, float] = {}
    for name in reverse_topological_order(graph):
        best = 0.0
        for child in graph.successors(name):
            if position[child] <= position[name]:
                continue
            best = max(best, weights.get(child, 0.0) + downstream[child])
        downstream[name] = best
    return downstream


def shared_consumers(graph: ArchitectureGraph) -> Dict[str, List[str]]:
    """Consumers with two or more distinct producers, mapped to those producers."""
    result: Dict[str, List[str]] = {}
    for name in graph.topological_order():
        producers = graph.predecessors(name)
        if len(producers) >= 2:
            result[name] = producers
    return result
