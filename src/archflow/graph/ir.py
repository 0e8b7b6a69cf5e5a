from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from archflow.errors import GraphValidationError, UnknownComponent


class ComponentKind(str, Enum):
    ATTENTION = "attention"
    FEED_FORWARD = "feed_forward"
    NORMALIZATION = "normalization"
    SKIP_PATH = "skip_path"
    EMBEDDING = "embedding"
    ROUTER = "router"
    OTHER = "other"


@dataclass(frozen=True)
class Component:
    """One functional unit of the architecture (attention block, MLP, norm...)."""

    id: str
    kind: ComponentKind = ComponentKind.OTHER
    config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise GraphValidationError("Component id must be a non-empty string.")
        object.__setattr__(self, "kind", ComponentKind(self.kind))
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))

    @property
    def in_width(self) -> Optional[int]:
        value = self.config.get("in_width", self.config.get("width"))
        return int(value) if value is not None else None

    @property
    def out_width(self) -> Optional[int]:
        value = self.config.get("out_width", self.config.get("width"))
        return int(value) if value is not None else None


@dataclass(frozen=True)
class Edge:
    producer: str
    consumer: str
    skip: bool = False


class ArchitectureGraph:
    """
    Immutable directed computation graph over components.

    Skip edges are alternate paths between two topological positions: they
    count as connectivity (neighbours, degree invariants) but never take part
    in ordering, so a skip edge can not close a cycle.
    """

    def __init__(
        self,
        components: Iterable[Component],
        edges: Iterable[Edge],
        *,
        inputs: Optional[Sequence[str]] = None,
        outputs: Optional[Sequence[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        nodes: Dict[str, Component] = {}
        for component in components:
            if component.id in nodes:
                raise GraphValidationError(f"Duplicate component id: {component.id}")
            nodes[component.id] = component
        self._components: Mapping[str, Component] = MappingProxyType(nodes)
        self._edges: Tuple[Edge, ...] = tuple(dict.fromkeys(edges))
        self.metadata: Mapping[str, Any] = MappingProxyType(dict(metadata or {}))

        self._succ: Dict[str, List[Edge]] = {name: [] for name in nodes}
        self._pred: Dict[str, List[Edge]] = {name: [] for name in nodes}
        dangling: List[str] = []
        for edge in self._edges:
            if edge.producer not in nodes or edge.consumer not in nodes:
                dangling.append(f"{edge.producer} -> {edge.consumer}")
                continue
            if edge.producer == edge.consumer:
                raise GraphValidationError(f"Self-loop on `{edge.producer}`.")
            self._succ[edge.producer].append(edge)
            self._pred[edge.consumer].append(edge)
        if dangling:
            raise GraphValidationError(
                "Graph references unknown components:\n" + "\n".join(dangling)
            )

        self._inputs = self._resolve_terminals(inputs, self._pred, "input")
        self._outputs = self._resolve_terminals(outputs, self._succ, "output")
        self._order = self._topological_sort()
        self._depth = self._longest_path_depth()

    def _resolve_terminals(
        self,
        declared: Optional[Sequence[str]],
        adjacency: Mapping[str, List[Edge]],
        role: str,
    ) -> Tuple[str, ...]:
        if declared is None:
            return tuple(sorted(name for name, edges in adjacency.items() if not edges))
        for name in declared:
            if name not in self._components:
                raise GraphValidationError(f"Declared {role} `{name}` not found in graph.")
        declared_set = set(declared)
        orphans = sorted(
            name for name, edges in adjacency.items() if not edges and name not in declared_set
        )
        if orphans:
            direction = "incoming" if role == "input" else "outgoing"
            raise GraphValidationError(
                f"Non-{role} components without {direction} edges: {', '.join(orphans)}"
            )
        return tuple(declared)

    def _topological_sort(self) -> Tuple[str, ...]:
        """Kahn's algorithm over non-skip edges with name-sorted tie-breaks."""
        indeg: Dict[str, int] = {name: 0 for name in self._components}
        for edge in self._edges:
            if not edge.skip:
                indeg[edge.consumer] += 1

        ready = deque(sorted(name for name, deg in indeg.items() if deg == 0))
        order: List[str] = []
        while ready:
            current = ready.popleft()
            order.append(current)
            for child in sorted(e.consumer for e in self._succ[current] if not e.skip):
                indeg[child] -= 1
                if indeg[child] == 0:
                    ready.append(child)

        if len(order) != len(self._components):
            stuck = sorted(name for name, deg in indeg.items() if deg > 0)
            raise GraphValidationError(
                "Graph has a cycle without skip tags through: " + ", ".join(stuck)
            )
        return tuple(order)

    def _longest_path_depth(self) -> Dict[str, int]:
        depth: Dict[str, int] = {}
        for name in self._order:
            parents = [e.producer for e in self._pred[name] if not e.skip]
            depth[name] = 1 + max((depth[p] for p in parents), default=0)
        return depth

    # -- queries -----------------------------------------------------------

    @property
    def components(self) -> Mapping[str, Component]:
        return self._components

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return self._edges

    @property
    def inputs(self) -> Tuple[str, ...]:
        return self._inputs

    @property
    def outputs(self) -> Tuple[str, ...]:
        return self._outputs

    def __contains__(self, component_id: object) -> bool:
        return component_id in self._components

    def __len__(self) -> int:
        return len(self._components)

    def __iter__(self) -> Iterator[Component]:
        return (self._components[name] for name in self._order)

    def component(self, component_id: str) -> Component:
        try:
            return self._components[component_id]
        except KeyError:
            raise UnknownComponent(component_id) from None

    def require(self, component_id: str) -> None:
        if component_id not in self._components:
            raise UnknownComponent(component_id)

    def predecessors(self, component_id: str) -> List[str]:
        self.require(component_id)
        return sorted({e.producer for e in self._pred[component_id]})

    def successors(self, component_id: str) -> List[str]:
        self.require(component_id)
        return sorted({e.consumer for e in self._succ[component_id]})

    def incoming(self, component_id: str) -> List[Edge]:
        self.require(component_id)
        return list(self._pred[component_id])

    def outgoing(self, component_id: str) -> List[Edge]:
        self.require(component_id)
        return list(self._succ[component_id])

    def topological_order(self) -> Tuple[str, ...]:
        return self._order

    def depth(self, component_id: str) -> int:
        self.require(component_id)
        return self._depth[component_id]

    @property
    def max_depth(self) -> int:
        return max(self._depth.values(), default=0)

    def dependency_path(self, source: str, target: str) -> Optional[List[str]]:
        """Shortest producer->consumer path from `source` to `target`, if any."""
        self.require(source)
        self.require(target)
        parents: Dict[str, Optional[str]] = {source: None}
        queue = deque([source])
        while queue:
            current = queue.popleft()
            if current == target:
                path: List[str] = []
                node: Optional[str] = current
                while node is not None:
                    path.append(node)
                    node = parents[node]
                return path[::-1]
            for child in sorted(e.consumer for e in self._succ[current]):
                if child not in parents:
                    parents[child] = current
                    queue.append(child)
        return None

    def is_exclusive_link(self, producer: str, consumer: str) -> bool:
        """True when `producer` feeds only `consumer` and `consumer` reads only `producer`."""
        return self.successors(producer) == [consumer] and self.predecessors(consumer) == [producer]
