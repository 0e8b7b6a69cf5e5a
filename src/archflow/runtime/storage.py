"""
Append-only trace storage for per-sample component observations.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from archflow.errors import UnknownComponent
from archflow.graph.ir import ArchitectureGraph


class PassKind(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


def _frozen_vector(values: Any) -> np.ndarray:
    array = np.array(values, dtype=np.float64).reshape(-1)
    array.flags.writeable = False
    return array


@dataclass(frozen=True)
class Observation:
    """
    Fixed-size digest of one component's behaviour on one executed sample.

    Attributes:
        magnitude: summary of output (forward) or gradient (backward) magnitude.
        fingerprint: fixed-length correlation fingerprint.
        sparsity: fraction of near-zero activations, if the substrate measured it.
        saturation: fraction of activations pinned at representational limits.
        gradient: gradient-magnitude summary attached to a forward capture.
    """

    magnitude: float
    fingerprint: np.ndarray = field(default_factory=lambda: _frozen_vector([]))
    sparsity: Optional[float] = None
    saturation: Optional[float] = None
    gradient: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "magnitude", float(self.magnitude))
        object.__setattr__(self, "fingerprint", _frozen_vector(self.fingerprint))
        for name in ("sparsity", "saturation"):
            value = getattr(self, name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValueError(f"Observation {name} must lie in [0, 1], got {value}.")


@dataclass(frozen=True)
class TraceRecord:
    component_id: str
    pass_kind: PassKind
    sample_id: Hashable
    observation: Observation


class TraceSet(Sequence[TraceRecord]):
    """Immutable, ordered view over trace records."""

    def __init__(self, records: Iterable[TraceRecord] = ()) -> None:
        self._records: Tuple[TraceRecord, ...] = tuple(records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index):  # type: ignore[override]
        if isinstance(index, slice):
            return TraceSet(self._records[index])
        return self._records[index]

    def __iter__(self) -> Iterator[TraceRecord]:
        return iter(self._records)

    def component_ids(self) -> List[str]:
        return list(dict.fromkeys(r.component_id for r in self._records))

    def sample_ids(self) -> List[Hashable]:
        return list(dict.fromkeys(r.sample_id for r in self._records))

    def for_component(self, component_id: str, pass_kind: PassKind) -> List[Observation]:
        return [
            r.observation
            for r in self._records
            if r.component_id == component_id and r.pass_kind == pass_kind
        ]

    def by_sample(self, pass_kind: PassKind) -> Dict[Hashable, Dict[str, List[Observation]]]:
        grouped: Dict[Hashable, Dict[str, List[Observation]]] = {}
        for r in self._records:
            if r.pass_kind != pass_kind:
                continue
            grouped.setdefault(r.sample_id, {}).setdefault(r.component_id, []).append(
                r.observation
            )
        return grouped

    def partition(self, predicate: Callable[[TraceRecord], bool]) -> Tuple["TraceSet", "TraceSet"]:
        left: List[TraceRecord] = []
        right: List[TraceRecord] = []
        for r in self._records:
            (left if predicate(r) else right).append(r)
        return TraceSet(left), TraceSet(right)


class TraceSnapshot:
    """
    Lazy, restartable iteration over one (component, pass) stream.

    The snapshot is bounded by the store length at creation time, so records
    appended afterwards are not visible through it.
    """

    def __init__(self, store: "TraceStore", component_id: str, pass_kind: PassKind, limit: int) -> None:
        self._store = store
        self.component_id = component_id
        self.pass_kind = pass_kind
        self._limit = limit

    def __iter__(self) -> Iterator[Observation]:
        for position in self._store._positions(self.component_id, self.pass_kind, self._limit):
            yield self._store._records[position].observation

    def __len__(self) -> int:
        return sum(1 for _ in self._store._positions(self.component_id, self.pass_kind, self._limit))


class TraceStore:
    """
    Append-only collection of per-run observations keyed to a graph.

    Appends are serialised by a single lock so an observation is published
    whole; readers never take the lock.
    """

    def __init__(self, graph: ArchitectureGraph, *, fingerprint_length: Optional[int] = None) -> None:
        self.graph = graph
        self.fingerprint_length = fingerprint_length
        self._records: List[TraceRecord] = []
        self._index: Dict[Tuple[str, PassKind], List[int]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        component_id: str,
        pass_kind: PassKind,
        sample_id: Hashable,
        observation: Observation,
    ) -> None:
        if component_id not in self.graph:
            raise UnknownComponent(component_id)
        pass_kind = PassKind(pass_kind)
        record = TraceRecord(component_id, pass_kind, sample_id, observation)
        size = observation.fingerprint.shape[0]
        with self._lock:
            if size and self.fingerprint_length is None:
                self.fingerprint_length = size
            elif size and size != self.fingerprint_length:
                raise ValueError(
                    f"Fingerprint length {size} does not match store length "
                    f"{self.fingerprint_length}."
                )
            self._index.setdefault((component_id, pass_kind), []).append(len(self._records))
            self._records.append(record)

    def record_many(
        self,
        pass_kind: PassKind,
        sample_id: Hashable,
        observations: Dict[str, Observation],
    ) -> List[str]:
        """
        Record a whole sample's observations. Unknown components are skipped
        and returned so callers can log them as gaps.
        """
        gaps: List[str] = []
        for component_id, observation in observations.items():
            try:
                self.record(component_id, pass_kind, sample_id, observation)
            except UnknownComponent:
                gaps.append(component_id)
        return gaps

    def snapshot(self, component_id: str, pass_kind: PassKind) -> TraceSnapshot:
        if component_id not in self.graph:
            raise UnknownComponent(component_id)
        return TraceSnapshot(self, component_id, PassKind(pass_kind), len(self._records))

    def trace_set(self) -> TraceSet:
        return TraceSet(self._records[: len(self._records)])

    def __len__(self) -> int:
        return len(self._records)

    def _positions(self, component_id: str, pass_kind: PassKind, limit: int) -> Iterator[int]:
        for position in self._index.get((component_id, pass_kind), ()):
            if position >= limit:
                return
            yield position
