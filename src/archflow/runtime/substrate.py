"""
Contracts for the external execution substrate.

The substrate runs forward/backward passes and yields Observations; the
pipeline only consumes it through `ExecutionSubstrate`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable

from archflow.graph.ir import ComponentKind
from archflow.runtime.storage import Observation


class Replacement(str, Enum):
    """Neutral value substituted for a component's output during ablation."""

    ZERO = "zero"
    IDENTITY = "identity"


@runtime_checkable
class ExecutionSubstrate(Protocol):
    def run_forward(self, inputs: Any) -> Mapping[str, Observation]:
        ...

    def run_backward(self, inputs: Any) -> Mapping[str, Observation]:
        ...

    def run_with_override(self, component_id: str, replacement: Replacement) -> float:
        """Task metric with `component_id` replaced; raises SubstrateFailure on error."""
        ...

    def baseline_metric(self) -> float:
        """Task metric of the unmodified architecture."""
        ...


@runtime_checkable
class JointOverrideSubstrate(Protocol):
    """Optional capability: disable several components in one run."""

    def run_with_overrides(self, replacements: Mapping[str, Replacement]) -> float:
        ...


@dataclass(frozen=True)
class ResourceUsage:
    """
    Measured cost of one component, averaged per executed sample.

    Attributes:
        execution_time_s: wall time spent inside the component.
        peak_bytes: peak memory attributable to the component.
        bandwidth_utilization: achieved fraction of peak memory bandwidth (0, 1].
        alloc_events: allocation/free events.
        alloc_bytes: total bytes moved through those events.
    """

    execution_time_s: float = 0.0
    peak_bytes: int = 0
    bandwidth_utilization: float = 1.0
    alloc_events: int = 0
    alloc_bytes: int = 0

    def __post_init__(self) -> None:
        if self.execution_time_s < 0 or self.peak_bytes < 0:
            raise ValueError("Resource usage values must be non-negative.")
        if not 0.0 < self.bandwidth_utilization <= 1.0:
            raise ValueError("bandwidth_utilization must lie in (0, 1].")

    @property
    def mean_alloc_bytes(self) -> float:
        return self.alloc_bytes / self.alloc_events if self.alloc_events else 0.0


def default_replacement(kind: ComponentKind) -> Replacement:
    """Identity for shape-preserving pass-through kinds, zero otherwise."""
    if kind in (ComponentKind.NORMALIZATION, ComponentKind.SKIP_PATH):
        return Replacement.IDENTITY
    return Replacement.ZERO

