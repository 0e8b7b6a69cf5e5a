"""
Find components and pathways computing overlapping information.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Any, List, Mapping, Optional, Set, Tuple

from archflow.analysis.aggregate import FlowMetric, FlowMetricReport
from archflow.graph.ir import ArchitectureGraph
from archflow.graph.topo import shared_consumers
from archflow.utils import logger


class RedundancyClass(str, Enum):
    FUNCTIONAL = "functional-redundant"
    SEMANTIC = "semantic-redundant"
    PROTECTIVE = "protective"
    NONE = "none"


@dataclass(frozen=True)
class RedundancyRecord:
    group: Tuple[str, ...]
    correlation: float
    classification: RedundancyClass
    recommended_action: str
    divergence: Optional[float] = None
    evidence: Mapping[str, Any] = field(default_factory=dict)
    confirmed: bool = False
    interaction: bool = False

    def __post_init__(self) -> None:
        if len(self.group) < 2:
            raise ValueError("A redundancy group needs at least two components.")
        if not -1.0 <= self.correlation <= 1.0:
            raise ValueError(f"Correlation must lie in [-1, 1], got {self.correlation}.")


@dataclass(frozen=True)
class RedundancyConfig:
    """
    Attributes:
        tau_corr: fingerprint correlation at or above which a pair is examined.
        divergence_threshold: semantic divergence at or below which a
            correlated pair is functional-redundant; above it, protective.
        context_weight: share of positional context in the divergence, the
            rest being the input-sensitivity profile.
        overlap_threshold: consumer-side explained-variance overlap that flags
            a semantic-redundant pathway pair.
    """

    tau_corr: float = 0.9
    divergence_threshold: float = 0.3
    context_weight: float = 0.5
    overlap_threshold: float = 0.2

    def __post_init__(self) -> None:
        if not -1.0 <= self.tau_corr <= 1.0:
            raise ValueError("tau_corr must lie in [-1, 1].")
        if not 0.0 <= self.context_weight <= 1.0:
            raise ValueError("context_weight must lie in [0, 1].")
        if self.divergence_threshold < 0:
            raise ValueError("divergence_threshold must be non-negative.")


def _jaccard_distance(a: Set[Any], b: Set[Any]) -> float:
    union = a | b
    if not union:
        return 0.0
    return 1.0 - len(a & b) / len(union)


def positional_divergence(graph: ArchitectureGraph, a: str, b: str) -> float:
    """
    0 when both sit at the same place in the flow, 1 when their depth and
    neighbourhoods share nothing. An exclusive producer/consumer link is one
    path segment and counts as the same position.
    """
    if graph.is_exclusive_link(a, b) or graph.is_exclusive_link(b, a):
        return 0.0
    span = max(graph.max_depth - 1, 1)
    depth_term = min(abs(graph.depth(a) - graph.depth(b)) / span, 1.0)

    def context(name: str, other: str) -> Set[Tuple[str, str]]:
        up = {("up", p) for p in graph.predecessors(name) if p != other}
        down = {("down", s) for s in graph.successors(name) if s != other}
        return up | down

    neighbour_term = _jaccard_distance(context(a, b), context(b, a))
    return 0.5 * depth_term + 0.5 * neighbour_term


def sensitivity_divergence(a: FlowMetric, b: FlowMetric) -> float:
    """Mean relative difference of the two input-sensitivity profiles."""
    terms = []
    for x, y in zip(a.input_sensitivity, b.input_sensitivity):
        scale = max(abs(x), abs(y))
        terms.append(abs(x - y) / scale if scale > 1e-12 else 0.0)
    return sum(terms) / len(terms)


class RedundancyAnalyzer:
    def __init__(self, config: Optional[RedundancyConfig] = None) -> None:
        self.config = config or RedundancyConfig()

    def divergence(
        self, graph: ArchitectureGraph, report: FlowMetricReport, a: str, b: str
    ) -> Tuple[float, float, float]:
        positional = positional_divergence(graph, a, b)
        sensitivity = sensitivity_divergence(report.metrics[a], report.metrics[b])
        w = self.config.context_weight
        return w * positional + (1.0 - w) * sensitivity, positional, sensitivity

    def analyze(self, report: FlowMetricReport, graph: ArchitectureGraph) -> List[RedundancyRecord]:
        cfg = self.config
        names = [name for name in report.component_index if name in graph]
        records: List[RedundancyRecord] = []

        for a, b in combinations(names, 2):
            corr = report.correlation(a, b)
            if corr < cfg.tau_corr:
                continue
            divergence, positional, sensitivity = self.divergence(graph, report, a, b)
            if divergence <= cfg.divergence_threshold:
                classification = RedundancyClass.FUNCTIONAL
                action = "merge-or-eliminate"
            else:
                classification = RedundancyClass.PROTECTIVE
                action = "preserve"
            records.append(
                RedundancyRecord(
                    group=(a, b),
                    correlation=corr,
                    classification=classification,
                    recommended_action=action,
                    divergence=divergence,
                    evidence={
                        "positional_divergence": positional,
                        "sensitivity_divergence": sensitivity,
                    },
                )
            )

        records.extend(self._pathway_overlap(report, graph))
        records.sort(key=lambda r: (-r.correlation, r.group))
        logger.info("Redundancy analysis produced %d records", len(records))
        return records

    def _pathway_overlap(self, report: FlowMetricReport, graph: ArchitectureGraph) -> List[RedundancyRecord]:
        """
        Below-threshold producer pairs whose contributions to a shared consumer
        overlap: if each alone explains most of the consumer's variance, the
        explained fractions sum past one by the overlapping amount.
        """
        cfg = self.config
        records: List[RedundancyRecord] = []
        for consumer, producers in shared_consumers(graph).items():
            if consumer not in report.metrics:
                continue
            present = [p for p in producers if p in report.metrics]
            for p, q in combinations(present, 2):
                corr = report.correlation(p, q)
                if corr >= cfg.tau_corr:
                    continue
                rho_p = report.correlation(p, consumer)
                rho_q = report.correlation(q, consumer)
                overlap = rho_p * rho_p + rho_q * rho_q - 1.0
                if overlap < cfg.overlap_threshold:
                    continue
                records.append(
                    RedundancyRecord(
                        group=(p, q),
                        correlation=corr,
                        classification=RedundancyClass.SEMANTIC,
                        recommended_action="confirm-by-ablation",
                        evidence={
                            "consumer": consumer,
                            "overlap": overlap,
                            "consumer_correlation": (rho_p, rho_q),
                        },
                    )
                )
        return records
