"""
Bottlenecks and redundancy that only exist in the interaction between
components.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from itertools import combinations
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from archflow.analysis.aggregate import FlowMetricReport
from archflow.analysis.bottlenecks import (
    BottleneckKind,
    BottleneckNature,
    BottleneckRecord,
)
from archflow.analysis.criticality import CriticalityScore
from archflow.analysis.redundancy import RedundancyClass, RedundancyRecord
from archflow.graph.ir import ArchitectureGraph
from archflow.graph.topo import shared_consumers
from archflow.runtime.substrate import ExecutionSubstrate, JointOverrideSubstrate, default_replacement
from archflow.utils import logger


@dataclass(frozen=True)
class IntegrationConfig:
    """
    Attributes:
        interaction_threshold: |conditional-correlation delta| that flags an edge.
        dispensable_delta: ablation delta at or below which a producer counts
            as dispensable on its own.
        synergy_margin: how much the joint ablation delta must exceed the sum
            of single deltas to confirm a redundant combined signal.
    """

    interaction_threshold: float = 0.5
    dispensable_delta: float = 0.02
    synergy_margin: float = 0.05

    def __post_init__(self) -> None:
        if not 0.0 < self.interaction_threshold <= 1.0:
            raise ValueError("interaction_threshold must lie in (0, 1].")
        if self.dispensable_delta < 0 or self.synergy_margin < 0:
            raise ValueError("Ablation margins must be non-negative.")


@dataclass(frozen=True)
class InteractionEdge:
    producer: str
    consumer: str
    correlation: float
    conditional_variance_ratio: float
    predicted_explained: float
    delta: float
    flagged: bool


@dataclass(frozen=True)
class IntegrationResult:
    edges: Tuple[InteractionEdge, ...]
    bottlenecks: Tuple[BottleneckRecord, ...]
    redundancy: Tuple[RedundancyRecord, ...]
    evidence: Mapping[str, Any] = field(default_factory=dict)

    def flagged_edges(self) -> List[InteractionEdge]:
        return [edge for edge in self.edges if edge.flagged]


class IntegrationAnalyzer:
    def __init__(self, config: Optional[IntegrationConfig] = None) -> None:
        self.config = config or IntegrationConfig()

    def interaction_graph(
        self,
        report: FlowMetricReport,
        graph: ArchitectureGraph,
        explained: Set[str],
    ) -> List[InteractionEdge]:
        """
        For each edge A -> B, compare the share of B's variance explained by A
        (rho squared; 1 - rho squared is B's conditional variance ratio given
        A) against the equal share 1/indegree(B) each producer is expected to
        carry. Edges touching a component whose own analysis already flagged a
        semantic bottleneck are measured but never flagged.
        """
        edges: List[InteractionEdge] = []
        for edge in graph.edges:
            a, b = edge.producer, edge.consumer
            if a not in report.metrics or b not in report.metrics:
                continue
            rho = report.correlation(a, b)
            explained_share = rho * rho
            predicted = 1.0 / max(len(graph.predecessors(b)), 1)
            delta = explained_share - predicted
            flagged = (
                abs(delta) >= self.config.interaction_threshold
                and a not in explained
                and b not in explained
            )
            edges.append(
                InteractionEdge(
                    producer=a,
                    consumer=b,
                    correlation=rho,
                    conditional_variance_ratio=1.0 - explained_share,
                    predicted_explained=predicted,
                    delta=delta,
                    flagged=flagged,
                )
            )
        return edges

    def _interaction_bottlenecks(self, edges: Sequence[InteractionEdge]) -> List[BottleneckRecord]:
        records: List[BottleneckRecord] = []
        for edge in edges:
            if not edge.flagged:
                continue
            signal = "dominance" if edge.delta > 0 else "decoupling"
            records.append(
                BottleneckRecord(
                    target=(edge.producer, edge.consumer),
                    kind=BottleneckKind.SEMANTIC,
                    severity=min(1.0, abs(edge.delta)),
                    nature=BottleneckNature.NECESSARY,
                    recommended_action="rebalance-inputs" if signal == "dominance" else "inspect-interface",
                    evidence={
                        "signal": signal,
                        "conditional_correlation_delta": edge.delta,
                        "correlation": edge.correlation,
                        "conditional_variance_ratio": edge.conditional_variance_ratio,
                        "predicted_explained": edge.predicted_explained,
                    },
                    interaction=True,
                )
            )
        return records

    def _joint_redundancy(
        self,
        graph: ArchitectureGraph,
        criticality: Sequence[CriticalityScore],
        redundancy: Sequence[RedundancyRecord],
        substrate: Optional[ExecutionSubstrate],
        higher_is_better: bool,
    ) -> Tuple[List[RedundancyRecord], List[RedundancyRecord]]:
        """
        Consumer-conditioned joint ablation of producer pairs.

        Returns (new interaction-level records, updated input records). A pair
        is examined when both producers are dispensable alone, or when the
        redundancy analysis already proposed it as semantic-redundant. If
        disabling both costs clearly more than the two single ablations, each
        was covering for the other.
        """
        cfg = self.config
        if substrate is None or not isinstance(substrate, JointOverrideSubstrate):
            logger.info("No joint-override substrate; pair confirmation skipped.")
            return [], list(redundancy)

        deltas: Dict[str, float] = {
            s.component_id: s.ablation_delta
            for s in criticality
            if s.ablation_status.assessed and s.ablation_delta is not None
        }
        existing: Dict[Tuple[str, ...], RedundancyRecord] = {
            tuple(sorted(r.group)): r for r in redundancy if len(r.group) == 2
        }
        updated: Dict[Tuple[str, ...], RedundancyRecord] = {}
        created: List[RedundancyRecord] = []
        baseline: Optional[float] = None

        for consumer, producers in shared_consumers(graph).items():
            for p, q in combinations(producers, 2):
                key = (p, q) if p < q else (q, p)
                prior = existing.get(key)
                if prior is not None and prior.classification is not RedundancyClass.SEMANTIC:
                    continue
                if key in updated or p not in deltas or q not in deltas:
                    continue
                if prior is None and max(deltas[p], deltas[q]) > cfg.dispensable_delta:
                    continue

                replacements = {n: default_replacement(graph.component(n).kind) for n in key}
                try:
                    if baseline is None:
                        baseline = float(substrate.baseline_metric())
                    metric = float(substrate.run_with_overrides(replacements))
                except Exception as exc:  # joint ablation is advisory evidence
                    logger.warning("Joint ablation of (%s, %s) failed: %s", p, q, exc)
                    continue

                joint_delta = baseline - metric if higher_is_better else metric - baseline
                synergy = joint_delta - (deltas[p] + deltas[q])
                evidence = {
                    "consumer": consumer,
                    "joint_delta": joint_delta,
                    "single_deltas": (deltas[p], deltas[q]),
                    "synergy": synergy,
                }
                is_redundant = synergy >= cfg.synergy_margin

                if prior is not None:
                    merged_evidence = dict(prior.evidence)
                    merged_evidence.update(evidence)
                    updated[key] = replace(
                        prior,
                        classification=RedundancyClass.SEMANTIC if is_redundant else RedundancyClass.NONE,
                        recommended_action="keep-one" if is_redundant else "none",
                        confirmed=True,
                        evidence=merged_evidence,
                    )
                elif is_redundant:
                    updated[key] = RedundancyRecord(
                        group=key,
                        correlation=0.0,
                        classification=RedundancyClass.SEMANTIC,
                        recommended_action="keep-one",
                        evidence=evidence,
                        confirmed=True,
                        interaction=True,
                    )
                    created.append(updated[key])

        merged = [updated.get(tuple(sorted(r.group)), r) for r in redundancy]
        return created, merged

    def analyze(
        self,
        report: FlowMetricReport,
        graph: ArchitectureGraph,
        bottlenecks: Sequence[BottleneckRecord],
        redundancy: Sequence[RedundancyRecord],
        criticality: Sequence[CriticalityScore],
        substrate: Optional[ExecutionSubstrate] = None,
        *,
        higher_is_better: bool = True,
    ) -> IntegrationResult:
        explained = {
            r.component_id
            for r in bottlenecks
            if r.kind is BottleneckKind.SEMANTIC and r.component_id is not None
        }
        edges = self.interaction_graph(report, graph, explained)
        interaction_bottlenecks = self._interaction_bottlenecks(edges)
        created, merged = self._joint_redundancy(
            graph, criticality, redundancy, substrate, higher_is_better
        )
        logger.info(
            "Integration analysis flagged %d edges and %d interaction redundancies",
            len(interaction_bottlenecks),
            len(created),
        )
        return IntegrationResult(
            edges=tuple(edges),
            bottlenecks=tuple(list(bottlenecks) + interaction_bottlenecks),
            redundancy=tuple(merged + created),
            evidence={"semantic_explained": sorted(explained)},
        )
