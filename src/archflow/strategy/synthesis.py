"""
Turn analysis records into prioritised optimisation candidates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from archflow.analysis.aggregate import FlowMetricReport
from archflow.analysis.bottlenecks import BottleneckKind, BottleneckNature, BottleneckRecord
from archflow.analysis.criticality import CriticalityScore
from archflow.analysis.redundancy import RedundancyClass, RedundancyRecord
from archflow.graph.ir import ArchitectureGraph
from archflow.runtime.substrate import ResourceUsage
from archflow.utils import logger


class OptimizationCategory(str, Enum):
    QUANTIZATION = "quantization"
    PRUNING = "pruning"
    FUSION = "fusion"
    SPARSITY = "sparsity"
    MEMORY_LAYOUT = "memory-layout"


@dataclass(frozen=True)
class HardwareProfile:
    """Static deployment target. Only affects candidate ranking and table keys."""

    tag: str
    tensor_cores: bool = False
    bandwidth_class: str = "medium"

    def __post_init__(self) -> None:
        if self.bandwidth_class not in {"low", "medium", "high"}:
            raise ValueError("bandwidth_class must be one of: low, medium, high.")

    def affinity(self, category: OptimizationCategory) -> float:
        weight = 1.0
        if self.tensor_cores and category is OptimizationCategory.QUANTIZATION:
            weight *= 1.25
        if self.tensor_cores and category is OptimizationCategory.FUSION:
            weight *= 1.1
        if self.bandwidth_class == "low" and category is OptimizationCategory.MEMORY_LAYOUT:
            weight *= 1.25
        if self.bandwidth_class == "low" and category is OptimizationCategory.SPARSITY:
            weight *= 1.1
        return weight


GENERIC_PROFILE = HardwareProfile(tag="generic")


@dataclass(frozen=True)
class OptimizationCandidate:
    category: OptimizationCategory
    targets: Tuple[str, ...]
    classifications: Tuple[str, ...]
    expected_benefit: float
    risk: float
    priority: float
    rationale: str = ""
    evidence: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SynthesisConfig:
    """
    Attributes:
        quantization_max_criticality: components above this composite are not
            proposed for quantization.
        pruning_max_criticality: ceiling for pruning low-criticality components.
        pruning_max_ablation: assessed ablation score under which a component
            counts as removable.
        fusion_min_correlation: edge correlation needed to propose fusion.
        sparsity_min_ratio: mean sparsity needed to propose sparse kernels.
        unassessed_risk_penalty: risk added in proportion to targets whose
            ablation was not assessed.
        min_risk: floor keeping benefit/risk finite.
    """

    quantization_max_criticality: float = 0.5
    pruning_max_criticality: float = 0.35
    pruning_max_ablation: float = 0.05
    fusion_min_correlation: float = 0.8
    sparsity_min_ratio: float = 0.5
    unassessed_risk_penalty: float = 0.25
    min_risk: float = 0.05

    def __post_init__(self) -> None:
        if not 0.0 < self.min_risk <= 1.0:
            raise ValueError("min_risk must lie in (0, 1].")
        if self.unassessed_risk_penalty < 0:
            raise ValueError("unassessed_risk_penalty must be non-negative.")


class StrategySynthesizer:
    def __init__(self, config: Optional[SynthesisConfig] = None) -> None:
        self.config = config or SynthesisConfig()

    def synthesize(
        self,
        graph: ArchitectureGraph,
        report: FlowMetricReport,
        bottlenecks: Sequence[BottleneckRecord],
        redundancy: Sequence[RedundancyRecord],
        criticality: Sequence[CriticalityScore],
        *,
        resources: Optional[Mapping[str, ResourceUsage]] = None,
        profile: HardwareProfile = GENERIC_PROFILE,
    ) -> List[OptimizationCandidate]:
        scores = {s.component_id: s for s in criticality}
        cost = self._cost_weights(graph, resources or {})
        raw: Dict[Tuple[OptimizationCategory, Tuple[str, ...]], Tuple[float, str, Dict[str, Any]]] = {}

        def propose(
            category: OptimizationCategory,
            targets: Iterable[str],
            benefit: float,
            rationale: str,
            evidence: Mapping[str, Any],
        ) -> None:
            key = (category, tuple(targets))
            benefit = max(0.0, min(1.0, benefit))
            current = raw.get(key)
            if current is None or benefit > current[0]:
                raw[key] = (benefit, rationale, dict(evidence))

        self._quantization(graph, bottlenecks, scores, cost, propose)
        self._pruning(bottlenecks, redundancy, scores, cost, propose)
        self._fusion(graph, report, cost, propose)
        self._sparsity(graph, report, cost, propose)
        self._memory_layout(bottlenecks, propose)

        candidates: List[OptimizationCandidate] = []
        for (category, targets), (benefit, rationale, evidence) in raw.items():
            if benefit <= 0:
                continue
            risk = self.risk(targets, scores)
            candidates.append(
                OptimizationCandidate(
                    category=category,
                    targets=targets,
                    classifications=tuple(sorted({graph.component(t).kind.value for t in targets})),
                    expected_benefit=benefit,
                    risk=risk,
                    priority=benefit * profile.affinity(category) / risk,
                    rationale=rationale,
                    evidence=evidence,
                )
            )
        ranked = rank_candidates(candidates)
        logger.info("Synthesised %d candidates for profile `%s`", len(ranked), profile.tag)
        return ranked

    def risk(self, targets: Sequence[str], scores: Mapping[str, CriticalityScore]) -> float:
        """Mean criticality of the targets plus a penalty for unassessed ones."""
        cfg = self.config
        if not targets:
            return 1.0
        composites = [scores[t].composite if t in scores else 1.0 for t in targets]
        unassessed = sum(1 for t in targets if t not in scores or scores[t].unassessed)
        value = sum(composites) / len(composites) + cfg.unassessed_risk_penalty * unassessed / len(targets)
        return min(1.0, max(cfg.min_risk, value))

    @staticmethod
    def _cost_weights(graph: ArchitectureGraph, resources: Mapping[str, ResourceUsage]) -> Dict[str, float]:
        """Time share relative to a fair share, capped at 1; 1 everywhere without timings."""
        names = list(graph.topological_order())
        total = sum(resources[n].execution_time_s for n in names if n in resources)
        if total <= 0:
            return {n: 1.0 for n in names}
        return {
            n: min(1.0, (resources[n].execution_time_s / total) * len(names)) if n in resources else 0.0
            for n in names
        }

    def _quantization(self, graph, bottlenecks, scores, cost, propose) -> None:
        saturation: Dict[str, float] = {}
        for record in bottlenecks:
            if record.kind is BottleneckKind.SEMANTIC and record.evidence.get("signal") == "saturation":
                for name in record.target:
                    saturation[name] = max(saturation.get(name, 0.0), record.severity)
        for name in graph.topological_order():
            score = scores.get(name)
            if score is None or score.composite >= self.config.quantization_max_criticality:
                continue
            tolerance = (1.0 - score.composite) * (1.0 - saturation.get(name, 0.0))
            propose(
                OptimizationCategory.QUANTIZATION,
                (name,),
                tolerance * cost.get(name, 1.0),
                "low criticality leaves precision headroom",
                {"tolerance": tolerance, "saturation": saturation.get(name, 0.0)},
            )

    def _pruning(self, bottlenecks, redundancy, scores, cost, propose) -> None:
        cfg = self.config

        def weakest(group: Sequence[str]) -> str:
            return min(group, key=lambda n: (scores[n].composite if n in scores else 1.0, n))

        for record in redundancy:
            if record.classification is RedundancyClass.FUNCTIONAL:
                victim = weakest(record.group)
                composite = scores[victim].composite if victim in scores else 1.0
                propose(
                    OptimizationCategory.PRUNING,
                    (victim,),
                    record.correlation * (1.0 - composite) * cost.get(victim, 1.0),
                    f"functionally redundant with {', '.join(n for n in record.group if n != victim)}",
                    {"group": list(record.group), "correlation": record.correlation},
                )
            elif record.classification is RedundancyClass.SEMANTIC and record.confirmed:
                victim = weakest(record.group)
                composite = scores[victim].composite if victim in scores else 1.0
                propose(
                    OptimizationCategory.PRUNING,
                    (victim,),
                    0.5 * (1.0 - composite) * cost.get(victim, 1.0),
                    "pathway overlap confirmed by joint ablation",
                    {"group": list(record.group), **dict(record.evidence)},
                )

        for record in bottlenecks:
            if record.nature is BottleneckNature.ARTIFACT and record.component_id is not None:
                name = record.component_id
                propose(
                    OptimizationCategory.PRUNING,
                    (name,),
                    record.severity * cost.get(name, 1.0),
                    f"{record.kind.value} bottleneck is an artifact",
                    {"bottleneck": record.kind.value, "severity": record.severity},
                )

        for name, score in scores.items():
            if (
                not score.unassessed
                and score.ablation_score <= cfg.pruning_max_ablation
                and score.composite < cfg.pruning_max_criticality
            ):
                propose(
                    OptimizationCategory.PRUNING,
                    (name,),
                    0.5 * (1.0 - score.composite) * cost.get(name, 1.0),
                    "ablation shows negligible task impact",
                    {"ablation_delta": score.ablation_delta},
                )

    def _fusion(self, graph, report, cost, propose) -> None:
        for edge in graph.edges:
            a, b = edge.producer, edge.consumer
            if edge.skip or not graph.is_exclusive_link(a, b):
                continue
            if a not in report.metrics or b not in report.metrics:
                continue
            out_width = graph.component(a).out_width
            in_width = graph.component(b).in_width
            if out_width is None or in_width is None or out_width != in_width:
                continue
            rho = report.correlation(a, b)
            if rho < self.config.fusion_min_correlation:
                continue
            weight = min(1.0, (cost.get(a, 1.0) + cost.get(b, 1.0)) / 2.0)
            propose(
                OptimizationCategory.FUSION,
                (a, b),
                rho * weight,
                "tightly coupled neighbours with matching interface width",
                {"correlation": rho, "width": out_width},
            )

    def _sparsity(self, graph, report, cost, propose) -> None:
        for name in graph.topological_order():
            metric = report.get(name)
            if metric is None or metric.sparsity_mean < self.config.sparsity_min_ratio:
                continue
            propose(
                OptimizationCategory.SPARSITY,
                (name,),
                metric.sparsity_mean * cost.get(name, 1.0),
                "activations are mostly near zero",
                {"sparsity_mean": metric.sparsity_mean},
            )

    def _memory_layout(self, bottlenecks, propose) -> None:
        for record in bottlenecks:
            if record.kind is not BottleneckKind.MEMORY:
                continue
            propose(
                OptimizationCategory.MEMORY_LAYOUT,
                record.target,
                record.severity,
                f"memory bottleneck ({record.evidence.get('pattern', 'footprint')})",
                dict(record.evidence),
            )


def rank_candidates(candidates: Iterable[OptimizationCandidate]) -> List[OptimizationCandidate]:
    """Priority first; fewer affected components wins ties."""
    return sorted(
        candidates,
        key=lambda c: (-c.priority, len(c.targets), c.category.value, c.targets),
    )
