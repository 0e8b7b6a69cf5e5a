"""
Detect components that cap throughput, memory efficiency or information
capacity.

Three detectors share one signature and each returns BottleneckRecords. Every
record is classified as "necessary" or "artifact" before it is surfaced; only
artifacts are recommended for elimination.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from archflow.analysis.aggregate import FlowMetric, FlowMetricReport
from archflow.graph.ir import ArchitectureGraph
from archflow.runtime.substrate import ResourceUsage
from archflow.utils import logger


class BottleneckKind(str, Enum):
    COMPUTE = "compute"
    MEMORY = "memory"
    SEMANTIC = "semantic"


class BottleneckNature(str, Enum):
    NECESSARY = "necessary"
    ARTIFACT = "artifact"


@dataclass(frozen=True)
class BottleneckRecord:
    target: Tuple[str, ...]
    kind: BottleneckKind
    severity: float
    nature: BottleneckNature
    recommended_action: str
    evidence: Mapping[str, Any] = field(default_factory=dict)
    interaction: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.severity <= 1.0:
            raise ValueError(f"Bottleneck severity must lie in [0, 1], got {self.severity}.")

    @property
    def component_id(self) -> Optional[str]:
        return self.target[0] if len(self.target) == 1 else None


@dataclass(frozen=True)
class BottleneckConfig:
    """
    Attributes:
        min_severity: records below this severity are not surfaced.
        invariance_cv: coefficient of variation under which an output counts
            as input-invariant.
        near_zero: magnitude/spread under which behaviour counts as empty.
        saturation_threshold: mean saturated fraction that flags a component.
        saturation_full: saturated fraction mapped to severity 1.
        small_alloc_bytes: mean allocation size below which events count as churn.
        churn_reference: allocation events per sample giving churn severity 0.5.
    """

    min_severity: float = 0.25
    invariance_cv: float = 0.01
    near_zero: float = 1e-6
    saturation_threshold: float = 0.2
    saturation_full: float = 0.5
    small_alloc_bytes: int = 64 * 1024
    churn_reference: float = 64.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_severity <= 1.0:
            raise ValueError("min_severity must lie in [0, 1].")
        if self.invariance_cv < 0 or self.near_zero < 0:
            raise ValueError("Tolerances must be non-negative.")
        if not 0.0 < self.saturation_threshold <= self.saturation_full <= 1.0:
            raise ValueError("Require 0 < saturation_threshold <= saturation_full <= 1.")
        if self.churn_reference <= 0:
            raise ValueError("churn_reference must be positive.")


Detector = Callable[
    [FlowMetricReport, ArchitectureGraph, Mapping[str, ResourceUsage], BottleneckConfig, Mapping[str, float]],
    List[BottleneckRecord],
]


def ratio_severity(ratio: float) -> float:
    """Map a consumption/contribution ratio to [0, 1]: 0 at parity, 1 as ratio grows."""
    if math.isinf(ratio):
        return 1.0
    if ratio <= 1.0:
        return 0.0
    return 1.0 - 1.0 / ratio


def is_input_invariant(metric: FlowMetric, config: BottleneckConfig) -> bool:
    if metric.count < 2:
        return False
    fp_std = math.sqrt(metric.fingerprint_variance)
    fp_scale = max(1.0, math.sqrt(sum(v * v for v in metric.fingerprint_mean) / max(len(metric.fingerprint_mean), 1)))
    return metric.magnitude_cv <= config.invariance_cv and fp_std <= config.invariance_cv * fp_scale


def classify_nature(metric: Optional[FlowMetric], config: BottleneckConfig) -> BottleneckNature:
    """
    Artifact: input-invariant and carrying no informative variance (empty
    output or a flat fingerprint). Anything else is necessary.
    """
    if metric is None or not is_input_invariant(metric, config):
        return BottleneckNature.NECESSARY
    empty = abs(metric.magnitude_mean) <= config.near_zero or metric.fingerprint_spread <= config.near_zero
    return BottleneckNature.ARTIFACT if empty else BottleneckNature.NECESSARY


def _contribution_shares(
    report: FlowMetricReport, names: Sequence[str], criticality: Mapping[str, float]
) -> Dict[str, float]:
    magnitudes = {
        name: abs(report.metrics[name].magnitude_mean) if name in report.metrics else 0.0
        for name in names
    }
    total = sum(magnitudes.values())
    shares = {name: (value / total if total > 0 else 0.0) for name, value in magnitudes.items()}
    if criticality:
        crit_total = sum(criticality.get(name, 0.0) for name in names)
        if crit_total > 0:
            shares = {
                name: 0.5 * shares[name] + 0.5 * criticality.get(name, 0.0) / crit_total
                for name in names
            }
    return shares


def detect_compute(
    report: FlowMetricReport,
    graph: ArchitectureGraph,
    resources: Mapping[str, ResourceUsage],
    config: BottleneckConfig,
    criticality: Mapping[str, float],
) -> List[BottleneckRecord]:
    """Severity from (time share / contribution share)."""
    names = [name for name in graph.topological_order() if name in resources]
    total_time = sum(resources[name].execution_time_s for name in names)
    if total_time <= 0:
        return []

    shares = _contribution_shares(report, names, criticality)
    records: List[BottleneckRecord] = []
    for name in names:
        time_share = resources[name].execution_time_s / total_time
        contribution = shares[name]
        ratio = time_share / contribution if contribution > 0 else (math.inf if time_share > 0 else 0.0)
        severity = ratio_severity(ratio)
        if severity < config.min_severity or severity == 0.0:
            continue
        nature = classify_nature(report.get(name), config)
        records.append(
            BottleneckRecord(
                target=(name,),
                kind=BottleneckKind.COMPUTE,
                severity=severity,
                nature=nature,
                recommended_action="eliminate" if nature is BottleneckNature.ARTIFACT else "optimize-kernel",
                evidence={
                    "time_share": time_share,
                    "contribution_share": contribution,
                    "ratio": ratio,
                    "used_criticality": bool(criticality),
                },
            )
        )
    return records


def detect_memory(
    report: FlowMetricReport,
    graph: ArchitectureGraph,
    resources: Mapping[str, ResourceUsage],
    config: BottleneckConfig,
    criticality: Mapping[str, float],
) -> List[BottleneckRecord]:
    """
    Footprint severity from (peak share relative to a fair share / bandwidth
    utilisation); churn severity from the rate of small allocation events.
    """
    names = [name for name in graph.topological_order() if name in resources]
    total_peak = sum(resources[name].peak_bytes for name in names)
    records: List[BottleneckRecord] = []
    for name in names:
        usage = resources[name]
        footprint = 0.0
        ratio = 0.0
        if total_peak > 0:
            fair_ratio = usage.peak_bytes / total_peak * len(names)
            ratio = fair_ratio / usage.bandwidth_utilization
            footprint = ratio_severity(ratio)

        churn = 0.0
        if usage.alloc_events and usage.mean_alloc_bytes < config.small_alloc_bytes:
            churn = usage.alloc_events / (usage.alloc_events + config.churn_reference)

        severity = max(footprint, churn)
        if severity < config.min_severity or severity == 0.0:
            continue
        pattern = "churn" if churn > footprint else "footprint"
        nature = classify_nature(report.get(name), config)
        if nature is BottleneckNature.ARTIFACT:
            action = "eliminate"
        elif pattern == "churn":
            action = "pool-allocations"
        else:
            action = "relayout-or-rematerialize"
        records.append(
            BottleneckRecord(
                target=(name,),
                kind=BottleneckKind.MEMORY,
                severity=severity,
                nature=nature,
                recommended_action=action,
                evidence={
                    "pattern": pattern,
                    "footprint_severity": footprint,
                    "churn_severity": churn,
                    "peak_bytes": usage.peak_bytes,
                    "bandwidth_utilization": usage.bandwidth_utilization,
                    "ratio": ratio,
                    "alloc_events": usage.alloc_events,
                },
            )
        )
    return records


def detect_semantic(
    report: FlowMetricReport,
    graph: ArchitectureGraph,
    resources: Mapping[str, ResourceUsage],
    config: BottleneckConfig,
    criticality: Mapping[str, float],
) -> List[BottleneckRecord]:
    """
    Structural signals independent of timing: saturation (activations pinned
    at representational limits) and collapse (no variance across inputs).
    Collapse is always surfaced, whatever `min_severity` says.
    """
    records: List[BottleneckRecord] = []
    for name in graph.topological_order():
        metric = report.get(name)
        if metric is None:
            continue
        nature = classify_nature(metric, config)

        if is_input_invariant(metric, config):
            cv = metric.magnitude_cv
            severity = 1.0 - min(cv / config.invariance_cv, 1.0) if config.invariance_cv > 0 else 1.0
            records.append(
                BottleneckRecord(
                    target=(name,),
                    kind=BottleneckKind.SEMANTIC,
                    severity=max(severity, config.min_severity),
                    nature=nature,
                    recommended_action="eliminate" if nature is BottleneckNature.ARTIFACT else "preserve",
                    evidence={
                        "signal": "collapse",
                        "magnitude_cv": cv,
                        "fingerprint_variance": metric.fingerprint_variance,
                        "fingerprint_spread": metric.fingerprint_spread,
                        "samples": metric.count,
                    },
                )
            )
            continue

        saturation = metric.saturation_mean
        if saturation is not None and saturation >= config.saturation_threshold:
            severity = min(1.0, saturation / config.saturation_full)
            if severity < config.min_severity:
                continue
            records.append(
                BottleneckRecord(
                    target=(name,),
                    kind=BottleneckKind.SEMANTIC,
                    severity=severity,
                    nature=nature,
                    recommended_action="eliminate" if nature is BottleneckNature.ARTIFACT else "widen-or-rescale",
                    evidence={"signal": "saturation", "saturation_mean": saturation},
                )
            )
    return records


DETECTORS: Tuple[Tuple[str, Detector], ...] = (
    ("compute", detect_compute),
    ("memory", detect_memory),
    ("semantic", detect_semantic),
)


class BottleneckDetector:
    def __init__(self, config: Optional[BottleneckConfig] = None) -> None:
        self.config = config or BottleneckConfig()

    def detect(
        self,
        report: FlowMetricReport,
        graph: ArchitectureGraph,
        resources: Optional[Mapping[str, ResourceUsage]] = None,
        *,
        criticality: Optional[Mapping[str, float]] = None,
    ) -> List[BottleneckRecord]:
        """
        Run every detector. `criticality` maps component ids to partial
        composite scores and refines the compute contribution estimate.
        """
        resources = dict(resources or {})
        for name in list(resources):
            if name not in graph:
                logger.warning("Resource usage for unknown component `%s` ignored.", name)
                del resources[name]

        records: List[BottleneckRecord] = []
        for label, detector in DETECTORS:
            found = detector(report, graph, resources, self.config, criticality or {})
            logger.debug("%s detector produced %d records", label, len(found))
            records.extend(found)
        records.sort(key=lambda r: (-r.severity, r.kind.value, r.target))
        return records


def max_severity_by_component(records: Sequence[BottleneckRecord]) -> Dict[str, float]:
    result: Dict[str, float] = {}
    for record in records:
        for name in record.target:
            result[name] = max(result.get(name, 0.0), record.severity)
    return result
