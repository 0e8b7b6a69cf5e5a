from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple, Union

import numpy as np

from archflow.analysis.aggregate import FlowMetric, FlowMetricReport
from archflow.analysis.bottlenecks import BottleneckRecord
from archflow.analysis.criticality import CriticalityScore
from archflow.analysis.integration import IntegrationResult
from archflow.analysis.redundancy import RedundancyRecord
from archflow.runtime.oracle import Label
from archflow.strategy.insight_table import CompressedInsightTable, candidate_to_dict
from archflow.strategy.synthesis import OptimizationCandidate


@dataclass(frozen=True)
class AnalysisReport:
    """Everything one pipeline run produced, kept for audit and lookup."""

    metrics: FlowMetricReport
    bottlenecks: Tuple[BottleneckRecord, ...]
    redundancy: Tuple[RedundancyRecord, ...]
    criticality: Tuple[CriticalityScore, ...]
    integration: IntegrationResult
    candidates: Mapping[str, Tuple[OptimizationCandidate, ...]]
    table: CompressedInsightTable
    labels: Mapping[Tuple[str, ...], Label] = field(default_factory=dict)
    gaps: Tuple[str, ...] = ()

    @property
    def unassessed(self) -> Tuple[str, ...]:
        return tuple(s.component_id for s in self.criticality if s.unassessed)

    def score(self, component_id: str) -> CriticalityScore:
        for score in self.criticality:
            if score.component_id == component_id:
                return score
        raise KeyError(component_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": {name: _metric_to_dict(m) for name, m in self.metrics.metrics.items()},
            "balance": {
                "magnitude_share": {k.value: v for k, v in self.metrics.balance.magnitude_share.items()},
                "component_count": {k.value: v for k, v in self.metrics.balance.component_count.items()},
                "balance_index": self.metrics.balance.balance_index,
            },
            "correlation": {
                "components": list(self.metrics.component_index),
                "matrix": np.asarray(self.metrics.correlation_matrix).tolist(),
            },
            "bottlenecks": [_record_to_dict(r) for r in self.bottlenecks],
            "redundancy": [_record_to_dict(r) for r in self.redundancy],
            "criticality": [_record_to_dict(s) for s in self.criticality],
            "interaction_edges": [_record_to_dict(e) for e in self.integration.edges],
            "candidates": {
                tag: [candidate_to_dict(c) for c in candidates]
                for tag, candidates in self.candidates.items()
            },
            "table": self.table.to_dict(),
            "labels": [
                {"record": list(key), "text": label.text, "confidence": label.confidence}
                for key, label in self.labels.items()
            ],
            "gaps": list(self.gaps),
        }


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


def _record_to_dict(record: Any) -> Dict[str, Any]:
    return {name: _plain(getattr(record, name)) for name in record.__dataclass_fields__}


def _metric_to_dict(metric: FlowMetric) -> Dict[str, Any]:
    payload = _record_to_dict(metric)
    payload.pop("correlations", None)
    payload["magnitude_cv"] = metric.magnitude_cv
    return payload


def save_report(report: AnalysisReport, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    return path
