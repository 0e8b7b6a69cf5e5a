"""
Analysers over aggregated flow metrics.

Key responsibilities:
- Reduce trace records into mergeable per-component flow metrics.
- Detect compute, memory and semantic bottlenecks.
- Classify redundancy as functional, semantic or protective.
- Score criticality from gradients, ablation and downstream pathways.
- Find bottlenecks and redundancy that only exist between components.

`AnalysisReport` (see `report.py`) depends on the strategy layer and is
exported from the top-level package.
"""

from .aggregate import (
    AggregatorConfig,
    FlowAccumulator,
    FlowMetric,
    FlowMetricReport,
    aggregate_traces,
    merge_accumulators,
)
from .bottlenecks import BottleneckConfig, BottleneckDetector, BottleneckKind, BottleneckNature, BottleneckRecord
from .redundancy import RedundancyAnalyzer, RedundancyClass, RedundancyConfig, RedundancyRecord
from .criticality import (
    AblationConfig,
    AblationStatus,
    CriticalityAssessor,
    CriticalityConfig,
    CriticalityScore,
    ScoreState,
)
from .integration import IntegrationAnalyzer, IntegrationConfig, IntegrationResult, InteractionEdge

__all__ = [
    "AggregatorConfig",
    "FlowAccumulator",
    "FlowMetric",
    "FlowMetricReport",
    "aggregate_traces",
    "merge_accumulators",
    "BottleneckConfig",
    "BottleneckDetector",
    "BottleneckKind",
    "BottleneckNature",
    "BottleneckRecord",
    "RedundancyAnalyzer",
    "RedundancyClass",
    "RedundancyConfig",
    "RedundancyRecord",
    "AblationConfig",
    "AblationStatus",
    "CriticalityAssessor",
    "CriticalityConfig",
    "CriticalityScore",
    "ScoreState",
    "IntegrationAnalyzer",
    "IntegrationConfig",
    "IntegrationResult",
    "InteractionEdge",
]
