"""
Stage-ordered analysis pipeline.

Data moves one way: traces -> flow metrics -> {bottlenecks, redundancy,
criticality} -> integration -> strategy. The three middle stages only read
the frozen metric report and run side by side on a small thread pool; the
integration stage starts once all three are done.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from archflow.analysis.aggregate import (
    AggregatorConfig,
    FlowAccumulator,
    FlowMetricReport,
    merge_accumulators,
)
from archflow.analysis.bottlenecks import BottleneckConfig, BottleneckDetector
from archflow.analysis.criticality import (
    AblationConfig,
    CriticalityAssessor,
    CriticalityConfig,
    composite_by_component,
)
from archflow.analysis.integration import IntegrationAnalyzer, IntegrationConfig
from archflow.analysis.redundancy import RedundancyAnalyzer, RedundancyConfig
from archflow.analysis.report import AnalysisReport
from archflow.graph.ir import ArchitectureGraph
from archflow.runtime.oracle import SemanticOracle, attach_labels
from archflow.runtime.storage import PassKind, TraceRecord, TraceSet, TraceStore
from archflow.runtime.substrate import ExecutionSubstrate, ResourceUsage
from archflow.strategy.insight_table import compile_table
from archflow.strategy.synthesis import (
    GENERIC_PROFILE,
    HardwareProfile,
    OptimizationCandidate,
    StrategySynthesizer,
    SynthesisConfig,
)
from archflow.utils import logger


@dataclass(frozen=True)
class PipelineConfig:
    """
    Attributes:
        aggregation_partitions: trace chunks reduced in parallel and merged.
        stage_workers: threads running the bottleneck/redundancy/criticality
            stages side by side.
    """

    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    bottleneck: BottleneckConfig = field(default_factory=BottleneckConfig)
    redundancy: RedundancyConfig = field(default_factory=RedundancyConfig)
    criticality: CriticalityConfig = field(default_factory=CriticalityConfig)
    ablation: AblationConfig = field(default_factory=AblationConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    aggregation_partitions: int = 1
    stage_workers: int = 2

    def __post_init__(self) -> None:
        if self.aggregation_partitions <= 0:
            raise ValueError("aggregation_partitions must be positive.")
        if self.stage_workers <= 0:
            raise ValueError("stage_workers must be positive.")


TraceInput = Union[TraceStore, Iterable[TraceRecord]]


class FlowAnalysisPipeline:
    def __init__(self, config: Optional[PipelineConfig] = None) -> None:
        self.config = config or PipelineConfig()
        self.detector = BottleneckDetector(self.config.bottleneck)
        self.redundancy = RedundancyAnalyzer(self.config.redundancy)
        self.assessor = CriticalityAssessor(self.config.criticality, self.config.ablation)
        self.integration = IntegrationAnalyzer(self.config.integration)
        self.synthesizer = StrategySynthesizer(self.config.synthesis)

    @staticmethod
    def capture(
        graph: ArchitectureGraph,
        substrate: ExecutionSubstrate,
        samples: Iterable[Tuple[Hashable, object]],
        *,
        backward: bool = True,
    ) -> Tuple[TraceStore, List[str]]:
        """
        Run the substrate over ``(sample_id, inputs)`` pairs and store the
        observations. Returns the store and the unknown component ids seen.
        """
        store = TraceStore(graph)
        gaps: List[str] = []
        for sample_id, inputs in samples:
            gaps.extend(store.record_many(PassKind.FORWARD, sample_id, dict(substrate.run_forward(inputs))))
            if backward:
                gaps.extend(store.record_many(PassKind.BACKWARD, sample_id, dict(substrate.run_backward(inputs))))
        for name in sorted(set(gaps)):
            logger.warning("Substrate reported unknown component `%s`; recorded as gap.", name)
        return store, sorted(set(gaps))

    def aggregate(self, graph: ArchitectureGraph, traces: TraceInput) -> FlowMetricReport:
        """
        Reduce the traces sample-chunk by sample-chunk. Each chunk holds every
        record of its samples, so its accumulator can be sealed before merging.
        """
        records = traces.trace_set() if isinstance(traces, TraceStore) else TraceSet(traces)
        by_sample: Dict[Hashable, List[TraceRecord]] = {}
        for record in records:
            by_sample.setdefault(record.sample_id, []).append(record)
        samples = list(by_sample.values())

        parts = min(self.config.aggregation_partitions, max(len(samples), 1))
        size = max(-(-len(samples) // parts), 1)
        chunks = [
            [record for sample in samples[i : i + size] for record in sample]
            for i in range(0, len(samples), size)
        ]

        def reduce(chunk: List[TraceRecord]) -> FlowAccumulator:
            return FlowAccumulator(self.config.aggregator).extend(chunk).seal()

        if parts == 1:
            partials = [reduce(chunk) for chunk in chunks]
        else:
            with ThreadPoolExecutor(max_workers=parts, thread_name_prefix="archflow-aggregate") as pool:
                partials = list(pool.map(reduce, chunks))
        return merge_accumulators(partials).finalize(graph)

    def run(
        self,
        graph: ArchitectureGraph,
        traces: TraceInput,
        substrate: Optional[ExecutionSubstrate] = None,
        *,
        resources: Optional[Mapping[str, ResourceUsage]] = None,
        profiles: Sequence[HardwareProfile] = (GENERIC_PROFILE,),
        oracle: Optional[SemanticOracle] = None,
    ) -> AnalysisReport:
        metrics = self.aggregate(graph, traces)
        logger.info(
            "Aggregated %d components (%d gaps)", len(metrics.metrics), len(metrics.gaps)
        )

        partial = self.assessor.score_partial(metrics, graph)
        partial_composites = composite_by_component(list(partial.values()))

        with ThreadPoolExecutor(
            max_workers=self.config.stage_workers, thread_name_prefix="archflow-stage"
        ) as pool:
            bottleneck_future = pool.submit(
                self.detector.detect, metrics, graph, resources, criticality=partial_composites
            )
            redundancy_future = pool.submit(self.redundancy.analyze, metrics, graph)

            if substrate is None:
                criticality = self.assessor.finalize(graph, partial, {})
            else:
                # The ablation pre-filter reads bottleneck severities.
                plan = self.assessor.select_for_ablation(partial, bottleneck_future.result())
                outcomes = self.assessor.run_ablations(graph, substrate, plan)
                criticality = self.assessor.finalize(graph, partial, outcomes)

            bottlenecks = bottleneck_future.result()
            redundancy = redundancy_future.result()
        logger.info(
            "Stage barrier: %d bottlenecks, %d redundancy records, %d scores",
            len(bottlenecks),
            len(redundancy),
            len(criticality),
        )

        integration = self.integration.analyze(
            metrics,
            graph,
            bottlenecks,
            redundancy,
            criticality,
            substrate,
            higher_is_better=self.config.ablation.higher_is_better,
        )

        ranked: Dict[str, Tuple[OptimizationCandidate, ...]] = {}
        for profile in profiles:
            ranked[profile.tag] = tuple(
                self.synthesizer.synthesize(
                    graph,
                    metrics,
                    integration.bottlenecks,
                    integration.redundancy,
                    criticality,
                    resources=resources,
                    profile=profile,
                )
            )
        table = compile_table(ranked)
        logger.info("Compiled insight table with %d keys", len(table))

        labels = attach_labels(list(integration.bottlenecks) + list(integration.redundancy), oracle)

        return AnalysisReport(
            metrics=metrics,
            bottlenecks=integration.bottlenecks,
            redundancy=integration.redundancy,
            criticality=tuple(criticality),
            integration=integration,
            candidates=ranked,
            table=table,
            labels=labels,
            gaps=metrics.gaps,
        )
