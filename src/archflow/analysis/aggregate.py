"""
Streaming reduction of trace records into per-component flow metrics.

Every statistic kept here is a mergeable moment: counts and sums combine by
addition, means and variances by Chan's pairwise update of Welford's
accumulator. Partial accumulators built on different workers can therefore be
merged in any order and still finalise to the same FlowMetric.

Cross-component correlation measures how two outputs move together from one
sample to the next. Forward rows are held per sample id until `seal()` folds
them into per-pair co-moments over the samples both components share; rows
of one sample may arrive in different partials as long as they are merged
before sealing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from itertools import combinations
from types import MappingProxyType
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from archflow.graph.ir import ArchitectureGraph, ComponentKind
from archflow.runtime.storage import Observation, PassKind, TraceRecord
from archflow.utils import logger

SPARSITY_BINS = 10


@dataclass(frozen=True)
class AggregatorConfig:
    near_zero_threshold: float = 1e-6

    def __post_init__(self) -> None:
        if self.near_zero_threshold < 0:
            raise ValueError("near_zero_threshold must be non-negative.")


@dataclass
class RunningMoments:
    """Welford accumulator with a commutative merge."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf

    def push(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)

    def merge(self, other: "RunningMoments") -> "RunningMoments":
        if other.count == 0:
            return RunningMoments(self.count, self.mean, self.m2, self.minimum, self.maximum)
        if self.count == 0:
            return RunningMoments(other.count, other.mean, other.m2, other.minimum, other.maximum)
        count = self.count + other.count
        delta = other.mean - self.mean
        mean = (self.count * self.mean + other.count * other.mean) / count
        m2 = self.m2 + other.m2 + delta * delta * self.count * other.count / count
        return RunningMoments(
            count, mean, m2, min(self.minimum, other.minimum), max(self.maximum, other.maximum)
        )

    @property
    def variance(self) -> float:
        """Population variance over the observed values."""
        return self.m2 / self.count if self.count else 0.0


@dataclass(frozen=True)
class _SampleRow:
    """One component's forward output for one sample (repeats are averaged)."""

    count: int
    magnitude_sum: float
    fingerprint_sum: np.ndarray

    @classmethod
    def of(cls, obs: Observation) -> "_SampleRow":
        return cls(1, obs.magnitude, np.array(obs.fingerprint, dtype=float))

    def combine(self, other: "_SampleRow") -> "_SampleRow":
        if self.fingerprint_sum.shape != other.fingerprint_sum.shape:
            return self
        return _SampleRow(
            self.count + other.count,
            self.magnitude_sum + other.magnitude_sum,
            self.fingerprint_sum + other.fingerprint_sum,
        )


def _paired_vectors(a: _SampleRow, b: _SampleRow) -> Tuple[np.ndarray, np.ndarray]:
    """Fingerprints when both have one of equal length, magnitudes otherwise."""
    x = a.fingerprint_sum / a.count
    y = b.fingerprint_sum / b.count
    if x.size and x.size == y.size:
        return x, y
    return np.array([a.magnitude_sum / a.count]), np.array([b.magnitude_sum / b.count])


@dataclass
class _PairMoments:
    """
    Co-moments of two components' outputs over the samples they share.

    Means are per fingerprint position; `m2_*` and `co` sum the centred
    squares and cross-products over all positions, so the correlation is
    high only when both outputs deviate from their own mean shape in step.
    """

    count: int = 0
    mean_a: Optional[np.ndarray] = None
    mean_b: Optional[np.ndarray] = None
    m2_a: float = 0.0
    m2_b: float = 0.0
    co: float = 0.0

    def push(self, x: np.ndarray, y: np.ndarray) -> None:
        if self.mean_a is None or self.mean_b is None:
            self.mean_a = np.zeros(x.size)
            self.mean_b = np.zeros(y.size)
        self.count += 1
        dx = x - self.mean_a
        dy = y - self.mean_b
        self.mean_a = self.mean_a + dx / self.count
        self.mean_b = self.mean_b + dy / self.count
        self.m2_a += float(dx @ (x - self.mean_a))
        self.m2_b += float(dy @ (y - self.mean_b))
        self.co += float(dx @ (y - self.mean_b))

    def merge(self, other: "_PairMoments") -> "_PairMoments":
        if other.count == 0 or other.mean_a is None or other.mean_b is None:
            return self.copy()
        if self.count == 0 or self.mean_a is None or self.mean_b is None:
            return other.copy()
        count = self.count + other.count
        da = other.mean_a - self.mean_a
        db = other.mean_b - self.mean_b
        weight = self.count * other.count / count
        return _PairMoments(
            count=count,
            mean_a=self.mean_a + da * (other.count / count),
            mean_b=self.mean_b + db * (other.count / count),
            m2_a=self.m2_a + other.m2_a + float(da @ da) * weight,
            m2_b=self.m2_b + other.m2_b + float(db @ db) * weight,
            co=self.co + other.co + float(da @ db) * weight,
        )

    def copy(self) -> "_PairMoments":
        return _PairMoments(
            self.count,
            None if self.mean_a is None else self.mean_a.copy(),
            None if self.mean_b is None else self.mean_b.copy(),
            self.m2_a,
            self.m2_b,
            self.co,
        )

    @property
    def size(self) -> int:
        return 0 if self.mean_a is None else self.mean_a.size

    def correlation(self) -> float:
        """Across-sample Pearson correlation; 0 when either side does not vary."""
        if self.count < 2 or self.mean_a is None or self.mean_b is None:
            return 0.0
        # round-off floor, as for fingerprint variance
        floor_a = 1e-12 * self.count * self.size * max(float(np.mean(self.mean_a ** 2)), 1.0)
        floor_b = 1e-12 * self.count * self.size * max(float(np.mean(self.mean_b ** 2)), 1.0)
        if self.m2_a <= floor_a or self.m2_b <= floor_b:
            return 0.0
        return float(np.clip(self.co / math.sqrt(self.m2_a * self.m2_b), -1.0, 1.0))


PairKey = Tuple[str, str]
SampleRows = Dict[Hashable, Dict[str, _SampleRow]]


def _pair_key(a: str, b: str) -> PairKey:
    return (a, b) if a <= b else (b, a)


def _fold_rows(pairs: Dict[PairKey, _PairMoments], pending: SampleRows) -> None:
    for rows in pending.values():
        for a, b in combinations(sorted(rows), 2):
            x, y = _paired_vectors(rows[a], rows[b])
            moments = pairs.setdefault((a, b), _PairMoments())
            if moments.size and moments.size != x.size:
                logger.debug("Skipping sample for pair (%s, %s): digest length changed.", a, b)
                continue
            moments.push(x, y)


@dataclass
class _ComponentAccumulator:
    magnitude: RunningMoments = field(default_factory=RunningMoments)
    sparsity: RunningMoments = field(default_factory=RunningMoments)
    saturation: RunningMoments = field(default_factory=RunningMoments)
    gradient: RunningMoments = field(default_factory=RunningMoments)
    sparsity_hist: np.ndarray = field(default_factory=lambda: np.zeros(SPARSITY_BINS, dtype=np.int64))
    fp_count: int = 0
    fp_sum: Optional[np.ndarray] = None
    fp_outer: Optional[np.ndarray] = None
    fp_spread_sum: float = 0.0

    def push_forward(self, obs: Observation, near_zero: float) -> None:
        self.magnitude.push(obs.magnitude)

        fingerprint = obs.fingerprint
        if obs.sparsity is not None:
            sparsity = obs.sparsity
        elif fingerprint.size:
            sparsity = float(np.mean(np.abs(fingerprint) < near_zero))
        else:
            sparsity = 1.0 if abs(obs.magnitude) < near_zero else 0.0
        self.sparsity.push(sparsity)
        self.sparsity_hist[min(int(sparsity * SPARSITY_BINS), SPARSITY_BINS - 1)] += 1

        if obs.saturation is not None:
            self.saturation.push(obs.saturation)
        if obs.gradient is not None:
            self.gradient.push(obs.gradient)

        if fingerprint.size:
            if self.fp_sum is None:
                self.fp_sum = np.zeros(fingerprint.size)
                self.fp_outer = np.zeros((fingerprint.size, fingerprint.size))
            self.fp_count += 1
            self.fp_sum = self.fp_sum + fingerprint
            self.fp_outer = self.fp_outer + np.outer(fingerprint, fingerprint)
            self.fp_spread_sum += float(np.var(fingerprint))

    def push_backward(self, obs: Observation) -> None:
        self.gradient.push(obs.magnitude)

    def merge(self, other: "_ComponentAccumulator") -> "_ComponentAccumulator":
        def _add(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[np.ndarray]:
            if a is None:
                return None if b is None else b.copy()
            if b is None:
                return a.copy()
            return a + b

        return _ComponentAccumulator(
            magnitude=self.magnitude.merge(other.magnitude),
            sparsity=self.sparsity.merge(other.sparsity),
            saturation=self.saturation.merge(other.saturation),
            gradient=self.gradient.merge(other.gradient),
            sparsity_hist=self.sparsity_hist + other.sparsity_hist,
            fp_count=self.fp_count + other.fp_count,
            fp_sum=_add(self.fp_sum, other.fp_sum),
            fp_outer=_add(self.fp_outer, other.fp_outer),
            fp_spread_sum=self.fp_spread_sum + other.fp_spread_sum,
        )


@dataclass(frozen=True)
class FlowMetric:
    """Aggregate behaviour of one component over a trace set."""

    component_id: str
    kind: ComponentKind
    count: int
    magnitude_mean: float
    magnitude_var: float
    magnitude_min: float
    magnitude_max: float
    sparsity_mean: float
    sparsity_var: float
    sparsity_histogram: Tuple[int, ...]
    saturation_mean: Optional[float]
    gradient_count: int
    gradient_mean: float
    gradient_var: float
    fingerprint_mean: Tuple[float, ...]
    fingerprint_variance: float
    fingerprint_spread: float
    correlations: Mapping[str, float] = field(default_factory=dict)

    @property
    def magnitude_std(self) -> float:
        return math.sqrt(max(self.magnitude_var, 0.0))

    @property
    def magnitude_cv(self) -> float:
        """Coefficient of variation of output magnitude across samples."""
        if abs(self.magnitude_mean) < 1e-12:
            return 0.0
        return self.magnitude_std / abs(self.magnitude_mean)

    @property
    def gradient_cv(self) -> float:
        if abs(self.gradient_mean) < 1e-12:
            return 0.0
        return math.sqrt(max(self.gradient_var, 0.0)) / abs(self.gradient_mean)

    @property
    def input_sensitivity(self) -> Tuple[float, float]:
        """How much the output moves across inputs: (magnitude CV, fingerprint std)."""
        return self.magnitude_cv, math.sqrt(max(self.fingerprint_variance, 0.0))


@dataclass(frozen=True)
class BalanceSummary:
    """Distribution of output magnitude across component kinds."""

    magnitude_share: Mapping[ComponentKind, float]
    component_count: Mapping[ComponentKind, int]
    balance_index: float


@dataclass(frozen=True)
class FlowMetricReport:
    metrics: Mapping[str, FlowMetric]
    balance: BalanceSummary
    component_index: Tuple[str, ...]
    correlation_matrix: np.ndarray
    gaps: Tuple[str, ...] = ()

    def correlation(self, a: str, b: str) -> float:
        i = self.component_index.index(a)
        j = self.component_index.index(b)
        return float(self.correlation_matrix[i, j])

    def get(self, component_id: str) -> Optional[FlowMetric]:
        return self.metrics.get(component_id)


class FlowAccumulator:
    """
    Mergeable partial aggregate over any subset of trace records.

    Forward rows wait in a per-sample buffer until `seal()`; call it once
    every forward record of the buffered samples has been added (and merged
    in from other partials) to release the buffer. `finalize` folds whatever
    is still buffered without modifying the accumulator.
    """

    def __init__(self, config: Optional[AggregatorConfig] = None) -> None:
        self.config = config or AggregatorConfig()
        self._components: Dict[str, _ComponentAccumulator] = {}
        self._pairs: Dict[PairKey, _PairMoments] = {}
        self._pending: SampleRows = {}

    def add(self, record: TraceRecord) -> None:
        acc = self._components.setdefault(record.component_id, _ComponentAccumulator())
        if record.pass_kind == PassKind.FORWARD:
            acc.push_forward(record.observation, self.config.near_zero_threshold)
            rows = self._pending.setdefault(record.sample_id, {})
            row = _SampleRow.of(record.observation)
            current = rows.get(record.component_id)
            rows[record.component_id] = row if current is None else current.combine(row)
        else:
            acc.push_backward(record.observation)

    def extend(self, records: Iterable[TraceRecord]) -> "FlowAccumulator":
        for record in records:
            self.add(record)
        return self

    def seal(self) -> "FlowAccumulator":
        """Fold buffered samples into the pairwise co-moments."""
        _fold_rows(self._pairs, self._pending)
        self._pending = {}
        return self

    @property
    def pending_samples(self) -> int:
        return len(self._pending)

    def merge(self, other: "FlowAccumulator") -> "FlowAccumulator":
        merged = FlowAccumulator(self.config)
        for name in set(self._components) | set(other._components):
            mine = self._components.get(name)
            theirs = other._components.get(name)
            if mine is None:
                merged._components[name] = _ComponentAccumulator().merge(theirs)  # type: ignore[arg-type]
            elif theirs is None:
                merged._components[name] = mine.merge(_ComponentAccumulator())
            else:
                merged._components[name] = mine.merge(theirs)

        for key in set(self._pairs) | set(other._pairs):
            merged._pairs[key] = self._pairs.get(key, _PairMoments()).merge(
                other._pairs.get(key, _PairMoments())
            )

        for sample_id in set(self._pending) | set(other._pending):
            rows = dict(self._pending.get(sample_id, {}))
            for name, row in other._pending.get(sample_id, {}).items():
                rows[name] = rows[name].combine(row) if name in rows else row
            merged._pending[sample_id] = rows
        return merged

    def component_ids(self) -> List[str]:
        return sorted(self._components)

    def finalize(self, graph: ArchitectureGraph) -> FlowMetricReport:
        gaps = tuple(sorted(name for name in self._components if name not in graph))
        for name in gaps:
            logger.warning("Trace references unknown component `%s`; recorded as gap.", name)

        pairs = {key: moments.copy() for key, moments in self._pairs.items()}
        _fold_rows(pairs, self._pending)

        index = tuple(name for name in graph.topological_order() if name in self._components)
        matrix = _correlation_matrix(index, pairs)

        metrics: Dict[str, FlowMetric] = {}
        for i, name in enumerate(index):
            acc = self._components[name]
            correlations = {
                other: float(matrix[i, j]) for j, other in enumerate(index) if j != i
            }
            metrics[name] = self._build_metric(
                graph, name, acc, self._fingerprint_mean(acc), correlations
            )

        return FlowMetricReport(
            metrics=MappingProxyType(metrics),
            balance=_balance(graph, metrics),
            component_index=index,
            correlation_matrix=matrix,
            gaps=gaps,
        )

    @staticmethod
    def _fingerprint_mean(acc: _ComponentAccumulator) -> np.ndarray:
        if acc.fp_count == 0 or acc.fp_sum is None:
            return np.zeros(0)
        return acc.fp_sum / acc.fp_count

    @staticmethod
    def _build_metric(
        graph: ArchitectureGraph,
        name: str,
        acc: _ComponentAccumulator,
        fp_mean: np.ndarray,
        correlations: Mapping[str, float],
    ) -> FlowMetric:
        if acc.fp_count and acc.fp_outer is not None:
            covariance = acc.fp_outer / acc.fp_count - np.outer(fp_mean, fp_mean)
            fp_variance = float(np.trace(covariance)) / fp_mean.size
            # round-off floor: identical fingerprints must give exactly zero
            if fp_variance <= 1e-12 * max(float(np.mean(fp_mean * fp_mean)), 1.0):
                fp_variance = 0.0
            fp_spread = acc.fp_spread_sum / acc.fp_count
        else:
            fp_variance = 0.0
            fp_spread = 0.0

        magnitude = acc.magnitude
        return FlowMetric(
            component_id=name,
            kind=graph.component(name).kind,
            count=magnitude.count,
            magnitude_mean=magnitude.mean,
            magnitude_var=magnitude.variance,
            magnitude_min=magnitude.minimum if magnitude.count else 0.0,
            magnitude_max=magnitude.maximum if magnitude.count else 0.0,
            sparsity_mean=acc.sparsity.mean,
            sparsity_var=acc.sparsity.variance,
            sparsity_histogram=tuple(int(c) for c in acc.sparsity_hist),
            saturation_mean=acc.saturation.mean if acc.saturation.count else None,
            gradient_count=acc.gradient.count,
            gradient_mean=acc.gradient.mean,
            gradient_var=acc.gradient.variance,
            fingerprint_mean=tuple(float(v) for v in fp_mean),
            fingerprint_variance=fp_variance,
            fingerprint_spread=fp_spread,
            correlations=MappingProxyType(dict(correlations)),
        )


def _correlation_matrix(index: Tuple[str, ...], pairs: Mapping[PairKey, _PairMoments]) -> np.ndarray:
    """Across-sample correlation for every pair in `index`; pairs never seen together are 0."""
    n = len(index)
    matrix = np.eye(n)
    for i in range(n):
        for j in range(i + 1, n):
            moments = pairs.get(_pair_key(index[i], index[j]))
            value = moments.correlation() if moments is not None else 0.0
            matrix[i, j] = matrix[j, i] = value
    matrix.flags.writeable = False
    return matrix


def _balance(graph: ArchitectureGraph, metrics: Mapping[str, FlowMetric]) -> BalanceSummary:
    totals: Dict[ComponentKind, float] = {}
    counts: Dict[ComponentKind, int] = {}
    for metric in metrics.values():
        totals[metric.kind] = totals.get(metric.kind, 0.0) + abs(metric.magnitude_mean)
        counts[metric.kind] = counts.get(metric.kind, 0) + 1

    grand = sum(totals.values())
    shares = {kind: (value / grand if grand > 0 else 0.0) for kind, value in totals.items()}

    # Normalised Shannon entropy: 1.0 when magnitude is spread evenly over kinds.
    if len(shares) > 1 and grand > 0:
        entropy = -sum(p * math.log(p) for p in shares.values() if p > 0)
        balance_index = entropy / math.log(len(shares))
    else:
        balance_index = 1.0 if shares else 0.0

    return BalanceSummary(
        magnitude_share=MappingProxyType(shares),
        component_count=MappingProxyType(counts),
        balance_index=balance_index,
    )


def aggregate_traces(
    records: Iterable[TraceRecord],
    graph: ArchitectureGraph,
    config: Optional[AggregatorConfig] = None,
) -> FlowMetricReport:
    """Single streaming pass over `records` followed by finalisation."""
    return FlowAccumulator(config).extend(records).finalize(graph)


def merge_accumulators(partials: Iterable[FlowAccumulator]) -> FlowAccumulator:
    merged: Optional[FlowAccumulator] = None
    for partial in partials:
        merged = partial if merged is None else merged.merge(partial)
    return merged if merged is not None else FlowAccumulator()
