from __future__ import annotations

import math

import numpy as np
import pytest

from archflow.analysis.aggregate import (
    FlowAccumulator,
    RunningMoments,
    aggregate_traces,
    merge_accumulators,
)
from archflow.graph.builders import from_layer_specs
from archflow.graph.ir import ComponentKind
from archflow.runtime.storage import Observation, PassKind, TraceRecord, TraceSet


def _graph():
    return from_layer_specs(
        {
            "embed": {"kind": "embedding"},
            "attn": {"kind": "attention", "inputs": ["embed"]},
            "mlp": {"kind": "feed_forward", "inputs": ["attn"]},
        }
    )


def _traces(samples: int = 24, seed: int = 7) -> TraceSet:
    rng = np.random.default_rng(seed)
    records = []
    for sample in range(samples):
        for name in ("embed", "attn", "mlp"):
            fingerprint = rng.normal(size=4)
            records.append(
                TraceRecord(
                    name,
                    PassKind.FORWARD,
                    sample,
                    Observation(
                        magnitude=float(rng.uniform(0.5, 2.0)),
                        fingerprint=fingerprint,
                        sparsity=float(rng.uniform()),
                        saturation=float(rng.uniform(0.0, 0.1)),
                    ),
                )
            )
            records.append(
                TraceRecord(name, PassKind.BACKWARD, sample, Observation(float(rng.uniform(0.1, 1.0))))
            )
    return TraceSet(records)


def _assert_same(left, right) -> None:
    assert left.component_index == right.component_index
    assert np.allclose(left.correlation_matrix, right.correlation_matrix)
    for name, metric in left.metrics.items():
        other = right.metrics[name]
        assert metric.count == other.count
        assert metric.sparsity_histogram == other.sparsity_histogram
        assert metric.gradient_count == other.gradient_count
        for attr in (
            "magnitude_mean",
            "magnitude_var",
            "magnitude_min",
            "magnitude_max",
            "sparsity_mean",
            "sparsity_var",
            "saturation_mean",
            "gradient_mean",
            "gradient_var",
            "fingerprint_variance",
            "fingerprint_spread",
        ):
            assert getattr(metric, attr) == pytest.approx(getattr(other, attr), rel=1e-9, abs=1e-12)
        assert np.allclose(metric.fingerprint_mean, other.fingerprint_mean)


@pytest.mark.parametrize(
    "predicate",
    [
        lambda r: r.sample_id % 2 == 0,
        lambda r: r.sample_id < 5,
        lambda r: r.component_id == "attn",
        lambda r: r.pass_kind is PassKind.BACKWARD,
        lambda r: False,
    ],
)
def test_partitioned_aggregation_matches_whole(predicate) -> None:
    graph = _graph()
    traces = _traces()
    left, right = traces.partition(predicate)

    whole = aggregate_traces(traces, graph)
    merged = FlowAccumulator().extend(left).merge(FlowAccumulator().extend(right)).finalize(graph)
    swapped = FlowAccumulator().extend(right).merge(FlowAccumulator().extend(left)).finalize(graph)

    _assert_same(whole, merged)
    _assert_same(whole, swapped)


def test_merge_accumulators_over_many_chunks() -> None:
    graph = _graph()
    traces = _traces()
    chunks = [traces[i : i + 10] for i in range(0, len(traces), 10)]

    merged = merge_accumulators(FlowAccumulator().extend(chunk) for chunk in reversed(chunks))

    _assert_same(aggregate_traces(traces, graph), merged.finalize(graph))


def test_running_moments_match_numpy() -> None:
    values = [1.5, -2.0, 3.25, 0.0, 7.5, 2.0]
    moments = RunningMoments()
    for value in values:
        moments.push(value)

    assert moments.count == len(values)
    assert moments.mean == pytest.approx(np.mean(values))
    assert moments.variance == pytest.approx(np.var(values))
    assert (moments.minimum, moments.maximum) == (-2.0, 7.5)


def test_metric_fields_and_correlation() -> None:
    graph = _graph()
    base = np.array([1.0, 2.0, 3.0, 4.0])
    swing = np.array([1.0, -1.0, 1.0, -1.0])
    records = []
    for sample in range(3):
        records.append(TraceRecord("embed", PassKind.FORWARD, sample, Observation(2.0, base + sample * swing)))
        records.append(TraceRecord("attn", PassKind.FORWARD, sample, Observation(1.0, 2 * base[::-1] + 2 * sample * swing)))
        records.append(TraceRecord("mlp", PassKind.FORWARD, sample, Observation(1.0, base - sample * swing)))

    report = aggregate_traces(records, graph)

    embed = report.metrics["embed"]
    assert embed.count == 3
    assert embed.kind is ComponentKind.EMBEDDING
    assert embed.magnitude_cv == 0.0
    assert embed.fingerprint_mean == pytest.approx((2.0, 1.0, 4.0, 3.0))
    assert report.correlation("embed", "attn") == pytest.approx(1.0)
    assert report.correlation("attn", "mlp") == pytest.approx(-1.0)
    assert report.metrics["embed"].correlations["mlp"] == pytest.approx(-1.0)
    assert report.metrics["embed"].saturation_mean is None
    assert report.balance.component_count[ComponentKind.ATTENTION] == 1
    assert 0.0 < report.balance.balance_index <= 1.0


def test_constant_output_has_no_correlation() -> None:
    graph = _graph()
    base = np.array([1.0, 2.0, 3.0, 4.0])
    records = []
    for sample in range(4):
        records.append(TraceRecord("embed", PassKind.FORWARD, sample, Observation(1.0, base + sample)))
        records.append(TraceRecord("attn", PassKind.FORWARD, sample, Observation(1.0, 2 * base)))

    report = aggregate_traces(records, graph)

    assert report.metrics["attn"].fingerprint_variance == pytest.approx(0.0, abs=1e-12)
    assert report.correlation("embed", "attn") == 0.0


def test_independent_outputs_with_shared_shape_are_uncorrelated() -> None:
    graph = _graph()
    rng = np.random.default_rng(11)
    shape = np.array([1.0, 5.0, 2.0, 8.0, 3.0, 6.0])
    records = []
    for sample in range(400):
        records.append(TraceRecord("attn", PassKind.FORWARD, sample, Observation(1.0, shape + rng.normal(0.0, 3.0, 6))))
        records.append(TraceRecord("mlp", PassKind.FORWARD, sample, Observation(1.0, shape + rng.normal(0.0, 3.0, 6))))

    report = aggregate_traces(records, graph)

    assert np.allclose(report.metrics["attn"].fingerprint_mean, report.metrics["mlp"].fingerprint_mean, atol=1.0)
    assert abs(report.correlation("attn", "mlp")) < 0.2


def test_outputs_moving_together_correlate_despite_different_shapes() -> None:
    graph = _graph()
    rng = np.random.default_rng(12)
    records = []
    for sample in range(200):
        noise = rng.normal(0.0, 1.0, 6)
        records.append(TraceRecord("attn", PassKind.FORWARD, sample, Observation(1.0, np.arange(6.0) + noise)))
        records.append(TraceRecord("mlp", PassKind.FORWARD, sample, Observation(1.0, -np.arange(6.0) ** 2 + noise)))

    report = aggregate_traces(records, graph)

    assert report.correlation("attn", "mlp") == pytest.approx(1.0)


def test_correlation_only_uses_samples_both_components_share() -> None:
    graph = _graph()
    swing = np.array([1.0, -1.0])
    records = []
    for sample in range(6):
        records.append(TraceRecord("attn", PassKind.FORWARD, sample, Observation(1.0, sample * swing)))
        if sample < 4:
            records.append(TraceRecord("mlp", PassKind.FORWARD, sample, Observation(1.0, sample * swing)))
        else:
            records.append(TraceRecord("embed", PassKind.FORWARD, sample, Observation(1.0, -sample * swing)))

    report = aggregate_traces(records, graph)

    assert report.correlation("attn", "mlp") == pytest.approx(1.0)
    assert report.correlation("attn", "embed") == pytest.approx(-1.0)
    assert report.correlation("embed", "mlp") == 0.0


def test_sealed_sample_chunks_merge_like_one_pass() -> None:
    graph = _graph()
    traces = _traces()
    early = [r for r in traces if r.sample_id < 10]
    late = [r for r in traces if r.sample_id >= 10]

    first = FlowAccumulator().extend(early).seal()
    second = FlowAccumulator().extend(late).seal()

    assert first.pending_samples == 0
    _assert_same(aggregate_traces(traces, graph), second.merge(first).finalize(graph))


def test_unknown_components_become_gaps() -> None:
    graph = _graph()
    records = [
        TraceRecord("embed", PassKind.FORWARD, 0, Observation(1.0, [1.0, 0.0])),
        TraceRecord("ghost", PassKind.FORWARD, 0, Observation(1.0, [1.0, 0.0])),
    ]

    report = aggregate_traces(records, graph)

    assert report.gaps == ("ghost",)
    assert "ghost" not in report.metrics
    assert math.isclose(report.metrics["embed"].magnitude_mean, 1.0)
