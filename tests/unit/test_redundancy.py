from __future__ import annotations

import numpy as np
import pytest

from archflow.analysis.aggregate import aggregate_traces
from archflow.analysis.redundancy import (
    RedundancyAnalyzer,
    RedundancyClass,
    RedundancyConfig,
    RedundancyRecord,
    positional_divergence,
)
from archflow.graph.builders import from_layer_specs
from archflow.runtime.storage import Observation, PassKind, TraceRecord

BASE = np.arange(1.0, 7.0)
ALT = np.array([1.0, -1.0, 1.0, -1.0, 1.0, -1.0])
BLOCK = np.array([1.0, 1.0, -1.0, -1.0, 1.0, 1.0])
BUMP = np.array([0.0, 0.0, 1.0, 1.0, 0.0, 0.0])


def u(s: int) -> float:
    return float(s % 3 - 1)


def w(s: int) -> float:
    return float(2 * (s % 2) - 1)


def _chain(names):
    return from_layer_specs(
        {name: {"kind": "feed_forward", "inputs": names[i - 1 : i] if i else []} for i, name in enumerate(names)}
    )


def _siblings():
    return from_layer_specs(
        {
            "src": {"kind": "embedding"},
            "X": {"kind": "feed_forward", "inputs": ["src"]},
            "Y": {"kind": "feed_forward", "inputs": ["src"]},
            "sink": {"kind": "skip_path", "inputs": ["X", "Y"]},
        }
    )


def _report(graph, rows, magnitudes, samples: int = 6):
    records = []
    for sample in range(samples):
        for name, row in rows.items():
            records.append(
                TraceRecord(name, PassKind.FORWARD, sample, Observation(magnitudes[name](sample), row(sample)))
            )
    return aggregate_traces(records, graph)


def test_correlated_neighbours_with_same_profile_are_functional() -> None:
    graph = _chain(["A", "B", "C"])
    shared = lambda s: 1.0 + 0.3 * (s % 3)
    report = _report(
        graph,
        {
            "A": lambda s: BASE + u(s) * ALT,
            "B": lambda s: BASE + 0.5 * ALT + u(s) * ALT,
            "C": lambda s: BLOCK + w(s) * BUMP,
        },
        {"A": shared, "B": shared, "C": shared},
    )

    assert report.correlation("A", "B") >= 0.98

    records = RedundancyAnalyzer().analyze(report, graph)

    assert len(records) == 1
    assert records[0].group == ("A", "B")
    assert records[0].classification is RedundancyClass.FUNCTIONAL
    assert records[0].recommended_action == "merge-or-eliminate"
    assert records[0].divergence == pytest.approx(0.0)


def test_correlated_but_distant_and_differently_sensitive_is_protective() -> None:
    graph = _chain(["A", "B", "C", "D", "E"])
    report = _report(
        graph,
        {
            "A": lambda s: BASE + u(s) * ALT,
            "B": lambda s: ALT + w(s) * BUMP,
            "C": lambda s: BLOCK + u(s) * BUMP,
            "D": lambda s: BUMP,
            "E": lambda s: 2.0 * BASE + 2.0 * u(s) * ALT,
        },
        {
            "A": lambda s: 1.0 + 0.01 * (s % 2),
            "B": lambda s: 1.0 + 0.2 * (s % 2),
            "C": lambda s: 1.0 + 0.2 * (s % 2),
            "D": lambda s: 1.0 + 0.2 * (s % 2),
            "E": lambda s: 1.0 + 1.0 * (s % 2),
        },
    )

    records = RedundancyAnalyzer().analyze(report, graph)

    (record,) = [r for r in records if r.group == ("A", "E")]
    assert record.classification is RedundancyClass.PROTECTIVE
    assert record.recommended_action == "preserve"
    assert record.divergence > RedundancyConfig().divergence_threshold
    assert record.evidence["positional_divergence"] == pytest.approx(1.0)


def test_overlapping_producers_of_shared_consumer_are_semantic() -> None:
    graph = from_layer_specs(
        {
            "in": {"kind": "embedding"},
            "P": {"kind": "attention", "inputs": ["in"]},
            "Q": {"kind": "feed_forward", "inputs": ["in"]},
            "R": {"kind": "skip_path", "inputs": ["P", "Q"]},
        }
    )
    p = lambda s: BASE + u(s) * ALT
    q = lambda s: BASE + 1.5 * BLOCK + (u(s) + 0.5 * w(s)) * ALT
    varying = lambda s: 1.0 + 0.2 * (s % 3)
    report = _report(
        graph,
        {"in": lambda s: ALT + w(s) * BUMP, "P": p, "Q": q, "R": lambda s: p(s) + q(s)},
        {"in": varying, "P": varying, "Q": varying, "R": varying},
    )

    records = RedundancyAnalyzer().analyze(report, graph)

    (semantic,) = [r for r in records if r.classification is RedundancyClass.SEMANTIC]
    assert semantic.group == ("P", "Q")
    assert semantic.correlation < 0.9
    assert semantic.recommended_action == "confirm-by-ablation"
    assert semantic.evidence["consumer"] == "R"
    assert semantic.evidence["overlap"] >= RedundancyConfig().overlap_threshold
    assert not semantic.confirmed


def test_independent_siblings_sharing_a_mean_shape_are_not_redundant() -> None:
    graph = _siblings()
    rng = np.random.default_rng(3)
    shape = np.array([2.0, 7.0, 1.0, 9.0, 4.0, 5.0])
    noise = {name: rng.normal(0.0, 3.0, size=(400, 6)) for name in ("src", "X", "Y")}
    report = _report(
        graph,
        {
            "src": lambda s: noise["src"][s],
            "X": lambda s: shape + noise["X"][s],
            "Y": lambda s: shape + noise["Y"][s],
            "sink": lambda s: 2.0 * shape + noise["X"][s] + noise["Y"][s],
        },
        {name: (lambda s: 1.0) for name in ("src", "X", "Y", "sink")},
        samples=400,
    )

    records = RedundancyAnalyzer().analyze(report, graph)

    assert abs(report.correlation("X", "Y")) < 0.2
    assert not [r for r in records if set(r.group) == {"X", "Y"}]


def test_siblings_moving_in_step_are_functional_despite_different_shapes() -> None:
    graph = _siblings()
    rng = np.random.default_rng(4)
    shared = rng.normal(0.0, 1.0, size=(200, 6))
    other = rng.normal(0.0, 1.0, size=(200, 6))
    report = _report(
        graph,
        {
            "src": lambda s: other[s],
            "X": lambda s: BASE + shared[s],
            "Y": lambda s: 3.0 * BLOCK + shared[s],
            "sink": lambda s: BASE + 3.0 * BLOCK + 2.0 * shared[s],
        },
        {name: (lambda s: 1.0) for name in ("src", "X", "Y", "sink")},
        samples=200,
    )

    records = RedundancyAnalyzer().analyze(report, graph)

    assert report.correlation("X", "Y") == pytest.approx(1.0)
    (record,) = [r for r in records if set(r.group) == {"X", "Y"}]
    assert record.classification is RedundancyClass.FUNCTIONAL


def test_exclusive_link_has_no_positional_divergence() -> None:
    graph = _chain(["A", "B", "C"])

    assert positional_divergence(graph, "A", "B") == 0.0
    assert positional_divergence(graph, "B", "A") == 0.0
    assert positional_divergence(graph, "A", "C") > 0.0


def test_record_requires_a_group() -> None:
    with pytest.raises(ValueError):
        RedundancyRecord(("A",), 0.95, RedundancyClass.FUNCTIONAL, "merge-or-eliminate")
    with pytest.raises(ValueError):
        RedundancyConfig(context_weight=1.5)
