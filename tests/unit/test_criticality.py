from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from archflow.analysis.aggregate import aggregate_traces
from archflow.analysis.bottlenecks import BottleneckKind, BottleneckNature, BottleneckRecord
from archflow.analysis.criticality import (
    AblationConfig,
    AblationStatus,
    CriticalityAssessor,
    CriticalityConfig,
    CriticalityScore,
    ScoreState,
    advance_state,
    rank_scores,
)
from archflow.errors import SubstrateFailure
from archflow.graph.builders import from_layer_specs
from archflow.runtime.storage import Observation, PassKind, TraceRecord
from archflow.runtime.substrate import Replacement


class FakeSubstrate:
    """Task metric per disabled component, with optional delays and scripted failures."""

    def __init__(self, metrics, baseline=1.0, delays=None, failures=None, baseline_error=None):
        self.metrics = metrics
        self.baseline = baseline
        self.delays = delays or {}
        self.failures = {name: list(errs) for name, errs in (failures or {}).items()}
        self.baseline_error = baseline_error
        self.calls = []
        self._lock = threading.Lock()

    def run_forward(self, inputs):
        return {}

    def run_backward(self, inputs):
        return {}

    def run_with_override(self, component_id, replacement):
        with self._lock:
            self.calls.append((component_id, replacement))
            pending = self.failures.get(component_id)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        time.sleep(self.delays.get(component_id, 0.0))
        return self.metrics[component_id]

    def baseline_metric(self):
        if self.baseline_error is not None:
            raise self.baseline_error
        return self.baseline


def _graph():
    return from_layer_specs(
        {
            "A": {"kind": "feed_forward"},
            "B": {"kind": "normalization", "inputs": ["A"]},
            "C": {"kind": "feed_forward", "inputs": ["B"]},
        }
    )


def _report(graph, gradients):
    rng = np.random.default_rng(11)
    records = []
    for sample in range(4):
        for name in graph.topological_order():
            records.append(
                TraceRecord(name, PassKind.FORWARD, sample, Observation(1.0 + 0.2 * sample, rng.normal(size=4)))
            )
            if name in gradients:
                grad = gradients[name] * (1.0 + 0.05 * (sample % 2))
                records.append(TraceRecord(name, PassKind.BACKWARD, sample, Observation(grad)))
    return aggregate_traces(records, graph)


def _fast(**overrides) -> AblationConfig:
    values = dict(max_workers=3, timeout_s=5.0, backoff_s=0.001, poll_interval_s=0.005)
    values.update(overrides)
    return AblationConfig(**values)


def test_composite_is_monotonic_in_ablation_score() -> None:
    config = CriticalityConfig()
    values = [config.composite(0.4, a / 10, 0.7) for a in range(11)]

    assert values == sorted(values)
    assert 0.0 <= values[0] <= values[-1] <= 1.0


def test_ties_broken_by_ablation_score() -> None:
    low = CriticalityScore("low", 0.9, 0.1, 0.5, composite=0.5)
    high = CriticalityScore("high", 0.1, 0.7, 0.5, composite=0.5)
    top = CriticalityScore("top", 1.0, 1.0, 1.0, composite=1.0)

    ranked = rank_scores([low, high, top])

    assert [s.component_id for s in ranked] == ["top", "high", "low"]
    assert [s.rank for s in ranked] == [1, 2, 3]


def test_gradient_scores_distinguish_unknown_from_low() -> None:
    graph = _graph()
    report = _report(graph, {"A": 2.0, "B": 0.5})

    scores = CriticalityAssessor().gradient_scores(report, graph)

    assert scores["C"] is None
    assert scores["A"] > scores["B"] > 0.0


def test_pathway_route_leads_to_most_critical_output() -> None:
    graph = from_layer_specs(
        {
            "trunk": {"kind": "embedding"},
            "head_a": {"kind": "feed_forward", "inputs": ["trunk"]},
            "mid": {"kind": "normalization", "inputs": ["trunk"]},
            "head_b": {"kind": "feed_forward", "inputs": ["mid"]},
        }
    )
    report = _report(graph, {"trunk": 1.0, "mid": 1.0, "head_a": 0.2, "head_b": 2.0})
    assessor = CriticalityAssessor(ablation=_fast())

    partial = assessor.score_partial(report, graph)
    final = {s.component_id: s for s in assessor.finalize(graph, partial, {})}

    for scores in (partial, final):
        assert scores["trunk"].pathway_route == ("trunk", "mid", "head_b")
        assert scores["mid"].pathway_route == ("mid", "head_b")
        assert scores["head_a"].pathway_route == ("head_a",)
    assert partial["trunk"].pathway_score > partial["head_b"].pathway_score == 0.0


def test_ablation_scores_and_full_state() -> None:
    graph = _graph()
    report = _report(graph, {"A": 1.0, "B": 1.0, "C": 1.0})
    substrate = FakeSubstrate({"A": 0.5, "B": 1.0, "C": 0.6})

    scores = {
        s.component_id: s
        for s in CriticalityAssessor(ablation=_fast()).assess(report, graph, substrate)
    }

    assert scores["A"].ablation_score == pytest.approx(1.0)
    assert scores["B"].ablation_score == 0.0
    assert scores["C"].ablation_score == pytest.approx(0.8)
    assert all(s.state is ScoreState.FULL for s in scores.values())
    assert scores["A"].rank == 1
    assert dict(substrate.calls)["B"] is Replacement.IDENTITY
    assert dict(substrate.calls)["A"] is Replacement.ZERO


def test_timeout_marks_component_unassessed() -> None:
    graph = _graph()
    report = _report(graph, {"A": 1.0, "B": 1.0, "C": 1.0})
    substrate = FakeSubstrate({"A": 0.5, "B": 0.9, "C": 0.6}, delays={"B": 0.5})
    assessor = CriticalityAssessor(ablation=_fast(timeout_s=0.1))

    started = time.monotonic()
    scores = {s.component_id: s for s in assessor.assess(report, graph, substrate)}

    assert time.monotonic() - started < 0.45
    assert scores["B"].ablation_status is AblationStatus.TIMEOUT
    assert scores["B"].unassessed
    assert scores["B"].ablation_score == CriticalityConfig().unassessed_score
    assert scores["B"].state is ScoreState.PARTIAL
    assert scores["A"].ablation_status is AblationStatus.ASSESSED

    # the overdue call is abandoned, its worker finishes on its own
    lingering = [t for t in threading.enumerate() if t.name.startswith("archflow-ablate")]
    assert any(t.is_alive() for t in lingering)
    for thread in lingering:
        thread.join(timeout=2.0)
    assert not any(t.is_alive() for t in lingering)


def test_transient_failure_is_retried() -> None:
    graph = _graph()
    substrate = FakeSubstrate(
        {"A": 0.5, "B": 0.9, "C": 0.6},
        failures={"C": [SubstrateFailure("flaky", component_id="C", transient=True)]},
    )
    assessor = CriticalityAssessor(ablation=_fast())
    plan = {name: AblationStatus.PENDING for name in graph.topological_order()}

    outcomes = assessor.run_ablations(graph, substrate, plan)

    assert outcomes["C"].status is AblationStatus.ASSESSED
    assert outcomes["C"].attempts == 2
    assert outcomes["C"].delta == pytest.approx(0.4)


def test_permanent_failure_is_not_retried() -> None:
    graph = _graph()
    substrate = FakeSubstrate(
        {"A": 0.5, "B": 0.9, "C": 0.6},
        failures={"C": [SubstrateFailure("broken"), SubstrateFailure("broken")]},
    )
    plan = {name: AblationStatus.PENDING for name in graph.topological_order()}

    outcomes = CriticalityAssessor(ablation=_fast()).run_ablations(graph, substrate, plan)

    assert outcomes["C"].status is AblationStatus.FAILED
    assert outcomes["C"].attempts == 1
    assert "broken" in outcomes["C"].error


def test_baseline_failure_marks_everything_failed() -> None:
    graph = _graph()
    substrate = FakeSubstrate({}, baseline_error=RuntimeError("no baseline"))
    plan = {name: AblationStatus.PENDING for name in graph.topological_order()}

    outcomes = CriticalityAssessor(ablation=_fast()).run_ablations(graph, substrate, plan)

    assert {o.status for o in outcomes.values()} == {AblationStatus.FAILED}
    assert substrate.calls == []


def test_prefilter_skips_known_low_components() -> None:
    graph = _graph()
    report = _report(graph, {"A": 0.001, "B": 1.0, "C": 1.0})
    assessor = CriticalityAssessor()
    partial = assessor.score_partial(report, graph)

    plan = assessor.select_for_ablation(partial)
    assert plan["A"] is AblationStatus.SKIPPED
    assert plan["B"] is AblationStatus.PENDING

    severe = BottleneckRecord(("A",), BottleneckKind.COMPUTE, 0.9, BottleneckNature.NECESSARY, "optimize-kernel")
    plan = assessor.select_for_ablation(partial, [severe])
    assert plan["A"] is AblationStatus.PENDING


def test_ablation_cap_marks_budget_exhausted() -> None:
    graph = _graph()
    report = _report(graph, {"A": 1.0, "B": 0.5, "C": 0.2})
    assessor = CriticalityAssessor(ablation=_fast(max_ablations=1))
    partial = assessor.score_partial(report, graph)

    plan = assessor.select_for_ablation(partial)

    assert list(plan.values()).count(AblationStatus.PENDING) == 1
    assert list(plan.values()).count(AblationStatus.BUDGET) == 2


def test_without_substrate_scores_stay_partial() -> None:
    graph = _graph()
    report = _report(graph, {"A": 1.0})

    scores = CriticalityAssessor().assess(report, graph)

    assert all(s.state is ScoreState.PARTIAL for s in scores)
    assert all(s.unassessed for s in scores)


def test_states_only_move_forward() -> None:
    assert advance_state(ScoreState.FULL, ScoreState.PARTIAL) is ScoreState.FULL
    assert advance_state(ScoreState.UNSCORED, ScoreState.PARTIAL) is ScoreState.PARTIAL
    assert advance_state(ScoreState.PARTIAL, ScoreState.FULL) is ScoreState.FULL
