"""
Rank components by their contribution to output quality and learning.

Three independent scorers feed a weighted composite:

- gradient: normalised backward-signal magnitude times its stability,
- ablation: task-metric degradation when the component is disabled,
- pathway: heaviest downstream criticality the component feeds into, plus
  the dependency route to the most critical output it reaches.

Ablation is the only step that re-runs the execution substrate. It runs on a
bounded thread pool, each run has its own timeout and a transient failure is
retried with exponential backoff. Components that cannot be (or were not)
ablated keep an explicit non-assessed status and a default low score.
"""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from archflow.analysis.aggregate import FlowMetricReport
from archflow.analysis.bottlenecks import BottleneckRecord, max_severity_by_component
from archflow.errors import SubstrateFailure, SubstrateTimeout
from archflow.graph.ir import ArchitectureGraph, ComponentKind
from archflow.graph.topo import heaviest_downstream_mass
from archflow.runtime.substrate import ExecutionSubstrate, Replacement, default_replacement
from archflow.utils import logger


class ScoreState(str, Enum):
    UNSCORED = "unscored"
    PARTIAL = "partially-scored"
    FULL = "fully-scored"


_STATE_RANK = {ScoreState.UNSCORED: 0, ScoreState.PARTIAL: 1, ScoreState.FULL: 2}


def advance_state(current: ScoreState, target: ScoreState) -> ScoreState:
    """States only move forward."""
    return target if _STATE_RANK[target] > _STATE_RANK[current] else current


class AblationStatus(str, Enum):
    PENDING = "pending"
    ASSESSED = "assessed"
    SKIPPED = "skipped"
    BUDGET = "budget-exhausted"
    TIMEOUT = "timeout"
    FAILED = "failed"

    @property
    def assessed(self) -> bool:
        return self is AblationStatus.ASSESSED


@dataclass(frozen=True)
class CriticalityConfig:
    """
    Attributes:
        gradient_weight, ablation_weight, pathway_weight: composite weights;
            the composite is their weighted mean, so it stays in [0, 1].
        pathway_threshold: downstream criticality mass mapped to pathway score 1.
        prefilter_gradient, prefilter_severity: components with known gradient
            score and bottleneck severity both below these are not ablated.
        unassessed_score: ablation score assigned to non-assessed components.
    """

    gradient_weight: float = 0.3
    ablation_weight: float = 0.5
    pathway_weight: float = 0.2
    pathway_threshold: float = 1.0
    prefilter_gradient: float = 0.05
    prefilter_severity: float = 0.2
    unassessed_score: float = 0.1

    def __post_init__(self) -> None:
        weights = (self.gradient_weight, self.ablation_weight, self.pathway_weight)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError("Criticality weights must be non-negative with a positive sum.")
        if self.pathway_threshold <= 0:
            raise ValueError("pathway_threshold must be positive.")
        if not 0.0 <= self.unassessed_score <= 1.0:
            raise ValueError("unassessed_score must lie in [0, 1].")

    def composite(self, gradient: float, ablation: float, pathway: float) -> float:
        total = self.gradient_weight + self.ablation_weight + self.pathway_weight
        return (
            self.gradient_weight * gradient
            + self.ablation_weight * ablation
            + self.pathway_weight * pathway
        ) / total


@dataclass(frozen=True)
class AblationConfig:
    """
    Attributes:
        max_workers: concurrent substrate calls.
        timeout_s: per-component budget; exceeding it marks the component
            TIMEOUT. ``None`` disables the timeout. An overdue call is
            abandoned, not interrupted: its worker thread runs until the
            substrate returns and interpreter exit waits for it, so a
            substrate that can hang should enforce its own deadline.
        max_ablations: cap on the number of components ablated.
        budget_s: wall-clock cap on the whole ablation phase.
        max_retries: retries for failures the substrate marks transient.
        backoff_s: first retry delay, doubled on each further attempt.
        higher_is_better: orientation of the task metric.
    """

    max_workers: int = 4
    timeout_s: Optional[float] = 30.0
    max_ablations: Optional[int] = None
    budget_s: Optional[float] = None
    max_retries: int = 2
    backoff_s: float = 0.1
    higher_is_better: bool = True
    poll_interval_s: float = 0.02

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive.")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be positive.")
        if self.max_ablations is not None and self.max_ablations < 0:
            raise ValueError("max_ablations must be non-negative.")
        if self.max_retries < 0 or self.backoff_s < 0:
            raise ValueError("max_retries and backoff_s must be non-negative.")


@dataclass(frozen=True)
class AblationOutcome:
    component_id: str
    status: AblationStatus
    metric: Optional[float] = None
    delta: Optional[float] = None
    attempts: int = 0
    elapsed_s: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class CriticalityScore:
    component_id: str
    gradient_score: float
    ablation_score: float
    pathway_score: float
    composite: float
    ablation_status: AblationStatus = AblationStatus.PENDING
    ablation_delta: Optional[float] = None
    gradient_observed: bool = False
    state: ScoreState = ScoreState.UNSCORED
    rank: int = 0
    pathway_route: Tuple[str, ...] = ()

    @property
    def unassessed(self) -> bool:
        return not self.ablation_status.assessed


ReplacementFn = Callable[[ComponentKind], Replacement]


class CriticalityAssessor:
    def __init__(
        self,
        config: Optional[CriticalityConfig] = None,
        ablation: Optional[AblationConfig] = None,
        *,
        replacement_for: ReplacementFn = default_replacement,
    ) -> None:
        self.config = config or CriticalityConfig()
        self.ablation = ablation or AblationConfig()
        self.replacement_for = replacement_for

    # -- gradient + pathway ------------------------------------------------

    def gradient_scores(self, report: FlowMetricReport, graph: ArchitectureGraph) -> Dict[str, Optional[float]]:
        """None for components without any backward signal."""
        observed = {
            name: metric
            for name, metric in report.metrics.items()
            if name in graph and metric.gradient_count > 0
        }
        peak = max((abs(m.gradient_mean) for m in observed.values()), default=0.0)
        scores: Dict[str, Optional[float]] = {name: None for name in graph.topological_order()}
        for name, metric in observed.items():
            magnitude = abs(metric.gradient_mean) / peak if peak > 0 else 0.0
            stability = 1.0 / (1.0 + metric.gradient_cv)
            scores[name] = magnitude * stability
        return scores

    def pathway_scores(self, graph: ArchitectureGraph, local: Mapping[str, float]) -> Dict[str, float]:
        downstream = heaviest_downstream_mass(graph, local)
        threshold = self.config.pathway_threshold
        return {name: min(1.0, mass / threshold) for name, mass in downstream.items()}

    @staticmethod
    def pathway_routes(graph: ArchitectureGraph, local: Mapping[str, float]) -> Dict[str, Tuple[str, ...]]:
        """
        Dependency path from each component to the most critical output it
        reaches; empty when it reaches none of the declared outputs.
        """
        ranked_outputs = sorted(graph.outputs, key=lambda name: (-local.get(name, 0.0), name))
        routes: Dict[str, Tuple[str, ...]] = {}
        for name in graph.topological_order():
            routes[name] = ()
            for output in ranked_outputs:
                path = graph.dependency_path(name, output)
                if path is not None:
                    routes[name] = tuple(path)
                    break
        return routes

    def score_partial(self, report: FlowMetricReport, graph: ArchitectureGraph) -> Dict[str, CriticalityScore]:
        """Gradient and pathway evidence only; every component becomes PARTIAL."""
        gradients = self.gradient_scores(report, graph)
        local = {name: g or 0.0 for name, g in gradients.items()}
        pathways = self.pathway_scores(graph, local)
        unassessed = self.config.unassessed_score
        routes = self.pathway_routes(graph, local)

        partial: Dict[str, CriticalityScore] = {}
        for name in graph.topological_order():
            g = gradients[name]
            partial[name] = CriticalityScore(
                component_id=name,
                gradient_score=g or 0.0,
                ablation_score=unassessed,
                pathway_score=pathways[name],
                composite=self.config.composite(g or 0.0, unassessed, pathways[name]),
                gradient_observed=g is not None,
                state=advance_state(ScoreState.UNSCORED, ScoreState.PARTIAL),
                pathway_route=routes[name],
            )
        return partial

    # -- ablation ----------------------------------------------------------

    def select_for_ablation(
        self,
        partial: Mapping[str, CriticalityScore],
        bottlenecks: Sequence[BottleneckRecord] = (),
    ) -> Dict[str, AblationStatus]:
        """PENDING for components to ablate; SKIPPED / BUDGET for the rest."""
        severity = max_severity_by_component(bottlenecks)
        cfg = self.config
        plan: Dict[str, AblationStatus] = {}
        candidates: List[CriticalityScore] = []
        for name, score in partial.items():
            known_low = (
                score.gradient_observed
                and score.gradient_score < cfg.prefilter_gradient
                and severity.get(name, 0.0) < cfg.prefilter_severity
            )
            if known_low:
                plan[name] = AblationStatus.SKIPPED
            else:
                candidates.append(score)

        candidates.sort(key=lambda s: (-s.composite, s.component_id))
        cap = self.ablation.max_ablations
        for idx, score in enumerate(candidates):
            within = cap is None or idx < cap
            plan[score.component_id] = AblationStatus.PENDING if within else AblationStatus.BUDGET
        return plan

    def _ablate_once(
        self,
        substrate: ExecutionSubstrate,
        component_id: str,
        replacement: Replacement,
        started: Dict[str, float],
        attempts: Dict[str, int],
    ) -> float:
        started[component_id] = time.monotonic()
        cfg = self.ablation
        attempt = 0
        while True:
            attempts[component_id] = attempt + 1
            try:
                return float(substrate.run_with_override(component_id, replacement))
            except SubstrateFailure as exc:
                if not exc.transient or attempt >= cfg.max_retries:
                    raise
                delay = cfg.backoff_s * (2 ** attempt)
                logger.warning(
                    "Transient substrate failure ablating `%s` (attempt %d); retrying in %.3fs",
                    component_id,
                    attempt + 1,
                    delay,
                )
                time.sleep(delay)
                attempt += 1

    def run_ablations(
        self,
        graph: ArchitectureGraph,
        substrate: ExecutionSubstrate,
        plan: Mapping[str, AblationStatus],
    ) -> Dict[str, AblationOutcome]:
        cfg = self.ablation
        outcomes: Dict[str, AblationOutcome] = {
            name: AblationOutcome(component_id=name, status=status)
            for name, status in plan.items()
            if status is not AblationStatus.PENDING
        }
        pending_names = [name for name, status in plan.items() if status is AblationStatus.PENDING]
        if not pending_names:
            return outcomes

        try:
            baseline = float(substrate.baseline_metric())
        except Exception as exc:  # substrate errors of any type are reported per component
            logger.warning("Baseline metric failed (%s); ablation phase skipped.", exc)
            for name in pending_names:
                outcomes[name] = AblationOutcome(name, AblationStatus.FAILED, error=f"baseline: {exc}")
            return outcomes

        started: Dict[str, float] = {}
        attempts: Dict[str, int] = {}
        phase_start = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=cfg.max_workers, thread_name_prefix="archflow-ablate")
        futures: Dict[Future, str] = {}
        try:
            for name in pending_names:
                replacement = self.replacement_for(graph.component(name).kind)
                future = pool.submit(self._ablate_once, substrate, name, replacement, started, attempts)
                futures[future] = name

            pending = set(futures)
            while pending:
                done, _ = wait(pending, timeout=cfg.poll_interval_s, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.discard(future)
                    name = futures[future]
                    outcomes[name] = self._collect(future, name, baseline, started, attempts)

                now = time.monotonic()
                over_budget = cfg.budget_s is not None and now - phase_start > cfg.budget_s
                for future in list(pending):
                    name = futures[future]
                    start = started.get(name)
                    if start is None:
                        if over_budget and future.cancel():
                            pending.discard(future)
                            outcomes[name] = AblationOutcome(name, AblationStatus.BUDGET)
                        continue
                    if cfg.timeout_s is not None and now - start > cfg.timeout_s:
                        pending.discard(future)
                        future.cancel()
                        error = SubstrateTimeout(name, cfg.timeout_s)
                        logger.warning("%s Marked unassessed.", error)
                        outcomes[name] = AblationOutcome(
                            name,
                            AblationStatus.TIMEOUT,
                            attempts=attempts.get(name, 0),
                            elapsed_s=now - start,
                            error=str(error),
                        )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return outcomes

    def _collect(
        self,
        future: Future,
        name: str,
        baseline: float,
        started: Mapping[str, float],
        attempts: Mapping[str, int],
    ) -> AblationOutcome:
        elapsed = time.monotonic() - started.get(name, time.monotonic())
        try:
            metric = future.result()
        except Exception as exc:  # failures are recorded, never raised past the phase
            logger.warning("Ablation of `%s` failed: %s. Marked unassessed.", name, exc)
            return AblationOutcome(
                name,
                AblationStatus.FAILED,
                attempts=attempts.get(name, 0),
                elapsed_s=elapsed,
                error=str(exc),
            )
        delta = baseline - metric if self.ablation.higher_is_better else metric - baseline
        logger.debug("Ablation of `%s`: metric=%.6g delta=%.6g", name, metric, delta)
        return AblationOutcome(
            name,
            AblationStatus.ASSESSED,
            metric=metric,
            delta=delta,
            attempts=attempts.get(name, 0),
            elapsed_s=elapsed,
        )

    # -- merge ---------------------------------------------------------------

    def finalize(
        self,
        graph: ArchitectureGraph,
        partial: Mapping[str, CriticalityScore],
        outcomes: Mapping[str, AblationOutcome],
    ) -> List[CriticalityScore]:
        """Combine partial scores with ablation outcomes and rank."""
        cfg = self.config
        assessed = {
            name: outcome.delta
            for name, outcome in outcomes.items()
            if outcome.status.assessed and outcome.delta is not None
        }
        peak = max((d for d in assessed.values() if d > 0), default=0.0)

        ablation: Dict[str, float] = {}
        for name in partial:
            if name in assessed:
                ablation[name] = min(1.0, max(0.0, assessed[name] / peak)) if peak > 0 else 0.0
            else:
                ablation[name] = cfg.unassessed_score

        local_total = cfg.gradient_weight + cfg.ablation_weight
        local = {
            name: (
                (cfg.gradient_weight * score.gradient_score + cfg.ablation_weight * ablation[name]) / local_total
                if local_total > 0
                else 0.0
            )
            for name, score in partial.items()
        }
        pathways = self.pathway_scores(graph, local)
        routes = self.pathway_routes(graph, local)

        scored: List[CriticalityScore] = []
        for name, score in partial.items():
            outcome = outcomes.get(name)
            status = outcome.status if outcome is not None else AblationStatus.PENDING
            state = advance_state(score.state, ScoreState.FULL) if status.assessed else score.state
            scored.append(
                replace(
                    score,
                    ablation_score=ablation[name],
                    ablation_status=status,
                    ablation_delta=outcome.delta if outcome is not None else None,
                    pathway_score=pathways[name],
                    composite=cfg.composite(score.gradient_score, ablation[name], pathways[name]),
                    state=state,
                    pathway_route=routes[name],
                )
            )
        return rank_scores(scored)

    def assess(
        self,
        report: FlowMetricReport,
        graph: ArchitectureGraph,
        substrate: Optional[ExecutionSubstrate] = None,
        *,
        bottlenecks: Sequence[BottleneckRecord] = (),
    ) -> List[CriticalityScore]:
        partial = self.score_partial(report, graph)
        if substrate is None:
            return rank_scores(list(partial.values()))
        plan = self.select_for_ablation(partial, bottlenecks)
        outcomes = self.run_ablations(graph, substrate, plan)
        return self.finalize(graph, partial, outcomes)


def rank_scores(scores: Sequence[CriticalityScore]) -> List[CriticalityScore]:
    """Order by composite, ties broken by ablation score (the causal evidence)."""
    ordered = sorted(scores, key=lambda s: (-s.composite, -s.ablation_score, s.component_id))
    return [replace(score, rank=idx + 1) for idx, score in enumerate(ordered)]


def composite_by_component(scores: Sequence[CriticalityScore]) -> Dict[str, float]:
    return {score.component_id: score.composite for score in scores}
