from __future__ import annotations

import pytest

pytest.importorskip("torch")
import torch  # type: ignore
from torch import nn  # type: ignore

from archflow import FlowAnalysisPipeline, PipelineConfig
from archflow.analysis.criticality import AblationConfig, AblationStatus
from archflow.graph.ir import ComponentKind
from archflow.integration.torch import TorchSubstrate, capture_architecture
from archflow.runtime.substrate import ExecutionSubstrate, JointOverrideSubstrate, Replacement


class TinyChain(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.layers = nn.Sequential(
            nn.Linear(8, 16),
            nn.ReLU(),
            nn.Linear(16, 16),
            nn.LayerNorm(16),
            nn.Linear(16, 4),
        )

    def forward(self, x):
        return self.layers(x)


class Residual(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.proj = nn.Linear(8, 8)
        self.norm = nn.LayerNorm(8)

    def forward(self, x):
        h = self.proj(x)
        return self.norm(h + self.proj(h))


def _substrate(model, graph):
    x = torch.randn(16, 8)
    target = torch.randn(16, 4)

    def metric(output):
        return -float(nn.functional.mse_loss(output, target))

    return TorchSubstrate(model, graph, x, metric, fingerprint_length=8, saturation_limit=3.0)


def test_capture_architecture_chain() -> None:
    model = TinyChain()

    graph = capture_architecture(model)

    assert graph.metadata["framework"] == "torch_fx"
    assert graph.metadata["module_type"] == "TinyChain"
    assert graph.topological_order() == ("layers.0", "layers.1", "layers.2", "layers.3", "layers.4")
    assert graph.component("layers.0").kind is ComponentKind.FEED_FORWARD
    assert graph.component("layers.3").kind is ComponentKind.NORMALIZATION
    assert graph.component("layers.2").out_width == graph.component("layers.3").in_width == 16


def test_repeated_submodule_calls_and_skip_edges() -> None:
    graph = capture_architecture(Residual())

    assert set(graph.components) == {"proj", "proj#1", "norm"}
    skips = [(e.producer, e.consumer) for e in graph.edges if e.skip]
    assert skips == [("proj", "norm")]


def test_torch_substrate_observations() -> None:
    torch.manual_seed(0)
    model = TinyChain()
    graph = capture_architecture(model)
    substrate = _substrate(model, graph)

    assert isinstance(substrate, ExecutionSubstrate)
    assert isinstance(substrate, JointOverrideSubstrate)

    forward = substrate.run_forward(torch.randn(4, 8))
    backward = substrate.run_backward(torch.randn(4, 8))

    assert set(forward) == set(graph.components)
    assert all(len(obs.fingerprint) == 8 for obs in forward.values())
    assert 0.0 <= forward["layers.1"].sparsity <= 1.0
    assert forward["layers.1"].saturation is not None
    assert set(backward) == set(graph.components)
    assert all(obs.magnitude >= 0.0 for obs in backward.values())
    assert all(p.grad is None for p in model.parameters())


def test_torch_substrate_overrides() -> None:
    torch.manual_seed(0)
    model = TinyChain()
    graph = capture_architecture(model)
    substrate = _substrate(model, graph)

    baseline = substrate.baseline_metric()
    identity_norm = substrate.run_with_override("layers.3", Replacement.IDENTITY)
    zero_head = substrate.run_with_override("layers.4", Replacement.ZERO)
    joint = substrate.run_with_overrides({"layers.2": Replacement.ZERO, "layers.3": Replacement.IDENTITY})

    assert substrate.baseline_metric() == baseline
    assert identity_norm != baseline
    assert zero_head == pytest.approx(substrate.metric_fn(torch.zeros(16, 4)))
    assert isinstance(joint, float)


def test_pipeline_over_torch_model() -> None:
    torch.manual_seed(0)
    model = TinyChain()
    graph = capture_architecture(model)
    substrate = _substrate(model, graph)
    samples = [(idx, torch.randn(4, 8)) for idx in range(5)]

    store, gaps = FlowAnalysisPipeline.capture(graph, substrate, samples)
    pipeline = FlowAnalysisPipeline(
        PipelineConfig(ablation=AblationConfig(max_workers=1, timeout_s=30.0))
    )
    report = pipeline.run(graph, store, substrate)

    assert gaps == []
    assert len(report.criticality) == len(graph)
    assert {s.ablation_status for s in report.criticality} <= {AblationStatus.ASSESSED, AblationStatus.SKIPPED}
    assert any(s.ablation_status is AblationStatus.ASSESSED for s in report.criticality)
