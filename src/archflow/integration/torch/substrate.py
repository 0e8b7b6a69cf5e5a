"""
Execution substrate backed by a real ``nn.Module``.

Forward hooks digest each component's output into an Observation; tensor
hooks on those outputs digest the gradients flowing back into them. Ablation
swaps a component's output for zeros or for its own input.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import torch
import torch.nn.functional as F
from torch import nn

from archflow.errors import SubstrateFailure, UnknownComponent
from archflow.graph.ir import ArchitectureGraph
from archflow.integration.torch.fx_capture import ensure_tuple
from archflow.runtime.storage import Observation
from archflow.runtime.substrate import Replacement

MetricFn = Callable[[Any], float]
LossFn = Callable[[Any], torch.Tensor]


def _first_tensor(value: Any) -> Optional[torch.Tensor]:
    if isinstance(value, torch.Tensor):
        return value
    if isinstance(value, (tuple, list)):
        for item in value:
            found = _first_tensor(item)
            if found is not None:
                return found
    return None


class TorchSubstrate:
    """
    Args:
        module: the model; it is run as-is, in its current train/eval mode.
        graph: architecture graph captured from `module`.
        eval_inputs: inputs the task metric is evaluated on.
        metric_fn: maps the model output on `eval_inputs` to the task metric.
        loss_fn: maps a model output to the scalar used for backward passes;
            defaults to the output sum.
        fingerprint_length: length of the pooled activation fingerprint.
        saturation_limit: |activation| at or above which a value counts as
            saturated. ``None`` leaves saturation unmeasured.

    Runs are serialised by an internal lock because hooks are installed on
    the shared module; pair it with a single ablation worker when per-run
    timeouts matter.
    """

    def __init__(
        self,
        module: nn.Module,
        graph: ArchitectureGraph,
        eval_inputs: Any,
        metric_fn: MetricFn,
        *,
        loss_fn: Optional[LossFn] = None,
        fingerprint_length: int = 16,
        near_zero: float = 1e-6,
        saturation_limit: Optional[float] = None,
    ) -> None:
        if fingerprint_length <= 0:
            raise ValueError("fingerprint_length must be positive.")
        self.module = module
        self.graph = graph
        self.eval_inputs = ensure_tuple(eval_inputs)
        self.metric_fn = metric_fn
        self.loss_fn = loss_fn or (lambda output: _first_tensor(output).sum())
        self.fingerprint_length = fingerprint_length
        self.near_zero = near_zero
        self.saturation_limit = saturation_limit
        self._lock = threading.Lock()
        self._baseline: Optional[float] = None

        self._calls: Dict[str, List[str]] = {}
        for component_id in graph.topological_order():
            config = graph.component(component_id).config
            path = config.get("module_path", component_id)
            index = int(config.get("call_index", 0))
            calls = self._calls.setdefault(path, [])
            calls.extend([""] * (index + 1 - len(calls)))
            calls[index] = component_id

    # -- digests -----------------------------------------------------------

    def digest(self, tensor: torch.Tensor) -> Observation:
        flat = tensor.detach().float().reshape(-1)
        if flat.numel() == 0:
            return Observation(magnitude=0.0, fingerprint=[0.0] * self.fingerprint_length)
        absolute = flat.abs()
        fingerprint = F.adaptive_avg_pool1d(flat.view(1, 1, -1), self.fingerprint_length).reshape(-1)
        saturation = None
        if self.saturation_limit is not None:
            saturation = float((absolute >= self.saturation_limit).float().mean())
        return Observation(
            magnitude=float(absolute.mean()),
            fingerprint=fingerprint.cpu().numpy(),
            sparsity=float((absolute < self.near_zero).float().mean()),
            saturation=saturation,
        )

    # -- hooks ---------------------------------------------------------------

    @contextmanager
    def _hooked(self, on_output: Callable[[str, Tuple[Any, ...], Any], Any]) -> Iterator[None]:
        """Install one forward hook per module path; `on_output` may replace the output."""
        counters: Dict[str, int] = {}
        handles = []

        def make_hook(path: str):
            def hook(_module: nn.Module, args: Tuple[Any, ...], output: Any) -> Any:
                index = counters.get(path, 0)
                counters[path] = index + 1
                calls = self._calls[path]
                if index >= len(calls) or not calls[index]:
                    return None
                return on_output(calls[index], args, output)

            return hook

        try:
            for path in self._calls:
                try:
                    submodule = self.module.get_submodule(path)
                except AttributeError as exc:
                    raise SubstrateFailure(f"Module path `{path}` not found.") from exc
                handles.append(submodule.register_forward_hook(make_hook(path)))
            yield
        finally:
            for handle in handles:
                handle.remove()

    # -- ExecutionSubstrate --------------------------------------------------

    def run_forward(self, inputs: Any) -> Mapping[str, Observation]:
        observations: Dict[str, Observation] = {}

        def record(component_id: str, _args: Tuple[Any, ...], output: Any) -> None:
            tensor = _first_tensor(output)
            if tensor is not None:
                observations[component_id] = self.digest(tensor)

        with self._lock, self._hooked(record), torch.no_grad():
            self.module(*ensure_tuple(inputs))
        return observations

    def run_backward(self, inputs: Any) -> Mapping[str, Observation]:
        observations: Dict[str, Observation] = {}

        def attach(component_id: str, _args: Tuple[Any, ...], output: Any) -> None:
            tensor = _first_tensor(output)
            if tensor is None or not tensor.requires_grad:
                return

            def grad_hook(grad: torch.Tensor) -> None:
                observations[component_id] = self.digest(grad)

            tensor.register_hook(grad_hook)

        with self._lock, self._hooked(attach):
            self.module.zero_grad(set_to_none=True)
            loss = self.loss_fn(self.module(*ensure_tuple(inputs)))
            loss.backward()
            self.module.zero_grad(set_to_none=True)
        return observations

    def _evaluate(self, replacements: Mapping[str, Replacement]) -> float:
        for component_id in replacements:
            if component_id not in self.graph:
                raise UnknownComponent(component_id)

        def override(component_id: str, args: Tuple[Any, ...], output: Any) -> Any:
            replacement = replacements.get(component_id)
            if replacement is None:
                return None
            tensor = _first_tensor(output)
            if replacement is Replacement.ZERO:
                return torch.zeros_like(tensor)
            source = _first_tensor(args)
            if source is None or source.shape != tensor.shape:
                raise SubstrateFailure(
                    f"Identity replacement for `{component_id}` needs matching input/output shapes.",
                    component_id=component_id,
                )
            return source

        with self._lock, self._hooked(override), torch.no_grad():
            output = self.module(*self.eval_inputs)
        return float(self.metric_fn(output))

    def run_with_override(self, component_id: str, replacement: Replacement) -> float:
        return self._evaluate({component_id: Replacement(replacement)})

    def run_with_overrides(self, replacements: Mapping[str, Replacement]) -> float:
        return self._evaluate({name: Replacement(r) for name, r in replacements.items()})

    def baseline_metric(self) -> float:
        if self._baseline is None:
            self._baseline = self._evaluate({})
        return self._baseline
