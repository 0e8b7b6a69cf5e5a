"""
FX-based capture of PyTorch module architectures.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

import torch
import torch.fx as fx

from archflow.graph.builders import KindResolver, from_pytorch_fx
from archflow.graph.ir import ArchitectureGraph


def ensure_tuple(example_inputs: Any) -> Tuple[Any, ...]:
    if isinstance(example_inputs, tuple):
        return example_inputs
    if isinstance(example_inputs, list):
        return tuple(example_inputs)
    return (example_inputs,)


def capture_architecture(
    module: torch.nn.Module,
    *,
    kind_resolver: Optional[KindResolver] = None,
) -> ArchitectureGraph:
    """
    Trace `module` with FX and build its component graph.

    Every submodule call becomes a component named after its module path;
    repeated calls of one submodule are suffixed ``#1``, ``#2``, ...
    """
    traced = fx.symbolic_trace(module)
    return from_pytorch_fx(
        traced,
        kind_resolver=kind_resolver,
        metadata={"module_type": module.__class__.__qualname__},
    )
