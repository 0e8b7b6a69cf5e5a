"""
PyTorch integration for archflow.

Exports:
- `capture_architecture`: FX trace of an `nn.Module` into an ArchitectureGraph.
- `TorchSubstrate`: execution substrate running the module with digest hooks.
"""

from .fx_capture import capture_architecture
from .substrate import TorchSubstrate

__all__ = ["capture_architecture", "TorchSubstrate"]
