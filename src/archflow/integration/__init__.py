"""
Framework integration entry points.

Subpackages:
- `torch`: PyTorch integration (FX architecture capture, hook-based substrate).
"""

from . import torch as torch_integration  # noqa: F401

__all__ = ["torch_integration"]
