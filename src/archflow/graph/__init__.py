"""
Architecture graph representation and utilities.

This package defines the immutable component DAG analysed by the pipeline:

- `ArchitectureGraph`, `Component`, `Edge`, `ComponentKind` (see `ir.py`)
- Builders from layer specs and framework graphs (Torch FX)
- Topological traversal helpers.
"""

from .ir import ArchitectureGraph, Component, ComponentKind, Edge
from . import builders
from . import topo

__all__ = [
    "ArchitectureGraph",
    "Component",
    "ComponentKind",
    "Edge",
    "builders",
    "topo",
]
