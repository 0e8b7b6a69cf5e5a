"""
Runtime side of the analysis: trace storage and the contracts for the
external collaborators (execution substrate, semantic oracle).

The stage-ordered pipeline lives in `archflow.runtime.pipeline` and is
re-exported from the top-level package.
"""

from .storage import Observation, PassKind, TraceRecord, TraceSet, TraceSnapshot, TraceStore
from .substrate import (
    ExecutionSubstrate,
    JointOverrideSubstrate,
    Replacement,
    ResourceUsage,
    default_replacement,
)
from .oracle import Label, SemanticOracle, attach_labels

__all__ = [
    "Observation",
    "PassKind",
    "TraceRecord",
    "TraceSet",
    "TraceSnapshot",
    "TraceStore",
    "ExecutionSubstrate",
    "JointOverrideSubstrate",
    "Replacement",
    "ResourceUsage",
    "default_replacement",
    "Label",
    "SemanticOracle",
    "attach_labels",
]
