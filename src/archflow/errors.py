"""
Error taxonomy for the flow-analysis pipeline.
"""

from __future__ import annotations

from typing import Optional


class ArchFlowError(Exception):
    """Base class for all archflow errors."""


class GraphValidationError(ArchFlowError, ValueError):
    """Architecture graph is malformed (true cycle, dangling edge, orphan node)."""


class UnknownComponent(ArchFlowError, KeyError):
    """A trace or query referenced a component id the graph does not define."""

    def __init__(self, component_id: str) -> None:
        super().__init__(component_id)
        self.component_id = component_id

    def __str__(self) -> str:
        return f"Unknown component `{self.component_id}`."


class SubstrateFailure(ArchFlowError):
    """An execution-substrate call errored."""

    def __init__(
        self,
        message: str,
        *,
        component_id: Optional[str] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.component_id = component_id
        self.transient = transient


class SubstrateTimeout(ArchFlowError):
    """An ablation run exceeded its time budget."""

    def __init__(self, component_id: str, timeout_s: float) -> None:
        super().__init__(f"Ablation of `{component_id}` exceeded {timeout_s:.3g}s.")
        self.component_id = component_id
        self.timeout_s = timeout_s


class OracleUnavailable(ArchFlowError):
    """The semantic oracle could not be reached. Never fatal."""
