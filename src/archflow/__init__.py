"""
archflow

Flow-based analysis of neural network architectures: bottlenecks, redundancy,
criticality and the optimisation strategies they suggest.
"""

from .graph.ir import ArchitectureGraph, Component, ComponentKind, Edge
from .runtime.storage import Observation, PassKind, TraceStore
from .analysis.report import AnalysisReport, save_report
from .runtime.pipeline import FlowAnalysisPipeline, PipelineConfig
from .strategy.insight_table import CompressedInsightTable, load_table
from .strategy.synthesis import HardwareProfile

__all__ = [
    "ArchitectureGraph",
    "Component",
    "ComponentKind",
    "Edge",
    "Observation",
    "PassKind",
    "TraceStore",
    "AnalysisReport",
    "save_report",
    "FlowAnalysisPipeline",
    "PipelineConfig",
    "CompressedInsightTable",
    "load_table",
    "HardwareProfile",
]
