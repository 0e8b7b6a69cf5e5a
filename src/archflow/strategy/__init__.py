"""
Optimisation strategy: candidate synthesis and the compressed insight table.
"""

from .synthesis import (
    GENERIC_PROFILE,
    HardwareProfile,
    OptimizationCandidate,
    OptimizationCategory,
    StrategySynthesizer,
    SynthesisConfig,
    rank_candidates,
)
from .insight_table import CompressedInsightTable, compile_table, load_table, save_table

__all__ = [
    "GENERIC_PROFILE",
    "HardwareProfile",
    "OptimizationCandidate",
    "OptimizationCategory",
    "StrategySynthesizer",
    "SynthesisConfig",
    "rank_candidates",
    "CompressedInsightTable",
    "compile_table",
    "load_table",
    "save_table",
]
