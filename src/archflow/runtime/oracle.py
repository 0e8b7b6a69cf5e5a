"""
Optional semantic oracle: attaches human-readable labels to finished records.

Labels live next to the records, never inside them, so an oracle that is
missing, slow or broken cannot change any quantitative result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple, runtime_checkable

from archflow.errors import OracleUnavailable
from archflow.utils import logger


@dataclass(frozen=True)
class Label:
    text: str
    confidence: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Label confidence must lie in [0, 1], got {self.confidence}.")


@runtime_checkable
class SemanticOracle(Protocol):
    def label(self, evidence: Mapping[str, Any]) -> Label:
        ...


def evidence_bundle(record: Any) -> Dict[str, Any]:
    """Flatten a bottleneck/redundancy/criticality record for the oracle."""
    bundle: Dict[str, Any] = {"record_type": type(record).__name__}
    for attr in ("target", "group", "component_id", "kind", "classification", "severity", "correlation", "composite"):
        value = getattr(record, attr, None)
        if value is None:
            continue
        bundle[attr] = getattr(value, "value", value)
    bundle["evidence"] = dict(getattr(record, "evidence", {}) or {})
    return bundle


def record_key(record: Any) -> Tuple[str, ...]:
    """Stable key for a record: its type name followed by the components it covers."""
    members = getattr(record, "target", None) or getattr(record, "group", None)
    if members is None:
        members = (record.component_id,)
    kind = getattr(record, "kind", None) or getattr(record, "classification", None)
    head = type(record).__name__ if kind is None else f"{type(record).__name__}:{kind.value}"
    return (head, *members)


def attach_labels(records: Iterable[Any], oracle: Optional[SemanticOracle]) -> Dict[Tuple[str, ...], Label]:
    """
    Ask the oracle for a label per record. Returns only the labels that were
    produced; the first OracleUnavailable stops the labelling pass.
    """
    labels: Dict[Tuple[str, ...], Label] = {}
    if oracle is None:
        return labels
    for record in records:
        key = record_key(record)
        try:
            label = oracle.label(evidence_bundle(record))
        except OracleUnavailable as exc:
            logger.warning("Semantic oracle unavailable (%s); labels omitted.", exc)
            break
        except Exception as exc:  # labels are advisory
            logger.warning("Semantic oracle failed for %s: %s", key, exc)
            continue
        if not isinstance(label, Label):
            logger.warning("Semantic oracle returned %r for %s; ignored.", type(label).__name__, key)
            continue
        labels[key] = label
    logger.info("Attached %d semantic labels", len(labels))
    return labels
