"""
Read-only lookup of ranked optimisation candidates keyed by
(component classification, hardware-profile tag).

The table is compiled in one pass over already-ranked candidate lists and
keeps no reference to the analysers that produced them.
"""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple, Union

from archflow.graph.ir import ComponentKind
from archflow.strategy.synthesis import OptimizationCandidate, OptimizationCategory
from archflow.utils import logger

TableKey = Tuple[str, str]


class CompressedInsightTable:
    def __init__(self, entries: Mapping[TableKey, Sequence[OptimizationCandidate]]) -> None:
        self._entries: Mapping[TableKey, Tuple[OptimizationCandidate, ...]] = MappingProxyType(
            {key: tuple(values) for key, values in entries.items()}
        )

    def lookup(self, classification: Union[str, ComponentKind], hardware_tag: str) -> Tuple[OptimizationCandidate, ...]:
        """Ranked candidates for the key; empty when nothing was compiled for it."""
        try:
            kind = ComponentKind(classification)
        except ValueError:
            logger.debug("No table entries for unknown classification `%s`.", classification)
            return ()
        return self._entries.get((kind.value, hardware_tag), ())

    def keys(self) -> List[TableKey]:
        return list(self._entries.keys())

    @property
    def hardware_tags(self) -> List[str]:
        return sorted({tag for _, tag in self._entries})

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TableKey]:
        return iter(self._entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [
                {
                    "classification": classification,
                    "hardware_tag": tag,
                    "candidates": [candidate_to_dict(c) for c in candidates],
                }
                for (classification, tag), candidates in self._entries.items()
            ]
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CompressedInsightTable":
        entries: Dict[TableKey, List[OptimizationCandidate]] = {}
        for entry in payload.get("entries", []):
            key = (entry["classification"], entry["hardware_tag"])
            entries[key] = [candidate_from_dict(c) for c in entry["candidates"]]
        return cls(entries)


def candidate_to_dict(candidate: OptimizationCandidate) -> Dict[str, Any]:
    return {
        "category": candidate.category.value,
        "targets": list(candidate.targets),
        "classifications": list(candidate.classifications),
        "expected_benefit": candidate.expected_benefit,
        "risk": candidate.risk,
        "priority": candidate.priority,
        "rationale": candidate.rationale,
        "evidence": _jsonable(candidate.evidence),
    }


def candidate_from_dict(payload: Mapping[str, Any]) -> OptimizationCandidate:
    return OptimizationCandidate(
        category=OptimizationCategory(payload["category"]),
        targets=tuple(payload["targets"]),
        classifications=tuple(payload["classifications"]),
        expected_benefit=float(payload["expected_benefit"]),
        risk=float(payload["risk"]),
        priority=float(payload["priority"]),
        rationale=payload.get("rationale", ""),
        evidence=dict(payload.get("evidence", {})),
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "item"):
        return value.item()
    return value


def compile_table(ranked: Mapping[str, Sequence[OptimizationCandidate]]) -> CompressedInsightTable:
    """
    Build the table from ranked candidate lists keyed by hardware tag.

    Each candidate is filed under every classification it touches; the
    relative order of each list is kept, so a key's entry is exactly the
    subsequence of the ranked list carrying that classification.
    """
    entries: Dict[TableKey, List[OptimizationCandidate]] = defaultdict(list)
    for tag, candidates in ranked.items():
        for candidate in candidates:
            for classification in candidate.classifications:
                entries[(classification, tag)].append(candidate)
    return CompressedInsightTable(entries)


def save_table(table: CompressedInsightTable, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.write_text(json.dumps(table.to_dict(), indent=2, sort_keys=True))
    return path


def load_table(path: Union[str, Path]) -> CompressedInsightTable:
    return CompressedInsightTable.from_dict(json.loads(Path(path).read_text()))
