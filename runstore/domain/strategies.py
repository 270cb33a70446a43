"""
Identity and merge strategies per artifact kind.

One generic writer and one generic reconstructor are parameterised by these
objects instead of carrying per-family copies of the same logic.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Any, Optional

from runstore.core.constants import METADATA_KEY, ArtifactKind
from runstore.domain.merge import KeyExtractor, ListPolicy, latest_non_empty, upsert_by_key


@dataclass(frozen=True)
class MergeStrategy:
    """How items of one kind are identified and merged."""

    name: str
    extract_key: KeyExtractor
    merge_policy: ListPolicy


def field_key(field: str, item: dict[str, Any]) -> Optional[str]:
    """Natural key stored under ``field``; ``None`` when absent or blank."""
    value = item.get(field)
    if value is None or value == "":
        return None
    return str(value)


def iteration_key(item: dict[str, Any]) -> Optional[str]:
    """Iteration number recorded in an iteration document's metadata."""
    metadata = item.get(METADATA_KEY)
    if not isinstance(metadata, dict):
        metadata = {}
    value = metadata.get("iteration", item.get("iteration"))
    return None if value is None else str(value)


def keyed_strategy(name: str, key_field: str) -> MergeStrategy:
    """Last-write-wins-by-key strategy for an aggregate."""
    extract = partial(field_key, key_field)
    return MergeStrategy(
        name=name,
        extract_key=extract,
        merge_policy=partial(upsert_by_key, extract_key=extract),
    )


FILE_SUMMARY_STRATEGY = keyed_strategy(ArtifactKind.FILE_SUMMARIES.value, "file")
MODULE_SUMMARY_STRATEGY = keyed_strategy(ArtifactKind.MODULE_SUMMARIES.value, "module")

# List fields of successive insight iterations: an empty list is "untouched"
INSIGHT_ITERATION_STRATEGY = MergeStrategy(
    name="insight-iterations",
    extract_key=iteration_key,
    merge_policy=latest_non_empty,
)

KIND_STRATEGIES: dict[ArtifactKind, MergeStrategy] = {
    ArtifactKind.FILE_SUMMARIES: FILE_SUMMARY_STRATEGY,
    ArtifactKind.MODULE_SUMMARIES: MODULE_SUMMARY_STRATEGY,
}


def strategy_for(kind: ArtifactKind) -> MergeStrategy:
    """Strategy registered for an aggregate kind."""
    return KIND_STRATEGIES[ArtifactKind(kind)]
