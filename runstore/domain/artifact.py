"""
Artifact and aggregate domain models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from runstore.core.constants import AGGREGATE_ITEMS_KEY, METADATA_KEY


class ArtifactMetadata(BaseModel):
    """Metadata stamped onto every per-item artifact."""

    model_config = ConfigDict(populate_by_name=True)

    index: int
    total: int
    saved_at: datetime = Field(..., alias="savedAt")


class AggregateMetadata(BaseModel):
    """Progress counters of an aggregate file."""

    model_config = ConfigDict(populate_by_name=True)

    total: Optional[int] = Field(default=None, description="Items expected in this run")
    completed: int = Field(default=0, description="Unique items persisted so far")
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")


class Aggregate(BaseModel):
    """Deduplicated-by-key collection of one artifact kind within a run."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[dict[str, Any]] = Field(default_factory=list)
    metadata: AggregateMetadata = Field(default_factory=AggregateMetadata, alias=METADATA_KEY)

    @classmethod
    def from_payload(cls, payload: Any) -> "Aggregate":
        """
        Build an aggregate from whatever JSON was on disk.

        Accepts the current ``{"items": [...]}`` shape, the older
        ``{"summaries": [...]}`` shape and a bare list. Anything else is
        treated as empty.
        """
        if isinstance(payload, list):
            return cls(items=[i for i in payload if isinstance(i, dict)])
        if not isinstance(payload, dict):
            return cls()

        raw_items = payload.get(AGGREGATE_ITEMS_KEY)
        if raw_items is None:
            raw_items = payload.get("summaries", [])
        items = [i for i in raw_items if isinstance(i, dict)] if isinstance(raw_items, list) else []

        raw_meta = payload.get(METADATA_KEY) or {}
        metadata = AggregateMetadata(
            total=raw_meta.get("total", raw_meta.get("totalFiles", raw_meta.get("totalModules"))),
            completed=len(items),
            last_updated=raw_meta.get("lastUpdated"),
        )
        return cls(items=items, metadata=metadata)

    def to_payload(self) -> dict[str, Any]:
        """JSON shape written to disk."""
        return {
            AGGREGATE_ITEMS_KEY: self.items,
            METADATA_KEY: self.metadata.model_dump(by_alias=True),
        }
