"""
Snapshot domain model.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from runstore.core.constants import RunFamily, RunState
from runstore.domain.artifact import AggregateMetadata


class Snapshot(BaseModel):
    """In-memory document reconstructed from a run's artifacts."""

    family: RunFamily
    run_id: Optional[str] = Field(default=None, description="Run the snapshot was built from")
    run_path: Optional[str] = Field(default=None)
    state: RunState = Field(default=RunState.EMPTY)
    document: dict[str, Any] = Field(default_factory=dict)
    progress: dict[str, AggregateMetadata] = Field(default_factory=dict)

    @classmethod
    def empty(cls, family: RunFamily) -> "Snapshot":
        """Placeholder snapshot for a family without runs."""
        return cls(family=family)

    @property
    def is_empty(self) -> bool:
        return self.state == RunState.EMPTY

    def to_payload(self) -> dict[str, Any]:
        """JSON-friendly representation for consumers."""
        return self.model_dump(mode="json", by_alias=True)
