"""
Run domain model.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from runstore.core.constants import RunFamily, RunState


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def format_run_timestamp(moment: datetime) -> str:
    """
    Render an ISO-8601 UTC timestamp that is safe inside a directory name.

    ``2026-10-18T12:30:05.123Z`` becomes ``2026-10-18T12-30-05-123Z``.
    """
    moment = moment.astimezone(timezone.utc)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


class Run(BaseModel):
    """One timestamped generation session and its directory."""

    family: RunFamily = Field(..., description="Generation family")
    run_id: str = Field(..., description="Directory name of the run")
    path: Path = Field(..., description="Absolute run directory")
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def build_id(cls, family: RunFamily, moment: datetime) -> str:
        """Run identifier for a family at a given instant."""
        return f"{family.value}-{format_run_timestamp(moment)}"

    def kind_dir(self, kind: str) -> Path:
        """Directory holding per-item artifacts of one kind."""
        return self.path / kind

    def aggregate_path(self, kind: str) -> Path:
        """Aggregate file of one kind."""
        return self.path / f"{kind}.json"

    def iteration_path(self, iteration: int, suffix: str = ".json") -> Path:
        """Iteration document of the family."""
        return self.path / f"{self.family.value}-iteration-{iteration}{suffix}"

    def document_path(self, name: str, suffix: str = ".json") -> Path:
        """Named intermediate document inside the run."""
        return self.path / f"{name}{suffix}"

    def final_path(self, suffix: str = ".json") -> Path:
        """Consolidated document written on finalization."""
        return self.path / f"{self.family.value}{suffix}"


class RunSummary(BaseModel):
    """A run as listed from disk."""

    model_config = ConfigDict(use_enum_values=True)

    run: Run
    state: RunState = Field(default=RunState.EMPTY)
    modified_at: Optional[datetime] = Field(default=None, description="Directory mtime")
    is_latest: bool = False
