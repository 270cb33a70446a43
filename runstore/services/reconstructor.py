"""
Snapshot reconstructor.

Rebuilds the in-memory document of a run from whatever is on disk, while
generation is still writing or long after the process that wrote it exited.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from runstore.core.constants import (
    FAMILY_KINDS,
    ITERATION_INFIX,
    METADATA_KEY,
    PRODUCT_PURPOSE_DOCUMENT,
    ArtifactKind,
    RunFamily,
    RunState,
)
from runstore.core.logging import get_logger
from runstore.domain.artifact import Aggregate, AggregateMetadata
from runstore.domain.merge import link_files_to_modules, merge_documents, strip_metadata
from runstore.domain.run import Run, RunSummary
from runstore.domain.snapshot import Snapshot
from runstore.domain.strategies import INSIGHT_ITERATION_STRATEGY, strategy_for
from runstore.repositories.artifact_repo import ArtifactRepository
from runstore.repositories.run_repo import FileSystemRunRepository, parse_family

logger = get_logger(__name__)

ITERATIONS_PROGRESS_KEY = "iterations"

# Document fields the per-kind item lists are published under
KIND_DOCUMENT_FIELDS = {
    ArtifactKind.FILE_SUMMARIES: "fileSummaries",
    ArtifactKind.MODULE_SUMMARIES: "modules",
}


class SnapshotReconstructor:
    """
    Derives Snapshots from run directories.

    Unreadable files are treated as not yet written. Reconstruction has no
    side effects on disk and two calls over an unchanged run return equal
    snapshots.
    """

    def __init__(
        self,
        run_repository: FileSystemRunRepository,
        artifact_repository: ArtifactRepository,
    ) -> None:
        self.run_repository = run_repository
        self.artifact_repository = artifact_repository

    def invalidate(self, family: Optional[RunFamily | str] = None) -> None:
        """Drop cached run listings so the next read rescans the disk."""
        if family is None:
            self.run_repository.invalidate()
            return
        self.run_repository.invalidate_family(parse_family(family))

    async def list_runs(self, family: RunFamily | str) -> list[RunSummary]:
        """Runs of a family, newest first, with their lifecycle state."""
        family = parse_family(family)
        runs = await self.run_repository.list(filters={"family": family}, limit=10_000)

        summaries: list[RunSummary] = []
        for position, run in enumerate(runs):
            state = await self._state_of(run) if position == 0 else RunState.ARCHIVED
            summaries.append(
                RunSummary(
                    run=run,
                    state=state,
                    modified_at=await self.run_repository.modified_at(run),
                    is_latest=position == 0,
                )
            )
        return summaries

    async def load_latest_run(self, family: RunFamily | str) -> Optional[Run]:
        """Most recently modified run of a family, or None when there is none."""
        return await self.run_repository.latest(parse_family(family))

    async def snapshot_latest(self, family: RunFamily | str) -> Snapshot:
        """Snapshot of the latest run, or the empty snapshot."""
        family = parse_family(family)
        run = await self.load_latest_run(family)
        if run is None:
            return Snapshot.empty(family)
        return await self.reconstruct(run)

    async def reconstruct(self, run: Run) -> Snapshot:
        """Rebuild the document of ``run`` from its artifacts."""
        aggregates = await self._load_aggregates(run)
        progress = {kind.value: aggregate.metadata for kind, aggregate in aggregates.items()}
        iterations: list[tuple[int, dict[str, Any]]] = []
        if run.family == RunFamily.ARCHITECTURE_INSIGHTS:
            iterations = await self._load_iterations(run)
            iteration_progress = self._iteration_progress(iterations)
            if iteration_progress is not None:
                progress[ITERATIONS_PROGRESS_KEY] = iteration_progress

        final = await self.artifact_repository.load_optional(run.final_path())
        if isinstance(final, dict):
            return self._snapshot(run, RunState.FINALIZED, strip_metadata(final), progress)

        if run.family == RunFamily.ARCHITECTURE_INSIGHTS:
            document = self._merge_iterations(iterations)
        else:
            document = self._merge_aggregates(aggregates)

        purpose = await self.artifact_repository.load_optional(
            run.document_path(PRODUCT_PURPOSE_DOCUMENT)
        )
        if isinstance(purpose, dict):
            document["productPurposeAnalysis"] = strip_metadata(purpose)

        state = RunState.IN_PROGRESS if document or progress else RunState.EMPTY
        logger.debug("Snapshot reconstructed", run_id=run.run_id, state=state.value)
        return self._snapshot(run, state, document, progress)

    def _snapshot(
        self,
        run: Run,
        state: RunState,
        document: dict[str, Any],
        progress: dict[str, AggregateMetadata],
    ) -> Snapshot:
        return Snapshot(
            family=run.family,
            run_id=run.run_id,
            run_path=str(run.path),
            state=state,
            document=document,
            progress=progress,
        )

    # -------------------------------------------------------------------------
    # Architecture insights
    # -------------------------------------------------------------------------

    def _iteration_pattern(self, family: RunFamily) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(family.value + ITERATION_INFIX)}(\d+)\.json$")

    async def _load_iterations(self, run: Run) -> list[tuple[int, dict[str, Any]]]:
        """Readable iteration documents of ``run``, in iteration order."""
        pattern = self._iteration_pattern(run.family)
        by_number: dict[int, dict[str, Any]] = {}
        for path in await self.artifact_repository.list_json(run.path):
            match = pattern.match(path.name)
            if not match:
                continue
            payload = await self.artifact_repository.load_optional(path)
            if not isinstance(payload, dict):
                continue
            # The recorded iteration number wins over the file name
            key = INSIGHT_ITERATION_STRATEGY.extract_key(payload)
            number = int(key) if key is not None and key.isdigit() else int(match.group(1))
            by_number[number] = payload
        return sorted(by_number.items())

    def _merge_iterations(self, iterations: list[tuple[int, dict[str, Any]]]) -> dict[str, Any]:
        document: dict[str, Any] = {}
        for _, payload in iterations:
            document = merge_documents(document, payload, INSIGHT_ITERATION_STRATEGY.merge_policy)
        return document

    def _iteration_progress(
        self, iterations: list[tuple[int, dict[str, Any]]]
    ) -> Optional[AggregateMetadata]:
        if not iterations:
            return None

        metadata = iterations[-1][1].get(METADATA_KEY)
        if not isinstance(metadata, dict):
            metadata = {}
        return AggregateMetadata(
            total=metadata.get("maxIterations"),
            completed=len(iterations),
            last_updated=metadata.get("savedAt"),
        )

    # -------------------------------------------------------------------------
    # Product documentation
    # -------------------------------------------------------------------------

    async def _load_aggregates(self, run: Run) -> dict[ArtifactKind, Aggregate]:
        aggregates = {}
        for kind in FAMILY_KINDS[run.family]:
            aggregate = await self._load_aggregate(run, kind)
            if aggregate is not None:
                aggregates[kind] = aggregate
        return aggregates

    def _merge_aggregates(self, aggregates: dict[ArtifactKind, Aggregate]) -> dict[str, Any]:
        items = {kind: a.items for kind, a in aggregates.items() if a.items}

        document: dict[str, Any] = {}
        files = items.get(ArtifactKind.FILE_SUMMARIES, [])
        if ArtifactKind.MODULE_SUMMARIES in items:
            document[KIND_DOCUMENT_FIELDS[ArtifactKind.MODULE_SUMMARIES]] = link_files_to_modules(
                items[ArtifactKind.MODULE_SUMMARIES], files
            )
        if files:
            document[KIND_DOCUMENT_FIELDS[ArtifactKind.FILE_SUMMARIES]] = files
        return document

    async def _load_aggregate(self, run: Run, kind: ArtifactKind) -> Optional[Aggregate]:
        """The aggregate file of ``kind``, rebuilt from per-item files when it is unusable."""
        payload = await self.artifact_repository.load_optional(run.aggregate_path(kind.value))
        if isinstance(payload, (dict, list)):
            return Aggregate.from_payload(payload)
        return await self.artifact_repository.rebuild_aggregate(
            run.kind_dir(kind.value), strategy_for(kind).merge_policy
        )

    # -------------------------------------------------------------------------
    # Progress and state
    # -------------------------------------------------------------------------

    async def _state_of(self, run: Run) -> RunState:
        final = await self.artifact_repository.load_optional(run.final_path())
        if isinstance(final, dict):
            return RunState.FINALIZED

        if await self.artifact_repository.list_json(run.path):
            return RunState.IN_PROGRESS
        for kind in FAMILY_KINDS[run.family]:
            if await self.artifact_repository.list_json(run.kind_dir(kind.value)):
                return RunState.IN_PROGRESS
        return RunState.EMPTY
