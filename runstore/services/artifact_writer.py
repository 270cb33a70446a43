"""
Incremental artifact writer.

Persists every partial output of a streaming generation as soon as it
arrives, and keeps the per-kind aggregate files up to date.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path, PurePath
from typing import Any, Optional

from runstore.core.constants import (
    KIND_FAMILY,
    MARKDOWN_SUFFIX,
    METADATA_KEY,
    ArtifactKind,
    RunFamily,
)
from runstore.core.exceptions import (
    CorruptArtifactError,
    FinalizationFailure,
    TransientWriteFailure,
)
from runstore.core.logging import get_logger
from runstore.domain.artifact import Aggregate, AggregateMetadata, ArtifactMetadata
from runstore.domain.merge import strip_metadata
from runstore.domain.run import Run, utc_now
from runstore.domain.strategies import strategy_for
from runstore.repositories.artifact_repo import ArtifactRepository
from runstore.repositories.run_repo import parse_family
from runstore.services.formatter import MarkdownFormatter
from runstore.services.run_context import RunContextManager

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def safe_key(key: Optional[str], fallback: str = "item") -> str:
    """File-name fragment for a natural key: its basename with unsafe characters replaced."""
    if not key:
        return fallback
    basename = PurePath(key.replace("\\", "/")).name or fallback
    return _UNSAFE_CHARS.sub("_", basename)


class IncrementalArtifactWriter:
    """
    Writes per-item artifacts, aggregates, iterations and final documents
    into the current run of a family.
    """

    def __init__(
        self,
        run_context: RunContextManager,
        artifact_repository: ArtifactRepository,
        formatter: Optional[MarkdownFormatter] = None,
        index_width: int = 4,
    ) -> None:
        """
        Initialize the writer.

        Args:
            run_context: Supplies the in-session run of each family
            artifact_repository: Atomic JSON/text file access
            formatter: Markdown renderer for iterations and final documents
            index_width: Zero-padding width of arrival indexes
        """
        self.run_context = run_context
        self.artifact_repository = artifact_repository
        self.formatter = formatter or MarkdownFormatter()
        self.index_width = index_width
        self._locks: dict[tuple[str, ArtifactKind], asyncio.Lock] = {}

    def _lock_for(self, run: Run, kind: ArtifactKind) -> asyncio.Lock:
        key = (run.run_id, kind)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def release(self, run: Run) -> None:
        """Close ``run`` for writing and forget its idle aggregate locks."""
        self.run_context.release(run)
        for key in [k for k, lock in self._locks.items() if k[0] == run.run_id and not lock.locked()]:
            del self._locks[key]

    async def _resolve(self, family: RunFamily, run: Optional[Run]) -> Run:
        if run is not None:
            return run
        return await self.run_context.get_or_create_run(family)

    def item_path(self, run: Run, kind: ArtifactKind, item: dict[str, Any], index: int) -> Path:
        """Location of a per-item artifact inside ``run``."""
        key = strategy_for(kind).extract_key(item)
        name = f"{index:0{self.index_width}d}-{safe_key(key)}.json"
        return run.kind_dir(kind.value) / name

    async def save_item(
        self,
        kind: ArtifactKind | str,
        item: dict[str, Any],
        index: int,
        total: Optional[int] = None,
        run: Optional[Run] = None,
    ) -> Optional[Path]:
        """
        Persist one per-item artifact and fold it into its aggregate.

        Args:
            kind: Artifact kind of the item
            item: Item payload as produced by the model
            index: Arrival index within the kind
            total: Expected number of items, when known
            run: Run to write into; the family's in-session run by default

        Returns:
            Path of the per-item file, or None when it could not be written

        Raises:
            RunCreationError: If the run directory could not be created
        """
        kind = ArtifactKind(kind)
        run = await self._resolve(KIND_FAMILY[kind], run)
        path = self.item_path(run, kind, item, index)

        payload = strip_metadata(item)
        payload[METADATA_KEY] = ArtifactMetadata(
            index=index,
            total=total if total is not None else 0,
            saved_at=utc_now(),
        ).model_dump(mode="json", by_alias=True)

        written = await self._write_json(run, path, payload, kind=kind.value, index=index)
        await self.update_aggregate(kind, item, total, run=run)
        return written

    async def update_aggregate(
        self,
        kind: ArtifactKind | str,
        item: dict[str, Any],
        total: Optional[int] = None,
        run: Optional[Run] = None,
    ) -> Optional[Aggregate]:
        """
        Upsert ``item`` into ``<run>/<kind>.json`` by its natural key.

        Read-modify-write is serialized per run and kind.
        """
        kind = ArtifactKind(kind)
        run = await self._resolve(KIND_FAMILY[kind], run)
        strategy = strategy_for(kind)
        path = run.aggregate_path(kind.value)

        async with self._lock_for(run, kind):
            try:
                current = Aggregate.from_payload(await self.artifact_repository.load_json(path))
            except CorruptArtifactError as e:
                logger.warning("Aggregate unreadable, rebuilding", path=str(path), reason=e.message)
                rebuilt = await self.artifact_repository.rebuild_aggregate(
                    run.kind_dir(kind.value), strategy.merge_policy
                )
                current = rebuilt or Aggregate()

            items = strategy.merge_policy(current.items, [item])
            aggregate = Aggregate(
                items=items,
                metadata=AggregateMetadata(
                    total=total if total is not None else current.metadata.total,
                    completed=len(items),
                    last_updated=utc_now().isoformat(),
                ),
            )
            if await self._write_json(run, path, aggregate.to_payload(), kind=kind.value) is None:
                return None

        logger.debug(
            "Aggregate updated",
            run_id=run.run_id,
            kind=kind.value,
            completed=aggregate.metadata.completed,
            total=aggregate.metadata.total,
        )
        return aggregate

    async def save_iteration(
        self,
        document: dict[str, Any],
        iteration: int,
        max_iterations: Optional[int] = None,
        run: Optional[Run] = None,
    ) -> Optional[Path]:
        """Persist one architecture-insights iteration and its markdown rendering."""
        run = await self._resolve(RunFamily.ARCHITECTURE_INSIGHTS, run)
        saved_at = utc_now()

        payload = strip_metadata(document)
        payload[METADATA_KEY] = {
            "iteration": iteration,
            "maxIterations": max_iterations,
            "savedAt": saved_at.isoformat(),
        }

        path = await self._write_json(
            run, run.iteration_path(iteration), payload, iteration=iteration
        )
        if path is None:
            return None

        markdown_path = run.iteration_path(iteration, MARKDOWN_SUFFIX)
        try:
            markdown = self.formatter.render_iteration(
                strip_metadata(document), iteration, max_iterations, generated_at=saved_at
            )
        except Exception as e:
            failure = TransientWriteFailure(str(markdown_path), f"render failed: {e}")
            logger.warning(failure.message, code=failure.code, iteration=iteration)
            return path

        await self._write_text(run, markdown_path, markdown)
        return path

    async def save_document(
        self,
        family: RunFamily | str,
        name: str,
        document: dict[str, Any],
        run: Optional[Run] = None,
    ) -> Optional[Path]:
        """Persist a named intermediate document (e.g. product purpose analysis)."""
        run = await self._resolve(parse_family(family), run)
        payload = strip_metadata(document)
        payload[METADATA_KEY] = {"savedAt": utc_now().isoformat()}
        return await self._write_json(run, run.document_path(name), payload, document=name)

    async def save_final(
        self,
        family: RunFamily | str,
        document: dict[str, Any],
        run: Optional[Run] = None,
    ) -> Path:
        """
        Write the consolidated document of a run and close the run.

        Raises:
            FinalizationFailure: If the document could not be rendered or written
            RunCreationError: If no run existed and one could not be created
        """
        family = parse_family(family)
        run = await self._resolve(family, run)
        generated_at = utc_now()

        payload = strip_metadata(document)
        payload[METADATA_KEY] = {
            "generatedAt": generated_at.isoformat(),
            "generatedAtLocal": generated_at.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            "runId": run.run_id,
        }

        try:
            # Markdown first: the JSON document is what marks the run finalized
            markdown = self.formatter.render(family, strip_metadata(document), generated_at)
            await self.artifact_repository.write_text(
                run.final_path(MARKDOWN_SUFFIX), markdown, root=run.path
            )
            path = await self.artifact_repository.write_json(
                run.final_path(), payload, root=run.path
            )
        except Exception as e:
            logger.error(
                "Failed to finalize run",
                family=family.value,
                run_id=run.run_id,
                error=str(e),
            )
            raise FinalizationFailure(family.value, str(e), run_id=run.run_id) from e
        finally:
            self.release(run)

        logger.info("Run finalized", family=family.value, run_id=run.run_id, path=str(path))
        return path

    async def _write_json(
        self, run: Run, path: Path, payload: Any, **log_fields: Any
    ) -> Optional[Path]:
        try:
            return await self.artifact_repository.write_json(path, payload, root=run.path)
        except OSError as e:
            failure = TransientWriteFailure(str(path), str(e))
            logger.warning(failure.message, code=failure.code, **log_fields)
            return None

    async def _write_text(self, run: Run, path: Path, text: str) -> Optional[Path]:
        try:
            return await self.artifact_repository.write_text(path, text, root=run.path)
        except OSError as e:
            failure = TransientWriteFailure(str(path), str(e))
            logger.warning(failure.message, code=failure.code)
            return None
