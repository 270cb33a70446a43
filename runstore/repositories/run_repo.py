"""
Run repository backed by run directories on disk.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from runstore.core.constants import (
    JSON_SUFFIX,
    LEGACY_CONSOLIDATED_FILES,
    MARKDOWN_SUFFIX,
    RunFamily,
)
from runstore.core.exceptions import RunCreationError, RunNotFoundError, UnknownFamilyError
from runstore.core.logging import get_logger
from runstore.domain.run import Run
from runstore.repositories.base import BaseRepository

logger = get_logger(__name__)

_TIMESTAMP_RE = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3})Z")


def parse_family(value: str | RunFamily) -> RunFamily:
    """Resolve a family from its enum, value or enum name."""
    if isinstance(value, RunFamily):
        return value
    normalized = value.strip().replace("_", "-").lower()
    for family in RunFamily:
        if normalized in (family.value, family.name.lower().replace("_", "-")):
            return family
    aliases = {"productdocs": RunFamily.PRODUCT_DOCS, "architectureinsights": RunFamily.ARCHITECTURE_INSIGHTS}
    if normalized.replace("-", "") in aliases:
        return aliases[normalized.replace("-", "")]
    raise UnknownFamilyError(value)


def family_of(run_id: str) -> Optional[RunFamily]:
    """Family encoded in a run directory name."""
    for family in RunFamily:
        if run_id.startswith(f"{family.value}-"):
            return family
    return None


class FileSystemRunRepository(BaseRepository[Run]):
    """
    Runs are directories named ``<family>-<timestamp>`` under the docs dir.

    The disk is the only source of truth for which runs exist and which one
    is latest. Parsed ``Run`` objects are memoised by run id; ``invalidate``
    drops that memo.
    """

    def __init__(self, docs_dir: Path) -> None:
        self.docs_dir = Path(docs_dir)
        self._runs: dict[str, Run] = {}

    def invalidate(self, id: Optional[str] = None) -> None:
        """Forget memoised runs (all of them, or one)."""
        if id is None:
            self._runs.clear()
        else:
            self._runs.pop(id, None)

    def not_found(self, id: str) -> RunNotFoundError:
        return RunNotFoundError(id)

    def invalidate_family(self, family: RunFamily) -> None:
        """Forget memoised runs of one family."""
        for run_id in [r for r in self._runs if family_of(r) == family]:
            del self._runs[run_id]

    def _to_run(self, path: Path) -> Optional[Run]:
        run_id = path.name
        cached = self._runs.get(run_id)
        if cached is not None:
            return cached

        family = family_of(run_id)
        if family is None:
            return None

        match = _TIMESTAMP_RE.search(run_id)
        created_at: datetime
        if match:
            created_at = datetime.strptime(match.group(1), "%Y-%m-%dT%H-%M-%S-%f").replace(
                tzinfo=timezone.utc
            )
        else:
            created_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

        run = Run(family=family, run_id=run_id, path=path, created_at=created_at)
        self._runs[run_id] = run
        return run

    def _scan(self, family: Optional[RunFamily]) -> list[tuple[float, Run]]:
        try:
            entries = list(self.docs_dir.iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return []

        found: list[tuple[float, Run]] = []
        for entry in entries:
            try:
                if not entry.is_dir():
                    continue
                run = self._to_run(entry)
                if run is None or (family is not None and run.family != family):
                    continue
                found.append((entry.stat().st_mtime_ns, run))
            except FileNotFoundError:
                # Removed between listing and stat
                self.invalidate(entry.name)
                continue

        found.sort(key=lambda pair: (pair[0], pair[1].run_id), reverse=True)
        return found

    async def get(self, id: str) -> Optional[Run]:
        """Get a run by its directory name."""
        path = self.docs_dir / id

        def _get() -> Optional[Run]:
            if not path.is_dir():
                self.invalidate(id)
                return None
            return self._to_run(path)

        return await asyncio.to_thread(_get)

    async def save(self, entity: Run) -> Run:
        """Create the run directory."""
        try:
            await asyncio.to_thread(entity.path.mkdir, parents=True, exist_ok=False)
        except OSError as e:
            raise RunCreationError(entity.family.value, str(entity.path), str(e)) from e

        self._runs[entity.run_id] = entity
        logger.info("Run created", family=entity.family.value, run_id=entity.run_id)
        return entity

    async def delete(self, id: str) -> bool:
        """Delete a run directory tree."""
        path = self.docs_dir / id
        self.invalidate(id)
        if not await asyncio.to_thread(path.is_dir):
            return False
        await asyncio.to_thread(shutil.rmtree, path)
        logger.info("Run deleted", run_id=id)
        return True

    async def list(
        self,
        filters: Optional[dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        """List runs newest first (by directory modification time)."""
        family = None
        if filters and filters.get("family") is not None:
            family = parse_family(filters["family"])

        found = await asyncio.to_thread(self._scan, family)
        return [run for _, run in found][offset : offset + limit]

    async def exists(self, id: str) -> bool:
        """Check if a run directory exists."""
        return await asyncio.to_thread((self.docs_dir / id).is_dir)

    async def latest(self, family: RunFamily) -> Optional[Run]:
        """Most recently modified run of a family."""
        runs = await self.list(filters={"family": family}, limit=1)
        return runs[0] if runs else None

    async def modified_at(self, run: Run) -> Optional[datetime]:
        """Directory modification time of a run."""
        try:
            stat = await asyncio.to_thread(run.path.stat)
        except FileNotFoundError:
            return None
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

    async def delete_family(self, family: RunFamily) -> int:
        """
        Delete every run of a family and its top-level consolidated files.

        Returns:
            Number of run directories removed
        """
        removed = 0
        for run in await self.list(filters={"family": family}, limit=10_000):
            try:
                if await self.delete(run.run_id):
                    removed += 1
            except OSError as e:
                logger.error("Failed to delete run", run_id=run.run_id, error=str(e))

        names = [f"{family.value}{JSON_SUFFIX}", f"{family.value}{MARKDOWN_SUFFIX}"]
        if family == RunFamily.PRODUCT_DOCS:
            names.extend(LEGACY_CONSOLIDATED_FILES)
        for name in names:
            await asyncio.to_thread((self.docs_dir / name).unlink, missing_ok=True)

        self.invalidate()
        logger.info("Family cleared", family=family.value, runs_removed=removed)
        return removed
