"""
Run context manager: owns the in-session run handle of each family.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from runstore.core.constants import RunFamily
from runstore.core.logging import get_logger
from runstore.domain.run import Run, utc_now
from runstore.repositories.run_repo import FileSystemRunRepository, parse_family

logger = get_logger(__name__)


class RunContextManager:
    """
    Lazily creates one run per generation invocation and family.

    The cached handle only routes writes of the current invocation; nothing
    here decides which run is "latest" for readers.
    """

    def __init__(self, run_repository: FileSystemRunRepository) -> None:
        """
        Initialize the run context manager.

        Args:
            run_repository: Repository that creates run directories
        """
        self.run_repository = run_repository
        self._active: dict[RunFamily, Run] = {}
        self._locks: dict[RunFamily, asyncio.Lock] = {}
        self._epochs: dict[RunFamily, int] = {}

    def _lock_for(self, family: RunFamily) -> asyncio.Lock:
        if family not in self._locks:
            self._locks[family] = asyncio.Lock()
        return self._locks[family]

    async def get_or_create_run(self, family: RunFamily | str) -> Run:
        """
        Return the in-session run of ``family``, creating it on first use.

        A reset that lands while a caller waits here invalidates that caller:
        it gets a run of its own which is never cached.

        Raises:
            RunCreationError: If the run directory cannot be created. Nothing
                is cached, so the next write tries again.
        """
        family = parse_family(family)
        epoch = self._epochs.get(family, 0)
        async with self._lock_for(family):
            run = self._active.get(family)
            if run is not None and epoch == self._epochs.get(family, 0):
                return run

            created_at = utc_now()
            base_id = Run.build_id(family, created_at)
            run_id = base_id
            suffix = 0
            while await self.run_repository.exists(run_id):
                suffix += 1
                run_id = f"{base_id}-{suffix}"

            run = Run(
                family=family,
                run_id=run_id,
                path=self.run_repository.docs_dir / run_id,
                created_at=created_at,
            )
            await self.run_repository.save(run)
            if epoch == self._epochs.get(family, 0):
                self._active[family] = run
            else:
                logger.debug("Run created across a reset, not cached", family=family.value, run_id=run_id)
            return run

    def reset_run(self, family: RunFamily | str) -> None:
        """Drop the cached handle; the next write starts a fresh run."""
        family = parse_family(family)
        self._epochs[family] = self._epochs.get(family, 0) + 1
        previous = self._active.pop(family, None)
        if previous is not None:
            logger.debug("Run handle released", family=family.value, run_id=previous.run_id)

    def release(self, run: Run) -> None:
        """Close ``run`` for writing if it is still the cached run of its family."""
        current = self._active.get(run.family)
        if current is not None and current.run_id == run.run_id:
            self.reset_run(run.family)

    def discard(self, run: Run) -> None:
        """Release ``run`` and remove its directory if nothing was written to it."""
        self.release(run)
        try:
            run.path.rmdir()
        except OSError:
            # Not empty, or already gone
            return
        self.run_repository.invalidate(run.run_id)
        logger.debug("Empty run discarded", family=run.family.value, run_id=run.run_id)

    def current_run(self, family: RunFamily | str) -> Optional[Run]:
        """The cached run of a family, if one is open for writing."""
        return self._active.get(parse_family(family))
