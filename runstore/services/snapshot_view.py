"""
Consumer view over the latest run of one family.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from runstore.core.constants import JSON_SUFFIX, RunFamily
from runstore.core.logging import get_logger
from runstore.domain.snapshot import Snapshot
from runstore.repositories.run_repo import parse_family
from runstore.services.change_hub import ChangeEvent, ChangeNotificationHub
from runstore.services.reconstructor import SnapshotReconstructor

logger = get_logger(__name__)

SnapshotListener = Callable[[Snapshot], Union[None, Awaitable[None]]]


class SnapshotView:
    """
    Keeps the latest snapshot of a family current and tells listeners when
    it changes.

    Consumers never read artifact files themselves; they subscribe here.
    """

    def __init__(
        self,
        family: RunFamily | str,
        reconstructor: SnapshotReconstructor,
        hub: ChangeNotificationHub,
        docs_dir: Path,
    ) -> None:
        """
        Initialize the view.

        Args:
            family: Family whose latest run is presented
            reconstructor: Builds snapshots from disk
            hub: Shared change notifications
            docs_dir: Directory containing the run directories
        """
        self.family = parse_family(family)
        self.reconstructor = reconstructor
        self.hub = hub
        self.docs_dir = Path(docs_dir)
        self.subscriber_key = f"view:{self.family.value}:{uuid.uuid4().hex[:8]}"

        self._snapshot = Snapshot.empty(self.family)
        self._listeners: dict[int, SnapshotListener] = {}
        self._next_listener = 0
        self._refresh_lock = asyncio.Lock()
        self._started = False

    @property
    def watch_pattern(self) -> str:
        """Artifacts of this family relative to the docs directory."""
        return f"{self.family.value}-*/**/*{JSON_SUFFIX}"

    async def start(self, watch: bool = True) -> Snapshot:
        """Subscribe to change notifications and load the current snapshot."""
        if watch and not self._started:
            await self.hub.watch(self.subscriber_key, self.docs_dir, self.watch_pattern, self._on_change)
            self._started = True
        return await self.refresh()

    def subscribe(self, on_change: SnapshotListener) -> Callable[[], None]:
        """
        Call ``on_change`` with every new snapshot.

        Returns:
            A function that removes the listener
        """
        listener_id = self._next_listener
        self._next_listener += 1
        self._listeners[listener_id] = on_change

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def get_snapshot(self) -> Snapshot:
        """The snapshot as of the last refresh."""
        return self._snapshot

    async def refresh(self) -> Snapshot:
        """Re-derive the snapshot from disk and notify listeners if it changed."""
        async with self._refresh_lock:
            self.reconstructor.invalidate(self.family)
            snapshot = await self.reconstructor.snapshot_latest(self.family)
            if snapshot == self._snapshot:
                return snapshot

            self._snapshot = snapshot
            logger.debug(
                "Snapshot changed",
                family=self.family.value,
                run_id=snapshot.run_id,
                state=snapshot.state,
            )
            await self._notify(snapshot)
            return snapshot

    async def _notify(self, snapshot: Snapshot) -> None:
        for listener in list(self._listeners.values()):
            try:
                result = listener(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Snapshot listener failed", family=self.family.value)

    async def _on_change(self, event: ChangeEvent) -> None:
        await self.refresh()

    async def dispose(self) -> None:
        """Stop watching and drop every listener."""
        if self._started:
            await self.hub.unwatch(self.subscriber_key)
            self._started = False
        self._listeners.clear()


def create_views(
    reconstructor: SnapshotReconstructor,
    hub: ChangeNotificationHub,
    docs_dir: Path,
    families: Optional[list[RunFamily]] = None,
) -> dict[RunFamily, SnapshotView]:
    """One view per family."""
    return {
        family: SnapshotView(family, reconstructor, hub, docs_dir)
        for family in (families or list(RunFamily))
    }
