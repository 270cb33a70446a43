"""
Change notification hub.

Multiplexes filesystem change notifications: one underlying watch per
distinct (base directory, glob) pair, fanned out to every subscriber of
that pair on the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from runstore.core.constants import ChangeType
from runstore.core.exceptions import WatchSetupFailure
from runstore.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """A single filesystem change delivered to subscribers."""

    type: ChangeType
    path: Path


ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
Emit = Callable[[ChangeType, str], None]


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """
    Compile a glob relative to a base directory.

    ``**`` spans directories (``**/`` also matches zero directories),
    ``*`` and ``?`` stay within one path segment and ``{a,b}`` is an
    alternation.
    """
    out: list[str] = []
    depth = 0
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue

        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "{":
            out.append("(?:")
            depth += 1
        elif char == "}" and depth:
            out.append(")")
            depth -= 1
        elif char == "," and depth:
            out.append("|")
        else:
            out.append(re.escape(char))
        i += 1

    if depth:
        raise ValueError(f"Unbalanced braces in glob '{pattern}'")
    return re.compile("".join(out), re.DOTALL)


def _relative_posix(path: Path, base_dir: Path) -> Optional[str]:
    for candidate in (path, path.resolve()):
        try:
            return candidate.relative_to(base_dir).as_posix()
        except ValueError:
            continue
    return None


# =============================================================================
# Backends
# =============================================================================


class WatchBackend(ABC):
    """Source of raw filesystem events for one base directory."""

    @abstractmethod
    def schedule(self, base_dir: Path, emit: Emit) -> Any:
        """
        Start watching ``base_dir`` recursively.

        ``emit`` may be called from any thread.

        Raises:
            OSError: If the directory cannot be watched
        """
        ...

    @abstractmethod
    def unschedule(self, handle: Any) -> None:
        """Stop a watch started by ``schedule``."""
        ...


class _ForwardingEventHandler(FileSystemEventHandler):
    """Translates watchdog file events into hub change types."""

    def __init__(self, emit: Emit) -> None:
        super().__init__()
        self.emit = emit

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.emit(ChangeType.CREATED, str(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.emit(ChangeType.CHANGED, str(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.emit(ChangeType.DELETED, str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic replace: the temp file disappears, the target changes
        if not event.is_directory:
            self.emit(ChangeType.DELETED, str(event.src_path))
            self.emit(ChangeType.CHANGED, str(event.dest_path))


class WatchdogBackend(WatchBackend):
    """One watchdog observer thread per scheduled directory."""

    def __init__(self, join_timeout: float = 5.0) -> None:
        self.join_timeout = join_timeout

    def schedule(self, base_dir: Path, emit: Emit) -> Any:
        if not base_dir.is_dir():
            raise FileNotFoundError(f"No such directory: {base_dir}")

        observer = Observer()
        observer.schedule(_ForwardingEventHandler(emit), str(base_dir), recursive=True)
        observer.daemon = True
        observer.start()
        return observer

    def unschedule(self, handle: Any) -> None:
        handle.stop()
        handle.join(timeout=self.join_timeout)


# =============================================================================
# Hub
# =============================================================================


@dataclass
class _Subscription:
    subscriber_key: str
    handler: ChangeHandler
    event_types: Optional[frozenset[ChangeType]] = None
    ignore: tuple[re.Pattern[str], ...] = ()

    def accepts(self, event: ChangeEvent, relative: str) -> bool:
        if self.event_types is not None and event.type not in self.event_types:
            return False
        return not any(p.fullmatch(relative) for p in self.ignore)


@dataclass
class _PatternWatch:
    key: str
    base_dir: Path
    pattern: str
    matcher: re.Pattern[str]
    handle: Any = None
    subscriptions: list[_Subscription] = field(default_factory=list)


class ChangeNotificationHub:
    """
    Shared filesystem watches with per-subscriber fan-out.

    Backend threads only enqueue events; a single pump task on the event
    loop dispatches them, so handlers run one at a time in arrival order.
    """

    def __init__(
        self,
        backend: Optional[WatchBackend] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Initialize the hub.

        Args:
            backend: Raw event source (watchdog observers by default)
            ignore_patterns: Globs never delivered to any subscriber
        """
        self.backend = backend or WatchdogBackend()
        self._ignore = tuple(glob_to_regex(p) for p in (ignore_patterns or ()))
        self._watches: dict[str, _PatternWatch] = {}
        self._lock = asyncio.Lock()
        self._queue: Optional[asyncio.Queue[tuple[str, ChangeEvent]]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._disposed = False

    @staticmethod
    def pattern_key(base_dir: Path, pattern: str) -> str:
        """Identity of an underlying watch."""
        return f"{Path(base_dir).resolve()}:{pattern}"

    @property
    def active_watches(self) -> list[str]:
        """Pattern keys that currently hold an underlying watch."""
        return list(self._watches)

    def subscriber_count(self, key: str) -> int:
        watch = self._watches.get(key)
        return len(watch.subscriptions) if watch else 0

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._loop = asyncio.get_running_loop()
            self._queue = asyncio.Queue()
            self._pump_task = self._loop.create_task(self._pump())

    def _enqueue(self, key: str, change_type: ChangeType, raw_path: str) -> None:
        """Called from backend threads."""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or self._disposed:
            return
        event = ChangeEvent(type=change_type, path=Path(raw_path))
        try:
            loop.call_soon_threadsafe(queue.put_nowait, (key, event))
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    async def watch(
        self,
        subscriber_key: str,
        base_dir: Path | str,
        pattern: str,
        handler: ChangeHandler,
        *,
        event_types: Optional[Iterable[ChangeType]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
    ) -> Optional[str]:
        """
        Register ``handler`` for changes under ``base_dir`` matching ``pattern``.

        Returns:
            The pattern key, or None when the hub has been disposed

        Raises:
            WatchSetupFailure: If the directory cannot be watched even after
                creating it
        """
        if self._disposed:
            logger.warning("Watch requested after dispose", subscriber=subscriber_key, pattern=pattern)
            return None

        base_dir = Path(base_dir).resolve()
        key = self.pattern_key(base_dir, pattern)
        subscription = _Subscription(
            subscriber_key=subscriber_key,
            handler=handler,
            event_types=frozenset(ChangeType(t) for t in event_types) if event_types else None,
            ignore=tuple(glob_to_regex(p) for p in (ignore_patterns or ())),
        )

        async with self._lock:
            self._ensure_pump()
            watch = self._watches.get(key)
            if watch is None:
                watch = _PatternWatch(
                    key=key,
                    base_dir=base_dir,
                    pattern=pattern,
                    matcher=glob_to_regex(pattern),
                )
                watch.handle = await self._schedule(watch)
                self._watches[key] = watch
                logger.info("Watch established", base_dir=str(base_dir), pattern=pattern)

            watch.subscriptions.append(subscription)

        logger.debug(
            "Subscriber registered",
            subscriber=subscriber_key,
            pattern_key=key,
            subscribers=len(watch.subscriptions),
        )
        return key

    async def _schedule(self, watch: _PatternWatch) -> Any:
        def emit(change_type: ChangeType, raw_path: str) -> None:
            self._enqueue(watch.key, change_type, raw_path)

        try:
            return await asyncio.to_thread(self.backend.schedule, watch.base_dir, emit)
        except OSError as first:
            logger.warning(
                "Watch setup failed, creating directory and retrying",
                base_dir=str(watch.base_dir),
                error=str(first),
            )

        try:
            await asyncio.to_thread(watch.base_dir.mkdir, parents=True, exist_ok=True)
            return await asyncio.to_thread(self.backend.schedule, watch.base_dir, emit)
        except OSError as e:
            raise WatchSetupFailure(str(watch.base_dir), watch.pattern, str(e)) from e

    async def unwatch(self, subscriber_key: str) -> int:
        """
        Deregister every handler of ``subscriber_key``.

        Underlying watches left without subscribers are released.

        Returns:
            Number of handlers removed
        """
        removed = 0
        async with self._lock:
            for key, watch in list(self._watches.items()):
                before = len(watch.subscriptions)
                watch.subscriptions = [
                    s for s in watch.subscriptions if s.subscriber_key != subscriber_key
                ]
                removed += before - len(watch.subscriptions)
                if not watch.subscriptions:
                    await self._release(watch)
                    del self._watches[key]

        if removed:
            logger.debug("Subscriber removed", subscriber=subscriber_key, handlers=removed)
        return removed

    async def _release(self, watch: _PatternWatch) -> None:
        try:
            await asyncio.to_thread(self.backend.unschedule, watch.handle)
        except Exception as e:
            logger.warning("Failed to release watch", pattern_key=watch.key, error=str(e))
        logger.info("Watch released", base_dir=str(watch.base_dir), pattern=watch.pattern)

    async def drain(self) -> None:
        """Wait until every event queued so far has been dispatched."""
        # Let callbacks scheduled with call_soon_threadsafe land in the queue
        await asyncio.sleep(0)
        if self._queue is not None and self._pump_task is not None and not self._pump_task.done():
            await self._queue.join()

    async def dispose(self) -> None:
        """Release every watch; later ``watch`` calls are ignored."""
        if self._disposed:
            return
        self._disposed = True

        async with self._lock:
            for watch in list(self._watches.values()):
                await self._release(watch)
            self._watches.clear()

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        logger.info("Change hub disposed")

    async def _pump(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            key, event = await queue.get()
            try:
                await self._dispatch(key, event)
            finally:
                queue.task_done()

    async def _dispatch(self, key: str, event: ChangeEvent) -> None:
        watch = self._watches.get(key)
        if watch is None:
            return

        relative = _relative_posix(event.path, watch.base_dir)
        if relative is None or not watch.matcher.fullmatch(relative):
            return
        if any(p.fullmatch(relative) for p in self._ignore):
            return

        for subscription in list(watch.subscriptions):
            if not subscription.accepts(event, relative):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Change handler failed",
                    subscriber=subscription.subscriber_key,
                    event_type=event.type.value,
                    path=str(event.path),
                )
