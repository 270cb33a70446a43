"""
Unit tests for the change notification hub.
"""

import asyncio
from pathlib import Path

import pytest

from runstore.core.constants import ChangeType
from runstore.core.exceptions import WatchSetupFailure
from runstore.repositories.artifact_repo import ArtifactRepository
from runstore.services.change_hub import (
    ChangeEvent,
    ChangeNotificationHub,
    WatchdogBackend,
    glob_to_regex,
)


class TestGlobToRegex:
    """Tests for glob matching relative to a base directory."""

    @pytest.mark.parametrize(
        "pattern,path,expected",
        [
            ("**/*.json", "a.json", True),
            ("**/*.json", "run/file-summaries/0001-a.json", True),
            ("*.json", "run/a.json", False),
            ("product-docs-*/**/*.json", "product-docs-2026/file-summaries.json", True),
            ("product-docs-*/**/*.json", "architecture-insights-2026/x.json", False),
            ("iteration-?.json", "iteration-3.json", True),
            ("iteration-?.json", "iteration-10.json", False),
            ("*.{json,md}", "report.md", True),
            ("*.{json,md}", "report.txt", False),
            ("**/.*.tmp", "run/.a.json.1f2e3d4c.tmp", True),
        ],
    )
    def test_matching(self, pattern: str, path: str, expected: bool) -> None:
        assert bool(glob_to_regex(pattern).fullmatch(path)) is expected

    def test_unbalanced_braces(self) -> None:
        with pytest.raises(ValueError):
            glob_to_regex("*.{json")


class TestChangeNotificationHub:
    """Tests for fan-out over shared watches."""

    @pytest.mark.asyncio
    async def test_one_watch_per_pattern_fans_out(self, hub, fake_backend, tmp_path: Path) -> None:
        received: dict[str, list[ChangeEvent]] = {"a": [], "b": []}
        key = await hub.watch("a", tmp_path, "**/*.json", received["a"].append)
        await hub.watch("b", tmp_path, "**/*.json", received["b"].append)

        fake_backend.fire(ChangeType.CHANGED, tmp_path / "run" / "x.json")
        fake_backend.fire(ChangeType.CREATED, tmp_path / "run" / "y.json")
        await hub.drain()

        assert fake_backend.schedule_calls == 1
        assert hub.subscriber_count(key) == 2
        for events in received.values():
            assert [(e.type, e.path.name) for e in events] == [
                (ChangeType.CHANGED, "x.json"),
                (ChangeType.CREATED, "y.json"),
            ]

    @pytest.mark.asyncio
    async def test_non_matching_and_ignored_paths_are_dropped(self, hub, fake_backend, tmp_path: Path) -> None:
        received: list[ChangeEvent] = []
        await hub.watch("a", tmp_path, "**/*.json", received.append)

        fake_backend.fire(ChangeType.CHANGED, tmp_path / "notes.md")
        fake_backend.fire(ChangeType.CREATED, tmp_path / "run" / ".x.json.ab12cd34.tmp")
        fake_backend.fire(ChangeType.CHANGED, tmp_path / "run" / "x.json")
        await hub.drain()

        assert [e.path.name for e in received] == ["x.json"]

    @pytest.mark.asyncio
    async def test_event_type_and_ignore_filters(self, hub, fake_backend, tmp_path: Path) -> None:
        deletions: list[ChangeEvent] = []
        others: list[ChangeEvent] = []
        await hub.watch("deletions", tmp_path, "**/*.json", deletions.append, event_types=[ChangeType.DELETED])
        await hub.watch("others", tmp_path, "**/*.json", others.append, ignore_patterns=["skip/**"])

        fake_backend.fire(ChangeType.CHANGED, tmp_path / "a.json")
        fake_backend.fire(ChangeType.DELETED, tmp_path / "skip" / "b.json")
        await hub.drain()

        assert [e.path.name for e in deletions] == ["b.json"]
        assert [e.path.name for e in others] == ["a.json"]

    @pytest.mark.asyncio
    async def test_async_handlers_and_failing_handlers(self, hub, fake_backend, tmp_path: Path) -> None:
        received: list[str] = []

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("boom")

        async def slow(event: ChangeEvent) -> None:
            await asyncio.sleep(0)
            received.append(event.path.name)

        await hub.watch("broken", tmp_path, "**/*.json", broken)
        await hub.watch("slow", tmp_path, "**/*.json", slow)

        fake_backend.fire(ChangeType.CHANGED, tmp_path / "a.json")
        fake_backend.fire(ChangeType.CHANGED, tmp_path / "b.json")
        await hub.drain()

        assert received == ["a.json", "b.json"]

    @pytest.mark.asyncio
    async def test_watch_released_with_last_subscriber(self, hub, fake_backend, tmp_path: Path) -> None:
        received: list[ChangeEvent] = []
        key = await hub.watch("a", tmp_path, "**/*.json", received.append)
        await hub.watch("b", tmp_path, "**/*.json", lambda e: None)

        assert await hub.unwatch("a") == 1
        assert key in hub.active_watches
        assert fake_backend.released == []

        fake_backend.fire(ChangeType.CHANGED, tmp_path / "a.json")
        await hub.drain()
        assert received == []

        await hub.unwatch("b")
        assert hub.active_watches == []
        assert len(fake_backend.released) == 1

    @pytest.mark.asyncio
    async def test_distinct_patterns_get_distinct_watches(self, hub, fake_backend, tmp_path: Path) -> None:
        await hub.watch("a", tmp_path, "**/*.json", lambda e: None)
        await hub.watch("a", tmp_path, "**/*.md", lambda e: None)

        assert fake_backend.schedule_calls == 2
        assert len(hub.active_watches) == 2

    @pytest.mark.asyncio
    async def test_setup_failure_creates_directory_and_retries(self, backend_factory, tmp_path: Path) -> None:
        backend = backend_factory(failures=1)
        hub = ChangeNotificationHub(backend=backend)
        base_dir = tmp_path / "not" / "yet"

        try:
            key = await hub.watch("a", base_dir, "**/*.json", lambda e: None)
        finally:
            await hub.dispose()

        assert key is not None
        assert base_dir.is_dir()
        assert backend.schedule_calls == 2

    @pytest.mark.asyncio
    async def test_second_setup_failure_raises(self, backend_factory, tmp_path: Path) -> None:
        hub = ChangeNotificationHub(backend=backend_factory(failures=2))

        try:
            with pytest.raises(WatchSetupFailure) as exc_info:
                await hub.watch("a", tmp_path, "**/*.json", lambda e: None)
        finally:
            await hub.dispose()

        assert exc_info.value.code == "WATCH_SETUP_FAILED"
        assert hub.active_watches == []

    @pytest.mark.asyncio
    async def test_watch_after_dispose_is_ignored(self, fake_backend, tmp_path: Path) -> None:
        hub = ChangeNotificationHub(backend=fake_backend)
        await hub.watch("a", tmp_path, "**/*.json", lambda e: None)

        await hub.dispose()

        assert fake_backend.scheduled == {}
        assert await hub.watch("b", tmp_path, "**/*.json", lambda e: None) is None


class TestWatchdogBackend:
    """End-to-end check against real filesystem notifications."""

    @pytest.mark.asyncio
    async def test_atomic_write_is_reported_as_change(self, tmp_path: Path) -> None:
        hub = ChangeNotificationHub(backend=WatchdogBackend(join_timeout=2.0), ignore_patterns=["**/.*.tmp"])
        received: list[ChangeEvent] = []
        try:
            await hub.watch("test", tmp_path, "**/*.json", received.append)
            await ArtifactRepository().write_json(tmp_path / "a.json", {"ok": True})

            for _ in range(50):
                await asyncio.sleep(0.1)
                await hub.drain()
                if any(e.path.name == "a.json" for e in received):
                    break
        finally:
            await hub.dispose()

        assert any(e.path.name == "a.json" for e in received)
        assert all(not e.path.name.endswith(".tmp") for e in received)
