"""
Pytest configuration and fixtures.
"""

from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Generator

import pytest
from httpx import ASGITransport, AsyncClient

from runstore.api.deps import ServiceContainer
from runstore.core.config import Settings, StorageSettings, WatcherSettings
from runstore.core.constants import ChangeType
from runstore.core.logging import clear_context
from runstore.main import create_app
from runstore.repositories.artifact_repo import ArtifactRepository
from runstore.repositories.run_repo import FileSystemRunRepository
from runstore.services.artifact_writer import IncrementalArtifactWriter
from runstore.services.change_hub import ChangeNotificationHub, WatchBackend
from runstore.services.reconstructor import SnapshotReconstructor
from runstore.services.run_context import RunContextManager


class FakeWatchBackend(WatchBackend):
    """In-memory watch backend; tests fire events by hand."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.schedule_calls = 0
        self.scheduled: dict[int, tuple[Path, Callable[[ChangeType, str], None]]] = {}
        self.released: list[int] = []
        self._next_handle = 0

    def schedule(self, base_dir: Path, emit: Callable[[ChangeType, str], None]) -> Any:
        self.schedule_calls += 1
        if self.failures:
            self.failures -= 1
            raise FileNotFoundError(f"No such directory: {base_dir}")
        self._next_handle += 1
        self.scheduled[self._next_handle] = (base_dir, emit)
        return self._next_handle

    def unschedule(self, handle: Any) -> None:
        self.scheduled.pop(handle, None)
        self.released.append(handle)

    def fire(self, change_type: ChangeType, path: Path) -> None:
        """Deliver an event to every watch whose directory contains ``path``."""
        for base_dir, emit in list(self.scheduled.values()):
            if Path(path).resolve().is_relative_to(base_dir):
                emit(change_type, str(path))


@pytest.fixture(autouse=True)
def reset_log_context() -> Generator[None, None, None]:
    """Keep structlog context from leaking between tests."""
    yield
    clear_context()


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    """Docs directory inside a temporary workspace (not created yet)."""
    return tmp_path / ".shadow" / "docs"


@pytest.fixture
def run_repository(docs_dir: Path) -> FileSystemRunRepository:
    return FileSystemRunRepository(docs_dir)


@pytest.fixture
def artifact_repository() -> ArtifactRepository:
    return ArtifactRepository(indent=2)


@pytest.fixture
def run_context(run_repository: FileSystemRunRepository) -> RunContextManager:
    return RunContextManager(run_repository)


@pytest.fixture
def writer(
    run_context: RunContextManager,
    artifact_repository: ArtifactRepository,
) -> IncrementalArtifactWriter:
    return IncrementalArtifactWriter(run_context, artifact_repository)


@pytest.fixture
def reconstructor(
    run_repository: FileSystemRunRepository,
    artifact_repository: ArtifactRepository,
) -> SnapshotReconstructor:
    return SnapshotReconstructor(run_repository, artifact_repository)


@pytest.fixture
def fresh_reconstructor(docs_dir: Path) -> Callable[[], SnapshotReconstructor]:
    """Factory for reconstructors that share nothing with the writer (a restarted process)."""

    def build() -> SnapshotReconstructor:
        return SnapshotReconstructor(FileSystemRunRepository(docs_dir), ArtifactRepository())

    return build


@pytest.fixture
def fake_backend() -> FakeWatchBackend:
    return FakeWatchBackend()


@pytest.fixture
def backend_factory() -> type[FakeWatchBackend]:
    return FakeWatchBackend


@pytest.fixture
async def hub(fake_backend: FakeWatchBackend) -> AsyncGenerator[ChangeNotificationHub, None]:
    hub = ChangeNotificationHub(backend=fake_backend, ignore_patterns=["**/.*.tmp"])
    yield hub
    await hub.dispose()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing at a temporary workspace."""
    return Settings(
        storage=StorageSettings(workspace_root=str(tmp_path)),
        watcher=WatcherSettings(enabled=True),
    )


@pytest.fixture
async def container(
    test_settings: Settings,
    fake_backend: FakeWatchBackend,
) -> AsyncGenerator[ServiceContainer, None]:
    """Started service container backed by the fake watch backend."""
    container = ServiceContainer(test_settings, watch_backend=fake_backend)
    await container.startup()
    yield container
    await container.shutdown()


@pytest.fixture
async def async_client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

