"""
API dependencies for dependency injection.
"""

from typing import Optional

from starlette.requests import HTTPConnection

from runstore.core.config import Settings, settings
from runstore.core.constants import RunFamily
from runstore.core.exceptions import ConfigurationError
from runstore.core.logging import get_logger
from runstore.orchestration.generation import GenerationCoordinator
from runstore.repositories.artifact_repo import ArtifactRepository
from runstore.repositories.run_repo import FileSystemRunRepository
from runstore.services.artifact_writer import IncrementalArtifactWriter
from runstore.services.change_hub import ChangeNotificationHub, WatchBackend, WatchdogBackend
from runstore.services.formatter import MarkdownFormatter
from runstore.services.reconstructor import SnapshotReconstructor
from runstore.services.run_context import RunContextManager
from runstore.services.snapshot_view import SnapshotView, create_views

logger = get_logger(__name__)


class ServiceContainer:
    """
    Container for all application services.
    Provides singleton instances of services.
    """

    _instance: Optional["ServiceContainer"] = None

    def __init__(
        self,
        app_settings: Optional[Settings] = None,
        watch_backend: Optional[WatchBackend] = None,
    ) -> None:
        """
        Initialize the container.

        Args:
            app_settings: Settings to build services from (global settings by default)
            watch_backend: Filesystem event source (watchdog by default)
        """
        self.settings = app_settings or settings
        self._watch_backend = watch_backend
        self._initialized = False
        self._started = False

    @classmethod
    def get_instance(cls) -> "ServiceContainer":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def initialize(self) -> None:
        """Initialize all services."""
        if self._initialized:
            return

        storage = self.settings.storage
        watcher = self.settings.watcher
        if storage.docs_dir.exists() and not storage.docs_dir.is_dir():
            raise ConfigurationError(
                "Docs directory path is not a directory",
                details={"docs_dir": str(storage.docs_dir)},
            )

        # Repositories
        self._run_repository = FileSystemRunRepository(storage.docs_dir)
        self._artifact_repository = ArtifactRepository(indent=storage.json_indent)

        # Write path
        self._run_context = RunContextManager(self._run_repository)
        self._writer = IncrementalArtifactWriter(
            run_context=self._run_context,
            artifact_repository=self._artifact_repository,
            formatter=MarkdownFormatter(),
            index_width=storage.index_width,
        )

        # Read path
        self._hub = ChangeNotificationHub(
            backend=self._watch_backend or WatchdogBackend(join_timeout=watcher.join_timeout),
            ignore_patterns=watcher.ignore_patterns,
        )
        self._reconstructor = SnapshotReconstructor(self._run_repository, self._artifact_repository)
        self._views = create_views(self._reconstructor, self._hub, storage.docs_dir)

        self._coordinator = GenerationCoordinator(
            writer=self._writer,
            run_context=self._run_context,
            run_repository=self._run_repository,
            reconstructor=self._reconstructor,
            views=self._views,
        )

        self._initialized = True

    async def startup(self) -> None:
        """Start watching and load the current snapshot of every family."""
        self.initialize()
        if self._started:
            return

        watch = self.settings.watcher.enabled
        for family, view in self._views.items():
            await view.start(watch=watch)
            logger.info(
                "Snapshot view started",
                family=family.value,
                run_id=view.get_snapshot().run_id,
                watching=watch,
            )
        self._started = True

    async def shutdown(self) -> None:
        """Stop every view and release all watches."""
        if not self._initialized:
            return
        for view in self._views.values():
            await view.dispose()
        await self._hub.dispose()
        self._started = False

    @property
    def run_repository(self) -> FileSystemRunRepository:
        """Get the run repository."""
        self.initialize()
        return self._run_repository

    @property
    def run_context(self) -> RunContextManager:
        """Get the run context manager."""
        self.initialize()
        return self._run_context

    @property
    def writer(self) -> IncrementalArtifactWriter:
        """Get the artifact writer."""
        self.initialize()
        return self._writer

    @property
    def hub(self) -> ChangeNotificationHub:
        """Get the change notification hub."""
        self.initialize()
        return self._hub

    @property
    def reconstructor(self) -> SnapshotReconstructor:
        """Get the snapshot reconstructor."""
        self.initialize()
        return self._reconstructor

    @property
    def views(self) -> dict[RunFamily, SnapshotView]:
        """Get the snapshot view of every family."""
        self.initialize()
        return self._views

    @property
    def coordinator(self) -> GenerationCoordinator:
        """Get the generation coordinator."""
        self.initialize()
        return self._coordinator


# Singleton container instance
container = ServiceContainer.get_instance()


# Dependency functions for FastAPI
def get_container(connection: HTTPConnection) -> ServiceContainer:
    """Container attached to the running application."""
    return getattr(connection.app.state, "container", container)


def get_reconstructor(connection: HTTPConnection) -> SnapshotReconstructor:
    """Get the snapshot reconstructor instance."""
    return get_container(connection).reconstructor


def get_coordinator(connection: HTTPConnection) -> GenerationCoordinator:
    """Get the generation coordinator instance."""
    return get_container(connection).coordinator
