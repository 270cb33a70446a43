"""
Service layer implementations.
"""

from runstore.services.artifact_writer import IncrementalArtifactWriter
from runstore.services.change_hub import ChangeEvent, ChangeNotificationHub, WatchdogBackend
from runstore.services.formatter import MarkdownFormatter
from runstore.services.reconstructor import SnapshotReconstructor
from runstore.services.run_context import RunContextManager
from runstore.services.snapshot_view import SnapshotView

__all__ = [
    "ChangeEvent",
    "ChangeNotificationHub",
    "IncrementalArtifactWriter",
    "MarkdownFormatter",
    "RunContextManager",
    "SnapshotReconstructor",
    "SnapshotView",
    "WatchdogBackend",
]
