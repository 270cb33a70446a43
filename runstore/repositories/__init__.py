"""
Repository implementations for data access.
"""

from runstore.repositories.artifact_repo import ArtifactRepository
from runstore.repositories.base import BaseRepository
from runstore.repositories.run_repo import FileSystemRunRepository

__all__ = [
    "ArtifactRepository",
    "BaseRepository",
    "FileSystemRunRepository",
]
