"""
Base repository interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

from runstore.core.exceptions import RunStoreError

T = TypeVar("T")


class BaseRepository(ABC, Generic[T]):
    """
    Storage of entities addressed by a string id.

    Implementations may memoise parsed entities, but storage stays the source
    of truth: ``invalidate`` forgets the memo so the next read goes back to it.
    """

    @abstractmethod
    async def get(self, id: str) -> Optional[T]:
        """Get an entity by id, or None if storage has no such entity."""
        ...

    @abstractmethod
    async def save(self, entity: T) -> T:
        """Persist a new entity."""
        ...

    @abstractmethod
    async def delete(self, id: str) -> bool:
        """Delete an entity; False when it did not exist."""
        ...

    @abstractmethod
    async def list(
        self,
        filters: Optional[dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[T]:
        """List entities with optional filters."""
        ...

    @abstractmethod
    async def exists(self, id: str) -> bool:
        ...

    @abstractmethod
    def invalidate(self, id: Optional[str] = None) -> None:
        """Forget memoised entities (all of them, or one)."""
        ...

    @abstractmethod
    def not_found(self, id: str) -> RunStoreError:
        """Error raised by ``require`` for a missing entity."""
        ...

    async def require(self, id: str) -> T:
        """
        Get an entity that must exist.

        Raises:
            RunStoreError: The repository's not-found error
        """
        entity = await self.get(id)
        if entity is None:
            raise self.not_found(id)
        return entity
