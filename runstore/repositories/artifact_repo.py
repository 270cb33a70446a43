"""
Artifact repository for reading and writing JSON and markdown files.
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from runstore.core.constants import METADATA_KEY, TEMP_SUFFIX
from runstore.core.exceptions import CorruptArtifactError
from runstore.core.logging import get_logger
from runstore.domain.artifact import Aggregate, AggregateMetadata

logger = get_logger(__name__)


# A reader holding the target open makes the replace fail briefly on some platforms
@retry(
    retry=retry_if_exception_type(PermissionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
    reraise=True,
)
def _write_atomic(path: Path, text: str, root: Optional[Path] = None) -> None:
    if root is None:
        path.parent.mkdir(parents=True, exist_ok=True)
    elif path.parent != root:
        # Never recreates root itself
        path.parent.mkdir(exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise CorruptArtifactError(str(path), str(e)) from e

    if not text.strip():
        raise CorruptArtifactError(str(path), "file is empty")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptArtifactError(str(path), f"invalid JSON at line {e.lineno}") from e


class ArtifactRepository:
    """
    File-backed storage for run artifacts.

    Writes replace the target atomically; file I/O runs in a worker so the
    event loop is never blocked.
    """

    def __init__(self, indent: int = 2) -> None:
        self.indent = indent

    def dumps(self, payload: Any) -> str:
        """Serialize a payload the way it is stored on disk."""
        return json.dumps(payload, indent=self.indent, ensure_ascii=False, default=str) + "\n"

    async def write_json(self, path: Path, payload: Any, root: Optional[Path] = None) -> Path:
        """
        Write a JSON document, replacing any previous version.

        Missing parent directories are created, except that with ``root`` given
        only directories strictly below an existing ``root`` are.
        """
        await asyncio.to_thread(_write_atomic, path, self.dumps(payload), root)
        logger.debug("Artifact written", path=str(path))
        return path

    async def write_text(self, path: Path, text: str, root: Optional[Path] = None) -> Path:
        """Write a text rendering, replacing any previous version."""
        await asyncio.to_thread(_write_atomic, path, text, root)
        return path

    async def load_json(self, path: Path) -> Any:
        """
        Load a JSON document.

        Returns:
            The parsed payload, or None when the file does not exist

        Raises:
            CorruptArtifactError: If the file exists but cannot be parsed
        """
        return await asyncio.to_thread(_read_json, path)

    async def load_optional(self, path: Path) -> Optional[Any]:
        """Load a JSON document, treating unreadable files as absent."""
        try:
            return await self.load_json(path)
        except CorruptArtifactError as e:
            logger.debug("Artifact not yet available", path=str(path), reason=e.message)
            return None

    async def list_json(self, directory: Path) -> list[Path]:
        """JSON files directly inside ``directory``, sorted by name."""

        def _list() -> list[Path]:
            try:
                entries = list(directory.iterdir())
            except (FileNotFoundError, NotADirectoryError):
                return []
            return sorted(
                p for p in entries
                if p.suffix == ".json" and not p.name.startswith(".") and p.is_file()
            )

        return await asyncio.to_thread(_list)

    async def rebuild_aggregate(
        self,
        directory: Path,
        merge_policy: Callable[[list[Any], list[Any]], list[Any]],
    ) -> Optional[Aggregate]:
        """
        Fold the per-item files in ``directory`` into an aggregate, in arrival order.

        Returns:
            The rebuilt aggregate, or None when there are no item files
        """
        paths = await self.list_json(directory)
        if not paths:
            return None

        items: list[dict[str, Any]] = []
        total = None
        last_saved = None
        for path in paths:
            payload = await self.load_optional(path)
            if not isinstance(payload, dict):
                continue
            metadata = payload.get(METADATA_KEY) or {}
            total = metadata.get("total") or total
            last_saved = metadata.get("savedAt") or last_saved
            items = merge_policy(items, [payload])

        logger.debug("Aggregate rebuilt from item files", directory=str(directory), items=len(items))
        return Aggregate(
            items=items,
            metadata=AggregateMetadata(total=total, completed=len(items), last_updated=last_saved),
        )
