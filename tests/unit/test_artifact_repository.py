"""
Unit tests for the file-backed artifact repository.
"""

import os
import shutil
from pathlib import Path

import pytest

from runstore.core.constants import ArtifactKind
from runstore.core.exceptions import CorruptArtifactError
from runstore.domain.strategies import strategy_for
from runstore.repositories.artifact_repo import ArtifactRepository


class TestArtifactRepository:
    """Tests for atomic writes and tolerant reads."""

    @pytest.mark.asyncio
    async def test_write_leaves_no_temp_files(self, artifact_repository, tmp_path: Path) -> None:
        path = tmp_path / "run" / "a.json"

        await artifact_repository.write_json(path, {"file": "a.ts", "name": "é"})
        await artifact_repository.write_json(path, {"file": "a.ts", "v": 2})

        assert await artifact_repository.load_json(path) == {"file": "a.ts", "v": 2}
        assert [p.name for p in path.parent.iterdir()] == ["a.json"]

    @pytest.mark.asyncio
    async def test_write_under_root_never_recreates_root(self, artifact_repository, tmp_path: Path) -> None:
        root = tmp_path / "run"
        root.mkdir()
        await artifact_repository.write_json(root / "kind" / "0001-a.json", {"a": 1}, root=root)
        assert (root / "kind" / "0001-a.json").exists()

        shutil.rmtree(root)

        with pytest.raises(FileNotFoundError):
            await artifact_repository.write_json(root / "kind" / "0002-b.json", {"b": 2}, root=root)
        with pytest.raises(FileNotFoundError):
            await artifact_repository.write_text(root / "kind.md", "text", root=root)
        assert not root.exists()

    @pytest.mark.asyncio
    async def test_replace_is_retried_while_target_is_locked(
        self, artifact_repository, tmp_path: Path, monkeypatch
    ) -> None:
        real_replace = os.replace
        calls = []

        def locked_once(src, dst):
            calls.append(dst)
            if len(calls) == 1:
                raise PermissionError("target in use")
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", locked_once)
        path = tmp_path / "a.json"

        await artifact_repository.write_json(path, {"ok": True})

        assert len(calls) == 2
        assert await artifact_repository.load_json(path) == {"ok": True}
        assert [p.name for p in tmp_path.iterdir()] == ["a.json"]

    @pytest.mark.asyncio
    async def test_missing_and_unreadable_files(self, artifact_repository, tmp_path: Path) -> None:
        missing = tmp_path / "missing.json"
        truncated = tmp_path / "truncated.json"
        truncated.write_text('{"items": [', encoding="utf-8")
        empty = tmp_path / "empty.json"
        empty.write_text("", encoding="utf-8")

        assert await artifact_repository.load_json(missing) is None
        with pytest.raises(CorruptArtifactError) as exc_info:
            await artifact_repository.load_json(truncated)
        assert exc_info.value.code == "CORRUPT_ARTIFACT"
        with pytest.raises(CorruptArtifactError):
            await artifact_repository.load_json(empty)
        assert await artifact_repository.load_optional(truncated) is None

    @pytest.mark.asyncio
    async def test_list_json_skips_hidden_and_other_files(self, artifact_repository, tmp_path: Path) -> None:
        for name in ("0002-b.json", "0001-a.json", ".0003-c.json.ab12cd34.tmp", "notes.md"):
            (tmp_path / name).write_text("{}", encoding="utf-8")
        (tmp_path / "nested.json").mkdir()

        paths = await artifact_repository.list_json(tmp_path)

        assert [p.name for p in paths] == ["0001-a.json", "0002-b.json"]
        assert await artifact_repository.list_json(tmp_path / "absent") == []

    @pytest.mark.asyncio
    async def test_rebuild_aggregate(self, artifact_repository, tmp_path: Path) -> None:
        policy = strategy_for(ArtifactKind.FILE_SUMMARIES).merge_policy
        await artifact_repository.write_json(
            tmp_path / "0001-a.ts.json",
            {"file": "a.ts", "role": "x", "_metadata": {"total": 2, "savedAt": "t1"}},
        )
        await artifact_repository.write_json(
            tmp_path / "0002-a.ts.json",
            {"file": "a.ts", "role": "y", "_metadata": {"total": 2, "savedAt": "t2"}},
        )

        aggregate = await artifact_repository.rebuild_aggregate(tmp_path, policy)

        assert aggregate.items == [{"file": "a.ts", "role": "y"}]
        assert aggregate.metadata.total == 2
        assert aggregate.metadata.completed == 1
        assert await artifact_repository.rebuild_aggregate(tmp_path / "absent", policy) is None
