"""Unit tests for LocalObjectStorage."""

from __future__ import annotations

from pathlib import Path

import pytest

from docrag.providers.storage.local_storage import LocalObjectStorage
from docrag.utils.errors import StorageError


class TestLocalObjectStorage:
    @pytest.fixture()
    def storage(self, tmp_path: Path) -> LocalObjectStorage:
        return LocalObjectStorage(tmp_path / "objects")

    @pytest.mark.asyncio
    async def test_put_and_get(self, storage: LocalObjectStorage, tmp_path: Path) -> None:
        assert await storage.put("abc-notes.md", b"# Notes") == "abc-notes.md"
        assert await storage.get("abc-notes.md") == b"# Notes"
        assert (tmp_path / "objects" / "abc-notes.md").exists()

    @pytest.mark.asyncio
    async def test_nested_paths_create_directories(self, storage: LocalObjectStorage) -> None:
        await storage.put("2026/01/doc.txt", b"text")
        assert await storage.get("2026/01/doc.txt") == b"text"

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, storage: LocalObjectStorage) -> None:
        await storage.put("doc.md", b"x")
        assert await storage.delete("doc.md") is True
        assert await storage.delete("doc.md") is False

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, storage: LocalObjectStorage) -> None:
        with pytest.raises(StorageError, match="Failed to read"):
            await storage.get("missing.md")

    @pytest.mark.asyncio
    async def test_path_escape_rejected(self, storage: LocalObjectStorage) -> None:
        with pytest.raises(StorageError, match="escapes storage root"):
            await storage.put("../outside.md", b"x")
