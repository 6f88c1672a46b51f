"""Local filesystem object storage.

Stores uploaded originals under a root directory.  File I/O runs in a
thread via :func:`asyncio.to_thread` so large uploads never block the
event loop.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from docrag.interfaces.object_storage import IObjectStorage
from docrag.utils.errors import StorageError

logger = structlog.get_logger(logger_name=__name__)


class LocalObjectStorage(IObjectStorage):
    """Object storage rooted at a local directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        root = self._root.resolve()
        if root != target and root not in target.parents:
            raise StorageError(f"Path escapes storage root: {path}", provider_name="local_storage")
        return target

    async def put(self, path: str, data: bytes, content_type: str = "text/plain") -> str:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Failed to store {path}: {exc}", provider_name="local_storage") from exc
        logger.info("object_stored", path=path, size=len(data), content_type=content_type)
        return path

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}", provider_name="local_storage") from exc

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)

        def _unlink() -> bool:
            if not target.exists():
                return False
            target.unlink()
            return True

        try:
            removed = await asyncio.to_thread(_unlink)
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}", provider_name="local_storage") from exc
        logger.debug("object_deleted", path=path, removed=removed)
        return removed
