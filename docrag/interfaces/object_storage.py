"""Abstract base class for storing original uploaded files."""

from __future__ import annotations

from abc import ABC, abstractmethod


class IObjectStorage(ABC):
    """Contract for a flat file store addressed by relative path."""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str = "text/plain") -> str:
        """Persist *data* under *path* and return the stored path.

        Raises
        ------
        docrag.utils.errors.StorageError
            If the file cannot be written.
        """

    @abstractmethod
    async def get(self, path: str) -> bytes:
        """Return the bytes stored under *path*.

        Raises
        ------
        docrag.utils.errors.StorageError
            If the file does not exist or cannot be read.
        """

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Remove *path*; returns ``False`` when it did not exist."""
