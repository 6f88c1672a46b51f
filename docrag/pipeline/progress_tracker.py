"""Per-document ingestion progress with callback-based listener notification.

Stores the latest :class:`~docrag.models.document.ProcessingProgress` for
each document and broadcasts updates to listeners registered for that
document (or for all documents via the ``"*"`` key).

# ─── HOW PROGRESS TRACKING WORKS ──────────────────────────────────────
#
#   DocumentProcessor ──update()──→ ProgressTracker ──callback()──→ listeners
#
#   - Listeners are keyed by document id → no cross-talk between documents
#   - Listener errors are caught and logged → one broken listener can't
#     block ingestion or the other listeners
#   - Both sync and async callbacks are supported
#   - Terminal entries older than ``retention`` seconds are pruned
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from docrag.models.document import ProcessingProgress, ProcessingStatus
from docrag.utils.logging import get_logger

ALL_DOCUMENTS = "*"

_TERMINAL = (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


class ProgressTracker:
    """Tracks and broadcasts ingestion progress via callbacks."""

    def __init__(self, retention: float = 24 * 3600) -> None:
        self._progress: dict[str, ProcessingProgress] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._retention = timedelta(seconds=retention)
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(
        self,
        document_id: str,
        status: ProcessingStatus,
        progress: float,
        current_step: str = "",
        chunks_processed: int | None = None,
        total_chunks: int | None = None,
        error: str | None = None,
    ) -> ProcessingProgress:
        """Record a progress update and notify all registered listeners.

        Parameters
        ----------
        document_id:
            The document being processed.
        status:
            Current processing stage.
        progress:
            Completion percentage, clamped to 0.0 – 100.0.
        current_step:
            Human-readable status message.
        chunks_processed, total_chunks:
            Counters; ``None`` keeps the previous value.
        error:
            Failure message for :attr:`ProcessingStatus.FAILED`.
        """
        previous = self._progress.get(document_id)
        now = datetime.now(timezone.utc)
        snapshot = ProcessingProgress(
            document_id=document_id,
            status=status,
            progress=max(0.0, min(100.0, progress)),
            current_step=current_step,
            chunks_processed=(
                chunks_processed if chunks_processed is not None
                else (previous.chunks_processed if previous else 0)
            ),
            total_chunks=(
                total_chunks if total_chunks is not None
                else (previous.total_chunks if previous else 0)
            ),
            error=error,
            started_at=previous.started_at if previous and status is not ProcessingStatus.QUEUED else now,
            updated_at=now,
        )
        self._progress[document_id] = snapshot

        self._logger.debug(
            "progress_update",
            document_id=document_id,
            status=status.value,
            progress=round(snapshot.progress, 1),
            step=current_step,
        )

        await self._notify_listeners(snapshot)
        return snapshot

    def get(self, document_id: str) -> ProcessingProgress | None:
        return self._progress.get(document_id)

    def all(self) -> list[ProcessingProgress]:
        return list(self._progress.values())

    def remove(self, document_id: str) -> None:
        self._progress.pop(document_id, None)

    def register_listener(self, document_id: str, callback: Callable) -> None:
        """Register ``callback(snapshot)`` for one document, or ``"*"`` for all."""
        listeners = self._listeners.setdefault(document_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, document_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(document_id, [])
        if callback in listeners:
            listeners.remove(callback)

    def prune(self, now: datetime | None = None) -> int:
        """Drop completed/failed entries older than the retention window."""
        now = now or datetime.now(timezone.utc)
        stale = [
            doc_id
            for doc_id, p in self._progress.items()
            if p.status in _TERMINAL and now - p.updated_at > self._retention
        ]
        for doc_id in stale:
            del self._progress[doc_id]
            self._listeners.pop(doc_id, None)
        if stale:
            self._logger.debug("progress_pruned", removed=len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify_listeners(self, snapshot: ProcessingProgress) -> None:
        listeners = [
            *self._listeners.get(snapshot.document_id, []),
            *self._listeners.get(ALL_DOCUMENTS, []),
        ]
        for callback in listeners:
            try:
                result = callback(snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "listener_callback_error",
                    document_id=snapshot.document_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
