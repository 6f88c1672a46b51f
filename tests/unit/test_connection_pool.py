"""Unit tests for the aiosqlite ConnectionPool."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from docrag.providers.database import schema
from docrag.providers.database.connection_pool import ConnectionPool
from docrag.utils.errors import PoolClosedError, PoolTimeoutError, StoreError

_NOW = schema.to_db_time(datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc))


def _doc_row(doc_id: str, processed: bool = True, **extra: Any) -> dict[str, Any]:
    row = {
        "id": doc_id,
        "title": f"Title {doc_id}",
        "content": "content",
        "file_path": None,
        "file_size": 7,
        "processed": processed,
        "chunk_count": None,
        "processing_time_ms": None,
        "error_message": None,
        "upload_date": _NOW,
        "created_at": _NOW,
    }
    row.update(extra)
    return row


def _chunk_row(chunk_id: str, doc_id: str, index: int, embedding: list[float]) -> dict[str, Any]:
    return {
        "id": chunk_id,
        "document_id": doc_id,
        "content": f"chunk {chunk_id}",
        "embedding": schema.encode_embedding(embedding),
        "chunk_index": index,
        "token_count": 2,
        "created_at": _NOW,
    }


# ======================================================================
# Acquire / release
# ======================================================================


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_initial_size_is_quarter_of_max(self, tmp_path: Path) -> None:
        pool = ConnectionPool(tmp_path / "a.db", max_connections=8)
        await pool.initialize()
        try:
            assert pool.stats().total_connections == 2
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_never_exceeds_max_connections(self, tmp_path: Path) -> None:
        pool = ConnectionPool(tmp_path / "a.db", max_connections=2, acquire_timeout=0.05)
        await pool.initialize()
        try:
            first = await pool.acquire()
            second = await pool.acquire()
            assert pool.stats().active_connections == 2
            with pytest.raises(PoolTimeoutError):
                await pool.acquire()
            assert pool.stats().total_connections == 2
            await pool.release(first)
            await pool.release(second)
            assert pool.stats().idle_connections == 2
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_waiters_served_in_fifo_order(self, tmp_path: Path) -> None:
        pool = ConnectionPool(tmp_path / "a.db", max_connections=1)
        await pool.initialize()
        order: list[str] = []

        async def _take(name: str):  # noqa: ANN202
            conn = await pool.acquire()
            order.append(name)
            return conn

        try:
            held = await pool.acquire()
            first = asyncio.create_task(_take("first"))
            await asyncio.sleep(0.01)
            second = asyncio.create_task(_take("second"))
            await asyncio.sleep(0.01)
            assert pool.stats().waiting_requests == 2

            await pool.release(held)
            conn = await first
            await pool.release(conn)
            await pool.release(await second)
            assert order == ["first", "second"]
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_close_fails_pending_waiters(self, tmp_path: Path) -> None:
        pool = ConnectionPool(tmp_path / "a.db", max_connections=1)
        await pool.initialize()
        held = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)

        await pool.close()
        with pytest.raises(PoolClosedError):
            await waiter
        await pool.release(held)
        assert pool.stats().total_connections == 0

    @pytest.mark.asyncio
    async def test_acquire_after_close_raises(self, pool: ConnectionPool) -> None:
        await pool.close()
        assert pool.closed
        with pytest.raises(PoolClosedError):
            await pool.acquire()
        assert await pool.health_check() is False

    @pytest.mark.asyncio
    async def test_sweep_closes_idle_connections_above_minimum(self, tmp_path: Path) -> None:
        pool = ConnectionPool(tmp_path / "a.db", max_connections=4, idle_timeout=0.0)
        await pool.initialize()
        try:
            held = [await pool.acquire() for _ in range(3)]
            for conn in held:
                await pool.release(conn)
            await asyncio.sleep(0.01)
            assert await pool.sweep_idle() == 2
            assert pool.stats().total_connections == 1
        finally:
            await pool.close()


# ======================================================================
# Table helpers
# ======================================================================


class TestTableHelpers:
    @pytest.mark.asyncio
    async def test_insert_and_select_one(self, pool: ConnectionPool) -> None:
        assert await pool.insert("documents", _doc_row("d1")) == 1
        row = await pool.select_one("documents", {"id": "d1"})
        assert row is not None
        assert row["title"] == "Title d1"
        assert row["processed"] == 1

    @pytest.mark.asyncio
    async def test_filter_operators(self, pool: ConnectionPool) -> None:
        await pool.insert(
            "documents",
            [
                _doc_row("d1", file_size=10),
                _doc_row("d2", file_size=20, processed=False, error_message="boom"),
                _doc_row("d3", file_size=30, processed=False),
            ],
        )
        ids = lambda rows: sorted(r["id"] for r in rows)  # noqa: E731

        assert ids(await pool.select("documents", {"id__in": ["d1", "d3"]})) == ["d1", "d3"]
        assert ids(await pool.select("documents", {"file_size__gte": 20})) == ["d2", "d3"]
        assert ids(await pool.select("documents", {"file_size__lt": 20})) == ["d1"]
        assert ids(await pool.select("documents", {"error_message": None})) == ["d1", "d3"]
        assert ids(await pool.select("documents", {"error_message__ne": None})) == ["d2"]
        assert ids(await pool.select("documents", {"id__ne": "d2"})) == ["d1", "d3"]
        assert await pool.select("documents", {"id__in": []}) == []

    @pytest.mark.asyncio
    async def test_order_by_and_limit(self, pool: ConnectionPool) -> None:
        await pool.insert(
            "documents", [_doc_row("d1", file_size=1), _doc_row("d2", file_size=3), _doc_row("d3", file_size=2)]
        )
        rows = await pool.select("documents", columns=["id"], order_by="-file_size", limit=2)
        assert [r["id"] for r in rows] == ["d2", "d3"]

    @pytest.mark.asyncio
    async def test_update_and_count(self, pool: ConnectionPool) -> None:
        await pool.insert("documents", [_doc_row("d1", processed=False), _doc_row("d2", processed=False)])
        assert await pool.update("documents", {"processed": True, "chunk_count": 3}, {"id": "d1"}) == 1
        assert await pool.count("documents", {"processed": True}) == 1
        assert await pool.count("documents") == 2

    @pytest.mark.asyncio
    async def test_update_and_delete_require_filters(self, pool: ConnectionPool) -> None:
        with pytest.raises(StoreError):
            await pool.update("documents", {"processed": True}, {})
        with pytest.raises(StoreError):
            await pool.delete("documents", {})

    @pytest.mark.asyncio
    async def test_rejects_unsafe_identifiers(self, pool: ConnectionPool) -> None:
        with pytest.raises(StoreError):
            await pool.select("documents; DROP TABLE documents")
        with pytest.raises(StoreError):
            await pool.select("documents", {"id__like": "x"})

    @pytest.mark.asyncio
    async def test_constraint_violation_is_store_error(self, pool: ConnectionPool) -> None:
        await pool.insert("documents", _doc_row("d1"))
        with pytest.raises(StoreError, match="Constraint"):
            await pool.insert("documents", _doc_row("d1"))

    @pytest.mark.asyncio
    async def test_deleting_document_cascades_to_chunks(self, pool: ConnectionPool) -> None:
        await pool.insert("documents", _doc_row("d1"))
        await pool.insert("document_chunks", [_chunk_row("c1", "d1", 0, [1.0, 0.0]), _chunk_row("c2", "d1", 1, [0.0, 1.0])])
        assert await pool.count("document_chunks") == 2
        assert await pool.delete("documents", {"id": "d1"}) == 1
        assert await pool.count("document_chunks") == 0

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, pool: ConnectionPool) -> None:
        with pytest.raises(RuntimeError):
            async with pool.transaction() as db:
                await db.execute(
                    "INSERT INTO documents (id, title, content, upload_date, created_at) VALUES (?, ?, ?, ?, ?)",
                    ["d1", "t", "c", _NOW, _NOW],
                )
                raise RuntimeError("abort")
        assert await pool.count("documents") == 0

    @pytest.mark.asyncio
    async def test_stats_track_queries(self, pool: ConnectionPool) -> None:
        await pool.fetch_one("SELECT 1 AS ok")
        await pool.fetch_one("SELECT 2 AS ok")
        stats = pool.stats()
        assert stats.total_queries >= 2
        assert stats.active_connections == 0
        assert stats.utilization == 0.0
        assert await pool.health_check() is True


# ======================================================================
# Vector search
# ======================================================================


class TestVectorSearch:
    @pytest.mark.asyncio
    async def test_ranks_by_similarity_above_threshold(self, pool: ConnectionPool) -> None:
        await pool.insert("documents", [_doc_row("d1"), _doc_row("pending", processed=False)])
        await pool.insert(
            "document_chunks",
            [
                _chunk_row("exact", "d1", 0, [1.0, 0.0, 0.0]),
                _chunk_row("close", "d1", 1, [0.8, 0.6, 0.0]),
                _chunk_row("orthogonal", "d1", 2, [0.0, 1.0, 0.0]),
                _chunk_row("unprocessed", "pending", 0, [1.0, 0.0, 0.0]),
            ],
        )
        rows = await pool.vector_search([1.0, 0.0, 0.0], similarity_threshold=0.5, match_count=10)

        assert [r["id"] for r in rows] == ["exact", "close"]
        assert rows[0]["similarity"] == pytest.approx(1.0)
        assert rows[1]["similarity"] == pytest.approx(0.8, abs=1e-6)
        assert rows[0]["document_title"] == "Title d1"
        assert isinstance(rows[0]["document_created_at"], datetime)

    @pytest.mark.asyncio
    async def test_match_count_limits_results(self, pool: ConnectionPool) -> None:
        await pool.insert("documents", _doc_row("d1"))
        await pool.insert(
            "document_chunks", [_chunk_row(f"c{i}", "d1", i, [1.0, float(i)]) for i in range(5)]
        )
        rows = await pool.vector_search([1.0, 0.0], similarity_threshold=0.0, match_count=3)
        assert [r["id"] for r in rows] == ["c0", "c1", "c2"]

    @pytest.mark.asyncio
    async def test_dimension_mismatch_is_excluded(self, pool: ConnectionPool) -> None:
        await pool.insert("documents", _doc_row("d1"))
        await pool.insert("document_chunks", _chunk_row("c1", "d1", 0, [1.0, 0.0, 0.0]))
        assert await pool.vector_search([1.0, 0.0], similarity_threshold=0.0) == []


class TestCosineSimilarity:
    def test_identical_vectors(self) -> None:
        blob = schema.encode_embedding([0.3, 0.4])
        assert schema.cosine_similarity(blob, blob) == pytest.approx(1.0)

    def test_zero_vector(self) -> None:
        zero = schema.encode_embedding([0.0, 0.0])
        assert schema.cosine_similarity(zero, schema.encode_embedding([1.0, 0.0])) == 0.0

    def test_missing_side(self) -> None:
        assert schema.cosine_similarity(None, schema.encode_embedding([1.0])) is None
