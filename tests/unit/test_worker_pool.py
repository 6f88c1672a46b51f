"""Unit tests for the WorkerPool.

Most tests use thread contexts so they stay fast; process teardown is
covered separately.
"""

from __future__ import annotations

import asyncio
import multiprocessing
import threading
import time
from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio

from docrag.pipeline.tasks import TASK_HANDLERS
from docrag.pipeline.worker_pool import MAX_WORKERS_CAP, WorkerPool
from docrag.utils.errors import WorkerPoolClosedError, WorkerTaskError, WorkerTimeoutError
from tests.fakes import make_words, sleep_task


def _block(payload: dict[str, Any]) -> str:
    payload["gate"].wait(5)
    return "released"


def _record(payload: dict[str, Any]) -> Any:
    payload["seen"].append(payload["n"])
    return payload["n"]


def _sleep(payload: dict[str, Any]) -> None:
    time.sleep(payload["seconds"])


def _explode(payload: dict[str, Any]) -> None:
    raise ValueError("boom")


def _give_up(payload: dict[str, Any]) -> None:
    raise TimeoutError("upstream gave up")


_HANDLERS = {
    **TASK_HANDLERS,
    "block": _block,
    "record": _record,
    "sleep": _sleep,
    "explode": _explode,
    "give_up": _give_up,
}


@pytest_asyncio.fixture
async def worker_pool() -> AsyncIterator[WorkerPool]:
    pool = WorkerPool(max_workers=1, kind="thread", default_timeout=5.0, handlers=_HANDLERS)
    yield pool
    await pool.shutdown(wait_timeout=2.0)


async def _until_completed(pool: WorkerPool, count: int) -> None:
    deadline = time.monotonic() + 5
    while pool.stats().tasks_completed < count:
        assert time.monotonic() < deadline, "task did not complete in time"
        await asyncio.sleep(0.01)


class TestScheduling:
    def test_max_workers_is_capped(self) -> None:
        assert WorkerPool(max_workers=64, kind="thread").max_workers == MAX_WORKERS_CAP

    @pytest.mark.asyncio
    async def test_backlog_runs_by_priority_then_fifo(self, worker_pool: WorkerPool) -> None:
        gate = threading.Event()
        seen: list[str] = []
        blocker = worker_pool.submit("block", {"gate": gate})
        ids = [
            worker_pool.submit("record", {"seen": seen, "n": n}, priority=p)
            for n, p in (("low", 0), ("high", 10), ("mid", 5), ("high-2", 10))
        ]
        assert worker_pool.backlog_size == 4

        gate.set()
        assert await worker_pool.result(blocker) == "released"
        for task_id in ids:
            await worker_pool.result(task_id)
        assert seen == ["high", "high-2", "mid", "low"]

    @pytest.mark.asyncio
    async def test_run_returns_handler_value(self, worker_pool: WorkerPool) -> None:
        assert await worker_pool.run("record", {"seen": [], "n": 7}) == 7
        stats = worker_pool.stats()
        assert stats.tasks_completed == 1
        assert stats.total_workers == 1
        assert stats.active_workers == 0

    @pytest.mark.asyncio
    async def test_parallel_contexts_up_to_max(self) -> None:
        pool = WorkerPool(max_workers=2, kind="thread", handlers=_HANDLERS)
        gate = threading.Event()
        try:
            first = pool.submit("block", {"gate": gate})
            second = pool.submit("block", {"gate": gate})
            third = pool.submit("block", {"gate": gate})
            await asyncio.sleep(0.05)
            stats = pool.stats()
            assert stats.total_workers == 2
            assert stats.active_workers == 2
            assert stats.backlog == 1
            gate.set()
            assert await asyncio.gather(*(pool.result(t) for t in (first, second, third))) == ["released"] * 3
        finally:
            gate.set()
            await pool.shutdown()


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_tears_down_context(self, worker_pool: WorkerPool) -> None:
        with pytest.raises(WorkerTimeoutError):
            await worker_pool.run("sleep", {"seconds": 0.5}, timeout=0.05)
        stats = worker_pool.stats()
        assert stats.total_workers == 0
        assert stats.tasks_failed == 1
        # A fresh context serves the next task.
        assert await worker_pool.run("record", {"seen": [], "n": 1}) == 1

    @pytest.mark.asyncio
    async def test_handler_error_fails_only_the_task(self, worker_pool: WorkerPool) -> None:
        with pytest.raises(WorkerTaskError, match="ValueError: boom"):
            await worker_pool.run("explode")
        assert worker_pool.stats().total_workers == 1
        assert await worker_pool.run("record", {"seen": [], "n": 2}) == 2

    @pytest.mark.asyncio
    async def test_handler_timeout_error_is_not_a_pool_timeout(self, worker_pool: WorkerPool) -> None:
        with pytest.raises(WorkerTaskError, match="TimeoutError: upstream gave up"):
            await worker_pool.run("give_up")
        assert worker_pool.stats().total_workers == 1

    @pytest.mark.asyncio
    async def test_unknown_task_type(self, worker_pool: WorkerPool) -> None:
        with pytest.raises(WorkerTaskError, match="Unknown task type"):
            worker_pool.submit("does_not_exist")

    @pytest.mark.asyncio
    async def test_cancel_queued_task(self, worker_pool: WorkerPool) -> None:
        gate = threading.Event()
        seen: list[str] = []
        blocker = worker_pool.submit("block", {"gate": gate})
        queued = worker_pool.submit("record", {"seen": seen, "n": "cancelled"})

        assert worker_pool.cancel(queued) is True
        assert worker_pool.cancel(queued) is False
        assert worker_pool.backlog_size == 0
        gate.set()
        await worker_pool.result(blocker)
        await worker_pool.run("record", {"seen": seen, "n": "after"})
        assert seen == ["after"]

    @pytest.mark.asyncio
    async def test_shutdown_rejects_backlog_and_new_work(self, worker_pool: WorkerPool) -> None:
        gate = threading.Event()
        blocker = worker_pool.submit("block", {"gate": gate})
        queued = worker_pool.submit("record", {"seen": [], "n": 1})
        queued_result = asyncio.create_task(worker_pool.result(queued))
        blocker_result = asyncio.create_task(worker_pool.result(blocker))
        await asyncio.sleep(0)

        shutdown = asyncio.create_task(worker_pool.shutdown())
        await asyncio.sleep(0.01)
        gate.set()
        await shutdown

        assert await blocker_result == "released"
        with pytest.raises(WorkerPoolClosedError):
            await queued_result
        with pytest.raises(WorkerPoolClosedError):
            worker_pool.submit("record", {"seen": [], "n": 2})


class TestResultRetention:
    @pytest.mark.asyncio
    async def test_uncollected_result_expires(self) -> None:
        pool = WorkerPool(max_workers=1, kind="thread", handlers=_HANDLERS, result_ttl=0)
        try:
            forgotten = pool.submit("record", {"seen": [], "n": 1})
            await _until_completed(pool, 1)

            assert await pool.run("record", {"seen": [], "n": 2}) == 2
            with pytest.raises(KeyError):
                await pool.result(forgotten)
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_result_kept_within_ttl(self, worker_pool: WorkerPool) -> None:
        first = worker_pool.submit("record", {"seen": [], "n": 1})
        await _until_completed(worker_pool, 1)

        await worker_pool.run("record", {"seen": [], "n": 2})

        assert await worker_pool.result(first) == 1


class TestProcessContexts:
    @pytest.mark.asyncio
    async def test_timed_out_process_is_killed(self) -> None:
        baseline = {p.pid for p in multiprocessing.active_children()}
        pool = WorkerPool(max_workers=1, kind="process", handlers={"sleep": sleep_task})
        try:
            for _ in range(3):
                with pytest.raises(WorkerTimeoutError):
                    await pool.run("sleep", {"seconds": 30}, timeout=0.5)
            assert pool.stats().total_workers == 0

            deadline = time.monotonic() + 5
            while {p.pid for p in multiprocessing.active_children()} - baseline:
                assert time.monotonic() < deadline, "timed-out worker process still alive"
                await asyncio.sleep(0.05)
        finally:
            await pool.shutdown(wait_timeout=2.0)


class TestBuiltinHandlers:
    @pytest.mark.asyncio
    async def test_chunk_text(self, worker_pool: WorkerPool) -> None:
        chunks = await worker_pool.run(
            "chunk_text", {"content": make_words(1000), "tokenizer": "whitespace"}
        )
        assert len(chunks) > 1
        assert chunks[0]["token_count"] == 400
        assert [c["index"] for c in chunks] == list(range(len(chunks)))

    @pytest.mark.asyncio
    async def test_rank_candidates(self, worker_pool: WorkerPool) -> None:
        candidates = [
            {"id": "a", "document_id": "d1", "content": "unrelated text " * 5, "similarity": 0.6},
            {"id": "b", "document_id": "d2", "content": "vector search explained " * 3, "similarity": 0.6},
        ]
        ranked = await worker_pool.run(
            "rank_candidates",
            {"query": "vector search", "candidates": candidates, "options": {"max_chunks": 5}},
        )
        assert [r["id"] for r in ranked] == ["b", "a"]
        assert ranked[0]["final_score"] > ranked[1]["final_score"]

    @pytest.mark.asyncio
    async def test_process_text(self, worker_pool: WorkerPool) -> None:
        result = await worker_pool.run(
            "process_text",
            {"text": "## Running **Tests**", "operations": ["normalize", "tokenize", "stem"]},
        )
        assert result["text"] == "Running Tests"
        assert result["tokens"] == ["runn", "test"]
