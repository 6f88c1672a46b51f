"""Bounded pool of isolated execution contexts for CPU-bound work.

# ─── HOW THE WORKER POOL WORKS ────────────────────────────────────────
#
#   submit() ──→ backlog (heap: priority desc, then FIFO) ──→ _dispatch()
#                                                                │
#        idle context? ─── yes ──→ run the task there ◄──────────┘
#                      └── no, below max_workers ──→ create a context
#                      └── no, at max ──→ task waits in the backlog
#
# A context is a single-worker executor (a process by default, a thread
# when configured), so each context runs exactly one task at a time and a
# crash or hang is confined to it.  When a task exceeds its timeout the
# task fails with WorkerTimeoutError and its context is torn down; a
# context whose executor breaks is torn down too.  Replacements are
# created lazily the next time the backlog needs one.
#
# Outcomes nobody collects through result() are dropped result_ttl
# seconds after the task finishes.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import multiprocessing
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from concurrent.futures.thread import BrokenThreadPool
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from docrag.models.jobs import WorkerTask
from docrag.models.stats import WorkerPoolStats
from docrag.pipeline.tasks import TASK_HANDLERS
from docrag.utils.errors import (
    WorkerCrashedError,
    WorkerPoolClosedError,
    WorkerTaskError,
    WorkerTimeoutError,
)

logger = structlog.get_logger(logger_name=__name__)

MAX_WORKERS_CAP = 8

TaskHandler = Callable[[dict[str, Any]], Any]


@dataclass
class _WorkerContext:
    id: int
    executor: Executor
    busy: bool = False
    task_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)


@dataclass
class _TaskRecord:
    task: WorkerTask
    outcome: asyncio.Future
    started_at: float | None = None
    finished_at: float | None = None
    cancelled: bool = False


class WorkerPool:
    """Run registered task handlers in up to ``max_workers`` isolated contexts.

    Parameters
    ----------
    max_workers:
        Upper bound on contexts; values above 8 are capped.
    kind:
        ``"process"`` for real isolation, ``"thread"`` for handlers that
        release the GIL or for tests.
    default_timeout:
        Per-task timeout in seconds when :meth:`submit` gets none.
    handlers:
        Task type → callable.  Defaults to :data:`~docrag.pipeline.tasks.TASK_HANDLERS`.
        Process contexts need module-level (picklable) callables.
    result_ttl:
        Seconds a finished task's outcome is kept for :meth:`result`; older
        uncollected outcomes are dropped when new work is submitted.
    """

    def __init__(
        self,
        max_workers: int = 4,
        kind: Literal["process", "thread"] = "process",
        default_timeout: float = 300.0,
        handlers: Mapping[str, TaskHandler] | None = None,
        result_ttl: float = 300.0,
    ) -> None:
        self._max_workers = max(1, min(max_workers, MAX_WORKERS_CAP))
        self._kind = kind
        self._default_timeout = default_timeout
        self._handlers: dict[str, TaskHandler] = dict(handlers or TASK_HANDLERS)
        self._result_ttl = result_ttl

        self._contexts: dict[int, _WorkerContext] = {}
        self._context_ids = itertools.count(1)
        self._backlog: list[tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._records: dict[str, _TaskRecord] = {}
        self._running: set[asyncio.Task] = set()
        self._closed = False

        self._completed = 0
        self._failed = 0
        self._avg_task_ms = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def submit(
        self,
        task_type: str,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        timeout: float | None = None,
    ) -> str:
        """Queue a task and return its id; await :meth:`result` for the outcome.

        Raises
        ------
        WorkerPoolClosedError
            If the pool has been shut down.
        WorkerTaskError
            If no handler is registered for *task_type*.
        """
        if self._closed:
            raise WorkerPoolClosedError(provider_name="worker_pool")
        if task_type not in self._handlers:
            raise WorkerTaskError(f"Unknown task type: {task_type}", provider_name="worker_pool")

        task = WorkerTask(
            id=uuid.uuid4().hex,
            type=task_type,
            payload=payload or {},
            priority=priority,
            timeout=timeout or self._default_timeout,
        )
        self._prune_finished()
        record = _TaskRecord(task=task, outcome=asyncio.get_running_loop().create_future())
        self._records[task.id] = record
        heapq.heappush(self._backlog, (-priority, next(self._sequence), task.id))
        logger.debug("worker_task_submitted", task_id=task.id, type=task_type, priority=priority)
        self._dispatch()
        return task.id

    async def result(self, task_id: str) -> Any:
        """Await the outcome of a submitted task.

        Raises
        ------
        WorkerTaskError, WorkerTimeoutError, WorkerCrashedError
            When the task failed.
        asyncio.CancelledError
            When the task was cancelled.
        KeyError
            If *task_id* is unknown, its result was already consumed or it
            expired after ``result_ttl``.
        """
        record = self._records[task_id]
        try:
            return await asyncio.shield(record.outcome)
        finally:
            if record.outcome.done():
                self._records.pop(task_id, None)

    async def run(
        self,
        task_type: str,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        timeout: float | None = None,
    ) -> Any:
        """Submit a task and await its result."""
        return await self.result(self.submit(task_type, payload, priority, timeout))

    def cancel(self, task_id: str) -> bool:
        """Cancel a task.

        A queued task is dropped from the backlog.  A running task cannot be
        interrupted; its result is discarded when it finishes.  Returns
        ``False`` if the task is unknown or already finished.
        """
        record = self._records.get(task_id)
        if record is None or record.outcome.done():
            return False
        record.cancelled = True
        record.outcome.cancel()
        self._records.pop(task_id, None)
        logger.info("worker_task_cancelled", task_id=task_id, running=record.started_at is not None)
        return True

    async def shutdown(self, wait_timeout: float = 30.0) -> None:
        """Stop accepting tasks, wait for running ones, then close all contexts."""
        if self._closed:
            return
        self._closed = True
        for _, _, task_id in self._backlog:
            record = self._records.pop(task_id, None)
            if record and not record.outcome.done():
                record.outcome.set_exception(WorkerPoolClosedError(provider_name="worker_pool"))
        self._backlog.clear()

        if self._running:
            _, pending = await asyncio.wait(set(self._running), timeout=wait_timeout)
            if pending:
                logger.warning("worker_pool_shutdown_timeout", still_running=len(pending))
        for ctx in list(self._contexts.values()):
            self._teardown(ctx, reason="shutdown")
        logger.info("worker_pool_shutdown", completed=self._completed, failed=self._failed)

    def stats(self) -> WorkerPoolStats:
        active = sum(1 for c in self._contexts.values() if c.busy)
        return WorkerPoolStats(
            total_workers=len(self._contexts),
            active_workers=active,
            idle_workers=len(self._contexts) - active,
            max_workers=self._max_workers,
            backlog=self.backlog_size,
            tasks_completed=self._completed,
            tasks_failed=self._failed,
            avg_task_time_ms=round(self._avg_task_ms, 3),
        )

    @property
    def backlog_size(self) -> int:
        return sum(1 for _, _, tid in self._backlog if tid in self._records)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _dispatch(self) -> None:
        while self._backlog and not self._closed:
            ctx = self._idle_context()
            if ctx is None:
                return
            record = self._pop_next()
            if record is None:
                return
            ctx.busy = True
            ctx.task_id = record.task.id
            runner = asyncio.create_task(self._execute(ctx, record), name=f"worker-{ctx.id}")
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    def _idle_context(self) -> _WorkerContext | None:
        for ctx in self._contexts.values():
            if not ctx.busy:
                return ctx
        if len(self._contexts) < self._max_workers:
            ctx = _WorkerContext(id=next(self._context_ids), executor=self._new_executor())
            self._contexts[ctx.id] = ctx
            logger.debug("worker_context_created", worker_id=ctx.id, total=len(self._contexts))
            return ctx
        return None

    def _pop_next(self) -> _TaskRecord | None:
        while self._backlog:
            _, _, task_id = heapq.heappop(self._backlog)
            record = self._records.get(task_id)
            if record is not None and not record.cancelled:
                return record
        return None

    def _new_executor(self) -> Executor:
        if self._kind == "thread":
            return ThreadPoolExecutor(max_workers=1, thread_name_prefix="docrag-worker")
        return ProcessPoolExecutor(max_workers=1, mp_context=multiprocessing.get_context("spawn"))

    async def _execute(self, ctx: _WorkerContext, record: _TaskRecord) -> None:
        task = record.task
        handler = self._handlers[task.type]
        record.started_at = time.monotonic()
        healthy = True
        try:
            outcome = asyncio.wrap_future(ctx.executor.submit(handler, task.payload))
            finished, _ = await asyncio.wait({outcome}, timeout=task.timeout)
            if not finished:
                outcome.cancel()
                healthy = False
                self._fail(record, WorkerTimeoutError(
                    f"Task {task.type} exceeded {task.timeout}s",
                    provider_name="worker_pool", task_id=task.id,
                ))
                return
            value = outcome.result()
        except (BrokenProcessPool, BrokenThreadPool) as exc:
            healthy = False
            self._fail(record, WorkerCrashedError(
                f"Worker {ctx.id} died running {task.type}: {exc}",
                provider_name="worker_pool", task_id=task.id,
            ))
        except Exception as exc:  # noqa: BLE001 - handler errors fail only the task
            self._fail(record, WorkerTaskError(
                f"Task {task.type} raised {type(exc).__name__}: {exc}",
                provider_name="worker_pool", task_id=task.id,
            ))
        else:
            self._complete(record, value)
        finally:
            if healthy:
                ctx.busy = False
                ctx.task_id = None
            else:
                self._teardown(ctx, reason="timeout_or_crash")
            self._dispatch()

    def _complete(self, record: _TaskRecord, value: Any) -> None:
        record.finished_at = time.monotonic()
        self._completed += 1
        elapsed_ms = (record.finished_at - (record.started_at or record.finished_at)) * 1000
        self._avg_task_ms += (elapsed_ms - self._avg_task_ms) / self._completed
        if record.cancelled or record.outcome.done():
            logger.debug("worker_result_discarded", task_id=record.task.id)
            return
        record.outcome.set_result(value)
        logger.debug("worker_task_completed", task_id=record.task.id, elapsed_ms=round(elapsed_ms, 2))

    def _fail(self, record: _TaskRecord, error: Exception) -> None:
        record.finished_at = time.monotonic()
        self._failed += 1
        logger.warning("worker_task_failed", task_id=record.task.id, type=record.task.type, error=str(error))
        if not record.outcome.done():
            record.outcome.set_exception(error)

    def _teardown(self, ctx: _WorkerContext, reason: str) -> None:
        self._contexts.pop(ctx.id, None)
        terminate = getattr(ctx.executor, "terminate_workers", None)
        if callable(terminate):
            terminate()
        else:
            # shutdown() alone leaves a hung child process running.
            for process in list((getattr(ctx.executor, "_processes", None) or {}).values()):
                if process.is_alive():
                    process.kill()
            ctx.executor.shutdown(wait=False, cancel_futures=True)
        logger.info("worker_context_removed", worker_id=ctx.id, reason=reason, total=len(self._contexts))

    def _prune_finished(self) -> None:
        cutoff = time.monotonic() - self._result_ttl
        expired = [
            task_id
            for task_id, record in self._records.items()
            if record.finished_at is not None and record.finished_at <= cutoff
        ]
        for task_id in expired:
            outcome = self._records.pop(task_id).outcome
            if outcome.done() and not outcome.cancelled():
                outcome.exception()
        if expired:
            logger.debug("worker_results_expired", count=len(expired))
