"""Priority job queue with delayed retries.

# ─── HOW THE JOB QUEUE WORKS ──────────────────────────────────────────
#
#   enqueue(priority > 5)  ──→ high lane   ─┐
#   enqueue(0 ≤ p ≤ 5)     ──→ normal lane ─┼──→ scheduler ──→ processor(job)
#   enqueue(priority < 0)  ──→ low lane    ─┘      ▲   (≤ concurrency at once)
#   enqueue(delay > 0)     ──→ delayed heap ───────┘ when scheduled_for ≤ now
#
# Lanes are FIFO and drained strictly high → normal → low, except that a
# job stuck in a lower lane for longer than ``starvation_threshold`` is
# dispatched ahead of the higher lanes.
#
# A failing job goes back to the delayed heap with exponential backoff
# (RetryPolicy.backoff) until it has run ``max_attempts`` times, then it
# is marked failed and the failure listeners are notified.  Errors in
# PERMANENT_ERRORS skip the retries.
#
# State lives in-process: jobs are not persisted across restarts.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import collections
import heapq
import itertools
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from docrag.models.jobs import Job, JobStatus, Lane
from docrag.models.stats import QueueStats
from docrag.utils.errors import (
    ConfigurationError,
    DocumentNotFoundError,
    DocumentValidationError,
    JobTimeoutError,
    PermanentJobError,
)
from docrag.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)

Processor = Callable[[Job], Awaitable[Any]]
FailureListener = Callable[[Job, BaseException], Any]

PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    PermanentJobError,
    DocumentNotFoundError,
    DocumentValidationError,
    ConfigurationError,
)

_LANE_ORDER = (Lane.HIGH, Lane.NORMAL, Lane.LOW)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """In-process polling job queue.

    Parameters
    ----------
    concurrency:
        Maximum jobs executing at once.
    poll_interval:
        Seconds between scheduler passes when nothing wakes it earlier.
    retry_delay, max_retry_delay:
        Backoff base and cap for failed jobs.
    max_attempts:
        Default attempt budget per job.
    job_timeout:
        Seconds a single execution may take before it counts as a failure.
    job_ttl:
        Seconds finished jobs are kept for :meth:`status` lookups.
    cleanup_interval:
        Seconds between sweeps of expired finished jobs.
    starvation_threshold:
        Seconds after which a waiting lower-lane job jumps the lanes.
    """

    def __init__(
        self,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        retry_delay: float = 1.0,
        max_retry_delay: float = 300.0,
        max_attempts: int = 3,
        job_timeout: float = 300.0,
        job_ttl: float = 24 * 3600,
        cleanup_interval: float = 300.0,
        starvation_threshold: float = 300.0,
    ) -> None:
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._job_timeout = job_timeout
        self._job_ttl = timedelta(seconds=job_ttl)
        self._cleanup_interval = cleanup_interval
        self._starvation = timedelta(seconds=starvation_threshold)
        self._retry = RetryPolicy(
            max_attempts=max_attempts,
            base_delay=retry_delay,
            max_delay=max_retry_delay,
            retryable=lambda exc: not isinstance(exc, PERMANENT_ERRORS),
            name="job",
        )

        self._jobs: dict[str, Job] = {}
        self._lanes: dict[Lane, collections.deque[str]] = {
            lane: collections.deque() for lane in _LANE_ORDER
        }
        self._delayed: list[tuple[datetime, int, str]] = []
        self._sequence = itertools.count()
        self._processors: dict[str, Processor] = {}
        self._failure_listeners: list[FailureListener] = []
        self._active: dict[str, asyncio.Task] = {}
        self._finished_events: dict[str, asyncio.Event] = {}

        self._wake = asyncio.Event()
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_processor(self, job_type: str, processor: Processor) -> None:
        """Register the coroutine function that executes jobs of *job_type*."""
        self._processors[job_type] = processor
        logger.debug("job_processor_registered", job_type=job_type)

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Call ``listener(job, error)`` whenever a job fails permanently."""
        self._failure_listeners.append(listener)

    @property
    def processors(self) -> list[str]:
        return sorted(self._processors)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        delay: float = 0.0,
        max_attempts: int | None = None,
    ) -> str:
        """Add a job and return its id.

        Jobs with ``delay > 0`` wait in the delayed lane until due; others go
        straight to the lane their priority maps to.
        """
        job = Job(
            id=uuid.uuid4().hex,
            type=job_type,
            payload=payload or {},
            priority=priority,
            delay=max(0.0, delay),
            max_attempts=max_attempts or self._retry.max_attempts,
        )
        self._jobs[job.id] = job
        if job.delay > 0:
            self._schedule(job, job.delay)
        else:
            self._lanes[job.lane].append(job.id)
        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job_type,
            priority=priority,
            lane=Lane.DELAYED.value if job.delay > 0 else job.lane.value,
        )
        self._wake.set()
        return job.id

    def status(self, job_id: str) -> Job | None:
        """Return a snapshot of the job, or ``None`` if unknown or expired."""
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    def cancel(self, job_id: str) -> bool:
        """Cancel a waiting, delayed or active job.

        An active job keeps running but its outcome is discarded.  Returns
        ``False`` for unknown or already-finished jobs.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        was_active = job.status is JobStatus.ACTIVE
        for lane in self._lanes.values():
            try:
                lane.remove(job_id)
            except ValueError:
                pass
        job.status = JobStatus.CANCELLED
        job.cancelled_at = _now()
        self._mark_finished(job)
        logger.info("job_cancelled", job_id=job_id, was_active=was_active)
        return True

    def cancel_matching(self, job_type: str, payload: dict[str, Any]) -> list[str]:
        """Cancel every unfinished *job_type* job whose payload contains *payload*.

        Returns the ids of the jobs that were cancelled.
        """
        matching = [
            job.id
            for job in self._jobs.values()
            if job.type == job_type
            and not job.status.is_terminal
            and all(job.payload.get(k) == v for k, v in payload.items())
        ]
        return [job_id for job_id in matching if self.cancel(job_id)]

    async def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait until the job reaches a terminal state and return its snapshot.

        Raises
        ------
        KeyError
            If the job is unknown.
        asyncio.TimeoutError
            If it does not finish within *timeout* seconds.
        """
        job = self._jobs[job_id]
        if not job.status.is_terminal:
            event = self._finished_events.setdefault(job_id, asyncio.Event())
            await asyncio.wait_for(event.wait(), timeout)
        return self._jobs[job_id].model_copy()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="job-queue-loop")
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="job-queue-cleanup")
        logger.info("job_queue_started", concurrency=self._concurrency, processors=self.processors)

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop scheduling and wait up to *drain_timeout* for active jobs."""
        if not self._running:
            return
        self._running = False
        self._wake.set()
        for task in (self._loop_task, self._cleanup_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = self._cleanup_task = None

        if self._active:
            _, pending = await asyncio.wait(set(self._active.values()), timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("job_queue_stop_timeout", abandoned=len(pending))
        logger.info("job_queue_stopped")

    @property
    def running(self) -> bool:
        return self._running

    def lane_counts(self) -> dict[str, int]:
        counts = {lane.value: len(q) for lane, q in self._lanes.items()}
        counts[Lane.DELAYED.value] = sum(
            1 for _, _, jid in self._delayed
            if (j := self._jobs.get(jid)) is not None and j.status is JobStatus.WAITING
        )
        return counts

    def stats(self) -> QueueStats:
        by_status = collections.Counter(job.status for job in self._jobs.values())
        lanes = self.lane_counts()
        return QueueStats(
            waiting=by_status[JobStatus.WAITING] - lanes[Lane.DELAYED.value],
            active=by_status[JobStatus.ACTIVE],
            delayed=lanes[Lane.DELAYED.value],
            completed=by_status[JobStatus.COMPLETED],
            failed=by_status[JobStatus.FAILED],
            cancelled=by_status[JobStatus.CANCELLED],
            lanes=lanes,
            processors=self.processors,
        )

    def cleanup(self, now: datetime | None = None) -> int:
        """Purge finished jobs older than ``job_ttl``; returns how many were removed."""
        now = now or _now()
        expired = [
            job.id
            for job in self._jobs.values()
            if job.status.is_terminal
            and (finished := job.completed_at or job.failed_at or job.cancelled_at) is not None
            and now - finished > self._job_ttl
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._finished_events.pop(job_id, None)
        if expired:
            logger.info("jobs_cleaned_up", removed=len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        while self._running:
            self._wake.clear()
            self._promote_due()
            while len(self._active) < self._concurrency:
                job = self._next_job()
                if job is None:
                    break
                self._launch(job)
            try:
                await asyncio.wait_for(self._wake.wait(), self._next_wakeup())
            except asyncio.TimeoutError:
                pass

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._cleanup_interval)
            self.cleanup()

    def _next_wakeup(self) -> float:
        if not self._delayed:
            return self._poll_interval
        until_due = (self._delayed[0][0] - _now()).total_seconds()
        return max(0.0, min(self._poll_interval, until_due))

    def _schedule(self, job: Job, delay: float) -> None:
        job.scheduled_for = _now() + timedelta(seconds=delay)
        heapq.heappush(self._delayed, (job.scheduled_for, next(self._sequence), job.id))

    def _promote_due(self) -> None:
        now = _now()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.WAITING:
                continue
            job.enqueued_at = now
            self._lanes[job.lane].append(job_id)
            logger.debug("delayed_job_promoted", job_id=job_id, lane=job.lane.value)

    def _next_job(self) -> Job | None:
        now = _now()
        # Oldest over-threshold head of a lower lane wins.
        starving: Job | None = None
        for lane in (Lane.NORMAL, Lane.LOW):
            queue = self._lanes[lane]
            if queue:
                head = self._jobs[queue[0]]
                if now - head.enqueued_at > self._starvation and (
                    starving is None or head.enqueued_at < starving.enqueued_at
                ):
                    starving = head
        if starving is not None:
            self._lanes[starving.lane].popleft()
            logger.info("starving_job_promoted", job_id=starving.id, lane=starving.lane.value)
            return starving

        for lane in _LANE_ORDER:
            if self._lanes[lane]:
                return self._jobs[self._lanes[lane].popleft()]
        return None

    def _launch(self, job: Job) -> None:
        job.status = JobStatus.ACTIVE
        job.attempts += 1
        job.started_at = _now()
        task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
        self._active[job.id] = task

    async def _execute(self, job: Job) -> None:
        log = logger.bind(job_id=job.id, job_type=job.type, attempt=job.attempts)
        processor = self._processors.get(job.type)
        try:
            if processor is None:
                raise PermanentJobError(f"No processor registered for {job.type!r}", provider_name="job_queue")
            try:
                result = await asyncio.wait_for(processor(job.model_copy()), self._job_timeout)
            except asyncio.TimeoutError as exc:
                raise JobTimeoutError(
                    f"Job exceeded {self._job_timeout}s", provider_name="job_queue", job_id=job.id
                ) from exc
        except asyncio.CancelledError:
            if job.status is JobStatus.ACTIVE:
                # Interrupted by stop(); put it back so a restart picks it up.
                job.status = JobStatus.WAITING
                self._lanes[job.lane].appendleft(job.id)
            log.warning("job_interrupted")
            raise
        except Exception as exc:  # noqa: BLE001 - processors may raise anything
            await self._handle_failure(job, exc, log)
        else:
            if job.status is JobStatus.CANCELLED:
                log.info("job_result_discarded")
            else:
                job.status = JobStatus.COMPLETED
                job.result = result
                job.error = None
                job.completed_at = _now()
                self._mark_finished(job)
                log.info("job_completed")
        finally:
            self._active.pop(job.id, None)
            self._wake.set()

    async def _handle_failure(self, job: Job, exc: Exception, log: Any) -> None:
        if job.status is JobStatus.CANCELLED:
            log.info("job_failure_discarded", error=str(exc))
            return
        job.error = str(exc)
        if self._retry.is_retryable(exc) and job.attempts < job.max_attempts:
            delay = self._retry.backoff(job.attempts)
            job.status = JobStatus.WAITING
            self._schedule(job, delay)
            log.warning("job_retry_scheduled", error=str(exc), delay=delay, max_attempts=job.max_attempts)
            return

        job.status = JobStatus.FAILED
        job.failed_at = _now()
        self._mark_finished(job)
        log.error("job_failed", error=str(exc), max_attempts=job.max_attempts)
        for listener in self._failure_listeners:
            try:
                outcome = listener(job.model_copy(), exc)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as listener_exc:  # noqa: BLE001
                log.warning("job_failure_listener_error", error=str(listener_exc))

    def _mark_finished(self, job: Job) -> None:
        event = self._finished_events.pop(job.id, None)
        if event is not None:
            event.set()
