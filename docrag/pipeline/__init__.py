"""Asynchronous job substrate: priority job queue, worker pool and progress tracking."""

from docrag.pipeline.job_queue import JobQueue
from docrag.pipeline.progress_tracker import ProgressTracker
from docrag.pipeline.worker_pool import WorkerPool

__all__ = ["JobQueue", "ProgressTracker", "WorkerPool"]
