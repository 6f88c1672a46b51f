"""Job and worker-task records for the asynchronous substrate.

Unlike the frozen document models, :class:`Job` is a mutable lifecycle
record: the queue updates ``status``, ``attempts`` and the timestamps in
place as the job moves between lanes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from docrag.models.document import utcnow

HIGH_PRIORITY_THRESHOLD = 5
LOW_PRIORITY_THRESHOLD = 0


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class Lane(str, Enum):
    """Queue lanes, served high → normal → low."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    DELAYED = "delayed"

    @classmethod
    def for_priority(cls, priority: int) -> Lane:
        """Map a job priority to its lane: > 5 high, < 0 low, otherwise normal."""
        if priority > HIGH_PRIORITY_THRESHOLD:
            return cls.HIGH
        if priority < LOW_PRIORITY_THRESHOLD:
            return cls.LOW
        return cls.NORMAL


class Job(BaseModel):
    """A unit of background work with retry state."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    delay: float = Field(default=0.0, ge=0.0, description="Initial delay in seconds.")
    status: JobStatus = JobStatus.WAITING
    created_at: datetime = Field(default_factory=utcnow)
    # When the job became eligible to run; anti-starvation ages from here.
    enqueued_at: datetime = Field(default_factory=utcnow)
    scheduled_for: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    error: str | None = None
    result: Any = None

    @property
    def lane(self) -> Lane:
        return Lane.for_priority(self.priority)


class WorkerTask(BaseModel):
    """A CPU-bound task waiting for, or running in, a worker context."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    timeout: float = Field(default=300.0, gt=0)
    created_at: datetime = Field(default_factory=utcnow)
