"""Job store: keyed job records plus a FIFO pending queue and a bounded history.

``JobStore`` is the only component that mutates job state. Callers go through
its narrow operation set (``create``, ``claim_next``, ``complete``, ``fail``)
so the pending queue always agrees with ``status == "queued"``.

Two implementations ship:

* ``MemoryJobStore``: process-local, every operation under one lock.
* ``SqlJobStore`` (``pulsar.services.sql_job_store``): SQLAlchemy, safe
  across processes.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from pulsar.errors import DuplicateJobIdError, InvalidTransitionError, JobNotFoundError
from pulsar.models.job import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
    TERMINAL_JOB_STATUSES,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 100
DEFAULT_HISTORY_WINDOW = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PaymentProof:
    """Settlement evidence attached to a job at creation."""

    tx_ref: str | None
    payer: str | None
    network: str | None = None


@dataclass
class Job:
    id: str
    title: str
    style: str
    status: str = JOB_STATUS_QUEUED
    payment_proof: PaymentProof | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    result: list[str] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def payer(self) -> str | None:
        return self.payment_proof.payer if self.payment_proof else None


@dataclass(frozen=True)
class JobStats:
    queue_length: int
    history_length: int
    recent_completed_count: int
    recent_failed_count: int


class JobStore(ABC):
    """Storage contract for jobs, the pending queue and the history list."""

    def __init__(
        self,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ) -> None:
        if history_capacity < 1:
            raise ValueError("history_capacity must be at least 1")
        self.history_capacity = history_capacity
        self.history_window = history_window

    @abstractmethod
    def create(
        self,
        job_id: str,
        title: str,
        style: str,
        payment_proof: PaymentProof | None = None,
    ) -> Job:
        """Insert a queued job and append it to the queue tail.

        Raises:
            DuplicateJobIdError: ``job_id`` already exists.
        """

    @abstractmethod
    def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    def list_queued(self) -> list[Job]:
        """Queued jobs, oldest-enqueued first."""

    @abstractmethod
    def queue_length(self) -> int: ...

    @abstractmethod
    def claim_next(self) -> Job | None:
        """Atomically pop the oldest queued job and mark it ``processing``.

        Returns ``None`` when the queue is empty. Two concurrent callers never
        receive the same job.
        """

    @abstractmethod
    def complete(self, job_id: str, result: list[str]) -> Job:
        """Mark a queued or processing job ``completed`` and record it in history.

        Raises:
            JobNotFoundError: unknown ``job_id``.
            InvalidTransitionError: the job is already completed or failed.
        """

    @abstractmethod
    def fail(self, job_id: str, reason: str) -> Job:
        """Mark a queued or processing job ``failed``; same rules as ``complete``."""

    @abstractmethod
    def history(self, limit: int = DEFAULT_HISTORY_WINDOW) -> list[Job]:
        """Most recent terminal jobs, newest first."""

    @abstractmethod
    def history_length(self) -> int: ...

    def queue_position(self, job_id: str) -> int:
        """1-based position of ``job_id`` in the queue, or 0 if it is not queued."""
        for index, job in enumerate(self.list_queued(), start=1):
            if job.id == job_id:
                return index
        return 0

    def stats(self) -> JobStats:
        recent = self.history(self.history_window)
        return JobStats(
            queue_length=self.queue_length(),
            history_length=self.history_length(),
            recent_completed_count=sum(1 for j in recent if j.status == JOB_STATUS_COMPLETED),
            recent_failed_count=sum(1 for j in recent if j.status == JOB_STATUS_FAILED),
        )


def _snapshot(job: Job) -> Job:
    """Copy a stored job so callers cannot mutate store state."""
    return replace(job, result=list(job.result) if job.result is not None else None)


class MemoryJobStore(JobStore):
    """Process-local job store. Every operation runs under a single lock."""

    def __init__(
        self,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ) -> None:
        super().__init__(history_capacity, history_window)
        self._jobs: dict[str, Job] = {}
        self._queue: deque[str] = deque()
        self._history: deque[str] = deque(maxlen=history_capacity)
        self._lock = threading.Lock()

    def create(self, job_id, title, style, payment_proof=None):
        with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobIdError(job_id)
            job = Job(id=job_id, title=title, style=style, payment_proof=payment_proof)
            self._jobs[job_id] = job
            self._queue.append(job_id)
            snapshot = _snapshot(job)
        logger.info("Created job %s", job_id, extra={"job_id": job_id})
        return snapshot

    def get(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return _snapshot(job) if job else None

    def list_queued(self):
        with self._lock:
            return [_snapshot(self._jobs[job_id]) for job_id in self._queue]

    def queue_length(self):
        with self._lock:
            return len(self._queue)

    def queue_position(self, job_id):
        with self._lock:
            try:
                return self._queue.index(job_id) + 1
            except ValueError:
                return 0

    def claim_next(self):
        with self._lock:
            if not self._queue:
                return None
            job = self._jobs[self._queue.popleft()]
            job.status = JOB_STATUS_PROCESSING
            snapshot = _snapshot(job)
        logger.info("Claimed job %s", snapshot.id, extra={"job_id": snapshot.id})
        return snapshot

    def complete(self, job_id, result):
        job = self._finish(job_id, JOB_STATUS_COMPLETED, result=list(result))
        logger.info("Completed job %s", job_id, extra={"job_id": job_id})
        return job

    def fail(self, job_id, reason):
        job = self._finish(job_id, JOB_STATUS_FAILED, error=reason)
        logger.info("Failed job %s: %s", job_id, reason, extra={"job_id": job_id})
        return job

    def _finish(
        self,
        job_id: str,
        status: str,
        *,
        result: list[str] | None = None,
        error: str | None = None,
    ) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.is_terminal:
                raise InvalidTransitionError(job_id, job.status, status)
            if job.status == JOB_STATUS_QUEUED:
                # Finishing straight from the queue (admin path) dequeues it too.
                self._queue.remove(job_id)
            job.status = status
            job.completed_at = utcnow()
            job.result = result
            job.error = error
            self._history.append(job_id)
            return _snapshot(job)

    def history(self, limit=DEFAULT_HISTORY_WINDOW):
        with self._lock:
            recent = list(self._history)[-limit:] if limit > 0 else []
            return [_snapshot(self._jobs[job_id]) for job_id in reversed(recent)]

    def history_length(self):
        with self._lock:
            return len(self._history)
