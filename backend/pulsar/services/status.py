"""Status query: read-only view of a job for polling clients."""

import math
from dataclasses import dataclass
from datetime import datetime

from pulsar.errors import JobNotFoundError
from pulsar.models.job import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
)
from pulsar.services.job_store import JobStore


@dataclass(frozen=True)
class JobStatusView:
    job_id: str
    status: str
    title: str
    style: str
    message: str
    created_at: datetime
    position: int | None = None
    estimated_wait_seconds: int | None = None
    result: list[str] | None = None
    completed_at: datetime | None = None
    delivery_seconds: float | None = None
    error: str | None = None


def _status_message(status: str, position: int, average_seconds: int) -> str:
    if status == JOB_STATUS_QUEUED:
        minutes = math.ceil(position * average_seconds / 60)
        return f"Your track is #{position} in queue. Estimated wait: ~{minutes} minutes."
    if status == JOB_STATUS_PROCESSING:
        return f"Your track is being generated now. This typically takes about {average_seconds} seconds."
    if status == JOB_STATUS_COMPLETED:
        return "Your tracks are ready! URLs are valid for streaming and download."
    if status == JOB_STATUS_FAILED:
        return "Generation failed. Contact support for assistance."
    return "Unknown status"


class StatusQueryService:
    def __init__(self, store: JobStore, *, estimated_generation_seconds: int = 90) -> None:
        self._store = store
        self._average_seconds = estimated_generation_seconds

    def get_status(self, job_id: str) -> JobStatusView:
        """Project the job's current state.

        Raises:
            JobNotFoundError: unknown ``job_id``.
        """
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        position = 0
        fields: dict = {}
        if job.status == JOB_STATUS_QUEUED:
            # A claim may land between get() and here; then the job simply reads as next up.
            position = self._store.queue_position(job_id) or 1
            fields = {
                "position": position,
                "estimated_wait_seconds": position * self._average_seconds,
            }
        elif job.status == JOB_STATUS_PROCESSING:
            fields = {"estimated_wait_seconds": self._average_seconds}
        elif job.status == JOB_STATUS_COMPLETED:
            fields = {
                "result": job.result,
                "completed_at": job.completed_at,
                "delivery_seconds": (
                    (job.completed_at - job.created_at).total_seconds()
                    if job.completed_at
                    else None
                ),
            }
        elif job.status == JOB_STATUS_FAILED:
            fields = {"error": job.error, "completed_at": job.completed_at}

        return JobStatusView(
            job_id=job.id,
            status=job.status,
            title=job.title,
            style=job.style,
            message=_status_message(job.status, position, self._average_seconds),
            created_at=job.created_at,
            **fields,
        )
