"""Response/request schemas shared across routers. Wire names are camelCase."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from pulsar.services.job_store import Job


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobOut(CamelModel):
    """Full job record as returned to workers."""

    id: str
    title: str
    style: str
    status: str
    payer: str | None = None
    tx_ref: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    result: list[str] | None = None
    error: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        return cls(
            id=job.id,
            title=job.title,
            style=job.style,
            status=job.status,
            payer=job.payer,
            tx_ref=job.payment_proof.tx_ref if job.payment_proof else None,
            created_at=job.created_at,
            completed_at=job.completed_at,
            result=job.result,
            error=job.error,
        )


class QueuedJobOut(CamelModel):
    """Inspection view of a queued job."""

    job_id: str
    title: str
    style: str
    created_at: datetime
    payer: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> "QueuedJobOut":
        return cls(
            job_id=job.id,
            title=job.title,
            style=job.style,
            created_at=job.created_at,
            payer=job.payer,
        )
