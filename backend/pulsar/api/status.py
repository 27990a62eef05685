"""Job status polling.

Implements:
  GET /api/status/{job_id} — current state, queue position, results
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from pulsar.api.schemas import CamelModel
from pulsar.deps import get_status_service
from pulsar.errors import JobNotFoundError
from pulsar.services.status import StatusQueryService

router = APIRouter(prefix="/api/status", tags=["status"])


class JobStatusResponse(CamelModel):
    """Fields present depend on ``status``; absent ones are omitted."""

    success: bool = True
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


@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    response_model_exclude_none=True,
    responses={404: {"description": "Job not found"}},
)
def get_status(
    job_id: str,
    service: Annotated[StatusQueryService, Depends(get_status_service)],
):
    try:
        view = service.get_status(job_id)
    except JobNotFoundError:
        return JSONResponse(
            status_code=404,
            content={
                "success": False,
                "error": "Job not found",
                "message": "Invalid job ID or job has expired",
            },
        )

    return JobStatusResponse(
        job_id=view.job_id,
        status=view.status,
        title=view.title,
        style=view.style,
        message=view.message,
        created_at=view.created_at,
        position=view.position,
        estimated_wait_seconds=view.estimated_wait_seconds,
        result=view.result,
        completed_at=view.completed_at,
        delivery_seconds=view.delivery_seconds,
        error=view.error,
    )
