"""Worker API: queue inspection, claiming and job completion.

Implements:
  GET  /api/worker?action=status          — queue stats (public)
  GET  /api/worker?action=history[&limit] — recent finished jobs (public)
  GET  /api/worker?action=claim           — claim the oldest queued job (auth)
  GET  /api/worker                        — list queued jobs without claiming (auth)
  POST /api/worker {action: complete|fail} — report a job outcome (auth)

Auth: ``Authorization: Bearer <secret>``, ``X-Worker-Secret`` or ``?secret=``.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from pulsar.api.schemas import CamelModel, JobOut, QueuedJobOut
from pulsar.deps import get_worker_control
from pulsar.errors import InvalidTransitionError, JobNotFoundError
from pulsar.services.worker_control import WorkerControlService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/worker", tags=["worker"])

WorkerControl = Annotated[WorkerControlService, Depends(get_worker_control)]


class WorkerActionRequest(CamelModel):
    action: str | None = None
    job_id: str | None = None
    result: list[str] | None = None
    audio_url: str | None = None
    song_url: str | None = None
    error: str | None = None

    def result_urls(self) -> list[str]:
        if self.result:
            return [url for url in self.result if url]
        return [url for url in (self.audio_url, self.song_url) if url]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _unauthorized() -> JSONResponse:
    return _error(401, "Unauthorized")


@router.get("")
def worker_get(
    request: Request,
    control: WorkerControl,
    action: str | None = None,
    limit: Annotated[int | None, Query()] = None,
    secret: Annotated[str | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
    x_worker_secret: Annotated[str | None, Header()] = None,
):
    if action == "status":
        stats = control.stats()
        return {
            "queueLength": stats.queue_length,
            "historyLength": stats.history_length,
            "recentCompletedCount": stats.recent_completed_count,
            "recentFailedCount": stats.recent_failed_count,
        }

    if action == "history":
        jobs = control.history(limit)
        return {"jobs": [JobOut.from_job(j).model_dump(mode="json", by_alias=True) for j in jobs]}

    if not control.is_authorized(authorization, x_worker_secret, secret):
        logger.warning(
            "Unauthorized worker request",
            extra={"action": action, "client": request.client.host if request.client else None},
        )
        return _unauthorized()

    if action == "claim":
        job = control.claim()
        if job is None:
            return {"job": None, "message": "No jobs in queue"}
        return {"job": JobOut.from_job(job).model_dump(mode="json", by_alias=True)}

    jobs = control.list_queued()
    return {"jobs": [QueuedJobOut.from_job(j).model_dump(mode="json", by_alias=True) for j in jobs]}


@router.post("")
async def worker_post(
    request: Request,
    control: WorkerControl,
    secret: Annotated[str | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
    x_worker_secret: Annotated[str | None, Header()] = None,
):
    if not control.is_authorized(authorization, x_worker_secret, secret):
        return _unauthorized()

    try:
        body = WorkerActionRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return _error(400, "Invalid JSON body")

    if not body.job_id:
        return _error(400, "Missing jobId")

    # Lookup precedes action and result validation.
    if await run_in_threadpool(control.get, body.job_id) is None:
        return _error(404, "Job not found")

    if body.action not in ("complete", "fail"):
        return _error(400, "Invalid action")

    try:
        if body.action == "complete":
            urls = body.result_urls()
            if not urls:
                return _error(400, "Missing result (result or audioUrl)")
            job = await run_in_threadpool(control.complete, body.job_id, urls)
        else:
            job = await run_in_threadpool(control.fail, body.job_id, body.error)
    except JobNotFoundError:
        return _error(404, "Job not found")
    except InvalidTransitionError as exc:
        return _error(409, str(exc))

    return {"success": True, "jobId": job.id, "status": job.status}
