"""Paid generation endpoint.

Implements:
  POST /api/generate — x402-paid job submission

Payment travels in the ``X-PAYMENT`` header (base64 JSON). Every payment
problem answers 402 with fresh payment instructions under ``accepts``; a
missing title/style answers 400 without settling.
"""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from pulsar.api.schemas import CamelModel
from pulsar.config import settings
from pulsar.deps import get_submission_service
from pulsar.errors import InvalidSubmissionError, PaymentRequiredError
from pulsar.logging_config import get_request_id
from pulsar.services.payment_gate import (
    X402_VERSION,
    PaymentGate,
    PaymentRequirement,
    encode_settlement_header,
    get_payment_gate,
)
from pulsar.services.submission import JobSubmissionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["generate"])

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PaymentSummary(CamelModel):
    transaction: str | None
    amount: str
    payer: str | None


class GenerateResponse(CamelModel):
    success: bool = True
    job_id: str
    status: str
    position: int
    estimated_wait_seconds: int
    message: str
    status_url: str
    created_at: datetime
    payment: PaymentSummary


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resource_url(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}{request.url.path}"


def _payment_required(
    error: str, requirement: PaymentRequirement, request_id: str | None = None
) -> JSONResponse:
    content: dict[str, Any] = {
        "x402Version": X402_VERSION,
        "error": error,
        "accepts": [requirement.to_dict(include_extensions=True)],
    }
    if request_id:
        content["requestId"] = request_id
    return JSONResponse(status_code=402, content=content)


async def _read_json(request: Request) -> Any:
    """Parsed JSON body, or None when the body is empty or not JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.post(
    "/generate",
    status_code=202,
    response_model=GenerateResponse,
    summary="Submit a paid generation job",
    responses={
        400: {"description": "Missing title or style (payment not settled)"},
        402: {"description": "Payment required; body lists accepted payment requirements"},
    },
)
async def generate(
    request: Request,
    service: Annotated[JobSubmissionService, Depends(get_submission_service)],
    gate: Annotated[PaymentGate, Depends(get_payment_gate)],
) -> JSONResponse:
    """Verify the x402 payment, settle it and enqueue a generation job."""
    resource_url = _resource_url(request)
    payload = await _read_json(request)

    try:
        receipt = await service.submit(request.headers.get(PAYMENT_HEADER), payload, resource_url)
    except PaymentRequiredError as exc:
        return _payment_required(exc.reason, exc.requirement, exc.request_id)
    except InvalidSubmissionError as exc:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Missing required fields", "message": exc.message},
        )
    except Exception:
        logger.exception("Unexpected error while processing paid submission")
        return _payment_required(
            "Internal server error during payment processing",
            gate.build_requirement(resource_url),
            get_request_id(),
        )

    job = receipt.job
    body = GenerateResponse(
        job_id=job.id,
        status=job.status,
        position=receipt.position,
        estimated_wait_seconds=receipt.estimated_wait_seconds,
        message=f'Your track "{job.title}" is queued. Poll {receipt.status_url} for updates.',
        status_url=receipt.status_url,
        created_at=job.created_at,
        payment=PaymentSummary(
            transaction=receipt.settlement.tx_ref,
            amount=settings.price_display,
            payer=job.payer,
        ),
    )
    return JSONResponse(
        status_code=202,
        content=body.model_dump(mode="json", by_alias=True),
        headers={PAYMENT_RESPONSE_HEADER: encode_settlement_header(receipt.settlement)},
    )
