"""Job submission: turns a paid generation request into a queued job.

Ordering is what protects the payer:

    decode credential → verify → validate title/style → settle → create job

Validation happens *after* verification (so unpaid callers learn the price
first) but *before* settlement, so a request that can never produce a job
never moves money. A job is only created once settlement has succeeded, and
it carries the settlement's transaction reference as payment proof.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any

from starlette.concurrency import run_in_threadpool

from pulsar.errors import (
    DuplicateJobIdError,
    FacilitatorRejectedError,
    InvalidSubmissionError,
    MalformedCredentialError,
    PaymentError,
    PaymentRequiredError,
)
from pulsar.logging_config import get_request_id, new_request_id
from pulsar.services.job_store import Job, JobStore, PaymentProof
from pulsar.services.notifier import TelegramNotifier, fire_and_forget
from pulsar.services.payment_gate import (
    PaymentGate,
    SettlementResult,
    decode_credential,
)

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    """16 hex chars (8 random bytes)."""
    return secrets.token_hex(8)


def status_url_for(job_id: str) -> str:
    return f"/api/status/{job_id}"


@dataclass(frozen=True)
class SubmissionReceipt:
    job: Job
    position: int
    estimated_wait_seconds: int
    status_url: str
    settlement: SettlementResult
    request_id: str


def _log_payment_failure(step: str, exc: PaymentError, log_extra: dict[str, Any]) -> None:
    if isinstance(exc, FacilitatorRejectedError):
        logger.warning(
            "Payment %s failed: %s",
            step,
            exc,
            extra={**log_extra, "facilitator_status": exc.status_code},
        )
    else:
        logger.error("Payment %s unavailable: %s", step, exc, extra=log_extra)


def validate_generation_params(payload: Any) -> tuple[str, str]:
    """Return stripped ``(title, style)`` or raise ``InvalidSubmissionError``."""
    if not isinstance(payload, dict):
        raise InvalidSubmissionError("Request body must be a JSON object with 'title' and 'style'")

    title = payload.get("title")
    style = payload.get("style")
    if not isinstance(title, str) or not isinstance(style, str) or not title.strip() or not style.strip():
        raise InvalidSubmissionError("Both 'title' and 'style' are required")
    return title.strip(), style.strip()


class JobSubmissionService:
    """Runs the payment protocol and enqueues the resulting job."""

    def __init__(
        self,
        store: JobStore,
        gate: PaymentGate,
        notifier: TelegramNotifier | None = None,
        *,
        estimated_generation_seconds: int = 90,
    ) -> None:
        self._store = store
        self._gate = gate
        self._notifier = notifier
        self._estimated_generation_seconds = estimated_generation_seconds

    async def submit(
        self,
        raw_credential: str | None,
        payload: Any,
        resource_url: str,
    ) -> SubmissionReceipt:
        """Verify and settle payment, then create the job.

        Raises:
            PaymentRequiredError: missing/undecodable credential, failed
                verification or settlement, or facilitator unreachable.
            InvalidSubmissionError: title/style missing (payment not settled).
        """
        requirement = self._gate.build_requirement(resource_url)
        # Outside an HTTP request (worker scripts, tests) there is no bound id.
        request_id = get_request_id() or new_request_id()

        if not raw_credential:
            raise PaymentRequiredError("X-PAYMENT header is required", requirement, request_id)

        log_extra: dict[str, Any] = {"request_id": request_id}

        try:
            credential = decode_credential(raw_credential)
        except MalformedCredentialError as exc:
            logger.warning(
                "Undecodable payment header: %s",
                exc,
                extra={**log_extra, "header_length": len(raw_credential)},
            )
            raise PaymentRequiredError("Invalid payment format", requirement, request_id) from exc

        log_extra["credential"] = credential.summary()

        # --- 1. Verify ---
        try:
            verification = await self._gate.verify(credential, requirement)
            verification.raise_for_failure()
        except PaymentError as exc:
            _log_payment_failure("verification", exc, log_extra)
            raise PaymentRequiredError(str(exc), requirement, request_id) from exc

        logger.info("Payment verified for payer %s", verification.payer, extra=log_extra)

        # --- 2. Validate business input (must precede settlement) ---
        title, style = validate_generation_params(payload)

        # --- 3. Settle ---
        try:
            settlement = await self._gate.settle(credential, requirement)
            settlement.raise_for_failure()
        except PaymentError as exc:
            _log_payment_failure("settlement", exc, log_extra)
            raise PaymentRequiredError(str(exc), requirement, request_id) from exc

        logger.info("Payment settled, tx %s", settlement.tx_ref, extra=log_extra)

        # --- 4. Create ---
        proof = PaymentProof(
            tx_ref=settlement.tx_ref,
            payer=settlement.payer or verification.payer,
            network=settlement.network,
        )
        job = await self._create_job(title, style, proof, log_extra)

        position = await run_in_threadpool(self._store.queue_position, job.id)
        if not position:
            # Already claimed by a worker between create and now.
            position = 1

        if self._notifier is not None:
            fire_and_forget(self._notifier.notify_new_order(job), name=f"notify-{job.id}")

        return SubmissionReceipt(
            job=job,
            position=position,
            estimated_wait_seconds=position * self._estimated_generation_seconds,
            status_url=status_url_for(job.id),
            settlement=settlement,
            request_id=request_id,
        )

    async def _create_job(
        self, title: str, style: str, proof: PaymentProof, log_extra: dict[str, Any]
    ) -> Job:
        try:
            job = await run_in_threadpool(self._store.create, new_job_id(), title, style, proof)
        except DuplicateJobIdError:
            # 64-bit ids; one retry with a fresh id is plenty.
            job = await run_in_threadpool(self._store.create, new_job_id(), title, style, proof)
        except Exception:
            logger.exception(
                "Payment settled but job creation failed (tx %s)", proof.tx_ref, extra=log_extra
            )
            raise

        logger.info("Job %s created for %r", job.id, title, extra={**log_extra, "job_id": job.id})
        return job
