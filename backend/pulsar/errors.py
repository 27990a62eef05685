"""Exception hierarchy shared by the job store, payment gate and services.

Services raise these; the API routers translate them into HTTP responses.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pulsar.services.payment_gate import PaymentRequirement


class JobStoreError(Exception):
    """Base exception for job store failures."""


class JobNotFoundError(JobStoreError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateJobIdError(JobStoreError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class InvalidTransitionError(JobStoreError):
    def __init__(self, job_id: str, current_status: str, target_status: str) -> None:
        super().__init__(
            f"Job {job_id} cannot transition from {current_status} to {target_status}"
        )
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status


class PaymentError(Exception):
    """Base exception for payment credential and facilitator failures."""


class MalformedCredentialError(PaymentError):
    pass


class FacilitatorUnreachableError(PaymentError):
    pass


class FacilitatorRejectedError(PaymentError):
    """The facilitator answered but refused the payment."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class VerificationFailedError(FacilitatorRejectedError):
    pass


class SettlementFailedError(FacilitatorRejectedError):
    pass


class PaymentRequiredError(Exception):
    """The caller must (re)send a valid payment; maps to HTTP 402."""

    def __init__(
        self,
        reason: str,
        requirement: "PaymentRequirement",
        request_id: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.requirement = requirement
        self.request_id = request_id


class InvalidSubmissionError(Exception):
    """Business-level input validation failed; maps to HTTP 400."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
