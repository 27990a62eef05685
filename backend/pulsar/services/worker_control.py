"""Worker control: the privileged claim/complete/fail interface.

Workers authenticate with a shared secret presented in any one of three ways:

* ``Authorization: Bearer <secret>``
* ``X-Worker-Secret: <secret>``
* ``?secret=<secret>`` query parameter

The forms are checked in that order and the first match wins. With no secret
configured, every request is rejected.
"""

import hmac
import logging

from pulsar.services.job_store import Job, JobStats, JobStore

logger = logging.getLogger(__name__)

DEFAULT_FAIL_REASON = "Unknown error"
DEFAULT_HISTORY_LIMIT = 20


def _secret_matches(candidate: str | None, secret: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class WorkerControlService:
    def __init__(self, store: JobStore, worker_secret: str) -> None:
        self._store = store
        self._secret = worker_secret

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def is_authorized(
        self,
        authorization: str | None = None,
        header_secret: str | None = None,
        query_secret: str | None = None,
    ) -> bool:
        if not self._secret:
            logger.warning("Worker request rejected: WORKER_SECRET is not configured")
            return False

        for presented in (_bearer_token(authorization), header_secret, query_secret):
            if _secret_matches(presented, self._secret):
                return True
        return False

    # ------------------------------------------------------------------
    # Public views
    # ------------------------------------------------------------------

    def stats(self) -> JobStats:
        return self._store.stats()

    def history(self, limit: int | None = None) -> list[Job]:
        """Newest-first history, ``limit`` clamped to ``1..history_capacity``."""
        limit = DEFAULT_HISTORY_LIMIT if limit is None else limit
        limit = max(1, min(limit, self._store.history_capacity))
        return self._store.history(limit)

    # ------------------------------------------------------------------
    # Privileged operations
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        return self._store.get(job_id)

    def list_queued(self) -> list[Job]:
        return self._store.list_queued()

    def claim(self) -> Job | None:
        job = self._store.claim_next()
        if job is None:
            logger.debug("Claim requested on empty queue")
        return job

    def complete(self, job_id: str, result: list[str]) -> Job:
        """Raises JobNotFoundError / InvalidTransitionError from the store."""
        return self._store.complete(job_id, result)

    def fail(self, job_id: str, reason: str | None = None) -> Job:
        return self._store.fail(job_id, reason or DEFAULT_FAIL_REASON)
