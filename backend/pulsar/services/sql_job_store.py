"""SQLAlchemy-backed job store.

Every operation runs in its own session/transaction. Claiming never reads the
queue and then writes it: the oldest ``job_queue`` row is removed by a single
``DELETE ... RETURNING`` statement (``FOR UPDATE SKIP LOCKED`` on dialects that
support it), so only one caller can receive a given job id. The job row is then
flipped with ``UPDATE ... WHERE status = 'queued'`` in the same transaction.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from pulsar.errors import DuplicateJobIdError, InvalidTransitionError, JobNotFoundError
from pulsar.models.job import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
    HistoryEntry,
    JobRecord,
    QueueEntry,
)
from pulsar.services.job_store import (
    DEFAULT_HISTORY_CAPACITY,
    DEFAULT_HISTORY_WINDOW,
    Job,
    JobStore,
    PaymentProof,
    utcnow,
)

logger = logging.getLogger(__name__)

# Retries when a popped id turns out to be already finished, or when
# SKIP LOCKED hides rows that other workers are claiming.
_CLAIM_ATTEMPTS = 5

_NO_SYNC = {"synchronize_session": False}


def _to_db_time(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_job(record: JobRecord) -> Job:
    proof = None
    if record.tx_ref or record.payer or record.network:
        proof = PaymentProof(tx_ref=record.tx_ref, payer=record.payer, network=record.network)
    return Job(
        id=record.id,
        title=record.title,
        style=record.style,
        status=record.status,
        payment_proof=proof,
        created_at=_from_db_time(record.created_at),
        completed_at=_from_db_time(record.completed_at),
        result=list(record.result) if record.result is not None else None,
        error=record.error,
    )


class SqlJobStore(JobStore):
    """Job store over the ``jobs`` / ``job_queue`` / ``job_history`` tables."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ) -> None:
        super().__init__(history_capacity, history_window)
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, job_id, title, style, payment_proof=None):
        with self._session_factory() as db:
            if db.get(JobRecord, job_id) is not None:
                raise DuplicateJobIdError(job_id)

            record = JobRecord(
                id=job_id,
                title=title,
                style=style,
                status=JOB_STATUS_QUEUED,
                tx_ref=payment_proof.tx_ref if payment_proof else None,
                payer=payment_proof.payer if payment_proof else None,
                network=payment_proof.network if payment_proof else None,
                created_at=_to_db_time(utcnow()),
            )
            try:
                db.add(record)
                # Job row first so the queue entry's seq reflects enqueue order.
                db.flush()
                db.add(QueueEntry(job_id=job_id))
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateJobIdError(job_id) from exc
            job = _to_job(record)

        logger.info("Created job %s", job_id, extra={"job_id": job_id})
        return job

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, job_id):
        with self._session_factory() as db:
            record = db.get(JobRecord, job_id)
            return _to_job(record) if record else None

    def list_queued(self):
        with self._session_factory() as db:
            records = db.scalars(
                select(JobRecord)
                .join(QueueEntry, QueueEntry.job_id == JobRecord.id)
                .order_by(QueueEntry.seq)
            ).all()
            return [_to_job(r) for r in records]

    def queue_length(self):
        with self._session_factory() as db:
            return db.scalar(select(func.count()).select_from(QueueEntry)) or 0

    def queue_position(self, job_id):
        with self._session_factory() as db:
            seq = db.scalar(select(QueueEntry.seq).where(QueueEntry.job_id == job_id))
            if seq is None:
                return 0
            return db.scalar(
                select(func.count()).select_from(QueueEntry).where(QueueEntry.seq <= seq)
            )

    def history(self, limit=DEFAULT_HISTORY_WINDOW):
        if limit <= 0:
            return []
        with self._session_factory() as db:
            records = db.scalars(
                select(JobRecord)
                .join(HistoryEntry, HistoryEntry.job_id == JobRecord.id)
                .order_by(HistoryEntry.seq.desc())
                .limit(limit)
            ).all()
            return [_to_job(r) for r in records]

    def history_length(self):
        with self._session_factory() as db:
            return db.scalar(select(func.count()).select_from(HistoryEntry)) or 0

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim_next(self):
        for _ in range(_CLAIM_ATTEMPTS):
            with self._session_factory() as db:
                oldest = (
                    select(QueueEntry.seq)
                    .order_by(QueueEntry.seq)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                    .scalar_subquery()
                )
                job_id = db.execute(
                    delete(QueueEntry)
                    .where(QueueEntry.seq == oldest)
                    .returning(QueueEntry.job_id)
                    .execution_options(**_NO_SYNC)
                ).scalar_one_or_none()

                if job_id is None:
                    remaining = db.scalar(select(func.count()).select_from(QueueEntry))
                    db.rollback()
                    if not remaining:
                        return None
                    continue

                claimed = db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.status == JOB_STATUS_QUEUED)
                    .values(status=JOB_STATUS_PROCESSING)
                    .execution_options(**_NO_SYNC)
                ).rowcount
                if not claimed:
                    # Finished directly from the queue by an admin call; drop the stale entry.
                    db.commit()
                    continue

                record = db.get(JobRecord, job_id)
                db.commit()
                job = _to_job(record)

            logger.info("Claimed job %s", job.id, extra={"job_id": job.id})
            return job

        logger.warning("claim_next gave up after %d contended attempts", _CLAIM_ATTEMPTS)
        return None

    # ------------------------------------------------------------------
    # Finish
    # ------------------------------------------------------------------

    def complete(self, job_id, result):
        job = self._finish(job_id, JOB_STATUS_COMPLETED, result=list(result))
        logger.info("Completed job %s", job_id, extra={"job_id": job_id})
        return job

    def fail(self, job_id, reason):
        job = self._finish(job_id, JOB_STATUS_FAILED, error=reason)
        logger.info("Failed job %s: %s", job_id, reason, extra={"job_id": job_id})
        return job

    def _finish(self, job_id, status, *, result=None, error=None):
        values = {"status": status, "completed_at": _to_db_time(utcnow())}
        if result is not None:
            values["result"] = result
        if error is not None:
            values["error"] = error

        with self._session_factory() as db:
            updated = db.execute(
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.status.in_([JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING]),
                )
                .values(**values)
                .execution_options(**_NO_SYNC)
            ).rowcount

            if not updated:
                record = db.get(JobRecord, job_id)
                db.rollback()
                if record is None:
                    raise JobNotFoundError(job_id)
                raise InvalidTransitionError(job_id, record.status, status)

            db.execute(
                delete(QueueEntry)
                .where(QueueEntry.job_id == job_id)
                .execution_options(**_NO_SYNC)
            )
            db.add(HistoryEntry(job_id=job_id))
            db.flush()
            self._trim_history(db)

            record = db.get(JobRecord, job_id)
            db.commit()
            return _to_job(record)

    def _trim_history(self, db: Session) -> None:
        """Evict the oldest history entries beyond ``history_capacity``."""
        cutoff = db.scalar(
            select(HistoryEntry.seq)
            .order_by(HistoryEntry.seq.desc())
            .offset(self.history_capacity)
            .limit(1)
        )
        if cutoff is not None:
            db.execute(
                delete(HistoryEntry)
                .where(HistoryEntry.seq <= cutoff)
                .execution_options(**_NO_SYNC)
            )
