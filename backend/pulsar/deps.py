"""FastAPI dependency functions shared across routers.

The job store is built once per process from settings:

    JOB_STORE_BACKEND=sql     (default) SQLAlchemy store at DATABASE_URL
    JOB_STORE_BACKEND=memory  in-process store, lost on restart

Tests swap any of these out through ``app.dependency_overrides``.
"""

import logging
from threading import Lock
from typing import Annotated

from fastapi import Depends

from pulsar.config import Settings, settings
from pulsar.database import init_db, make_engine, make_session_factory
from pulsar.services.job_store import JobStore, MemoryJobStore
from pulsar.services.notifier import TelegramNotifier, get_notifier
from pulsar.services.payment_gate import PaymentGate, get_payment_gate
from pulsar.services.sql_job_store import SqlJobStore
from pulsar.services.status import StatusQueryService
from pulsar.services.submission import JobSubmissionService
from pulsar.services.worker_control import WorkerControlService

logger = logging.getLogger(__name__)

_job_store: JobStore | None = None
_job_store_lock = Lock()


def build_job_store(config: Settings) -> JobStore:
    """Construct the configured job store backend."""
    backend = config.job_store_backend.lower()
    if backend == "memory":
        logger.info("Using in-memory job store")
        return MemoryJobStore(config.history_capacity, config.history_window)
    if backend == "sql":
        engine = make_engine(config.database_url)
        init_db(engine)
        logger.info("Using SQL job store", extra={"dialect": engine.dialect.name})
        return SqlJobStore(
            make_session_factory(engine), config.history_capacity, config.history_window
        )
    raise ValueError(f"Unknown JOB_STORE_BACKEND: {config.job_store_backend!r}")


def get_job_store() -> JobStore:
    global _job_store
    if _job_store is None:
        with _job_store_lock:
            if _job_store is None:
                _job_store = build_job_store(settings)
    return _job_store


JobStoreDep = Annotated[JobStore, Depends(get_job_store)]


def get_submission_service(
    store: JobStoreDep,
    gate: Annotated[PaymentGate, Depends(get_payment_gate)],
    notifier: Annotated[TelegramNotifier, Depends(get_notifier)],
) -> JobSubmissionService:
    return JobSubmissionService(
        store,
        gate,
        notifier,
        estimated_generation_seconds=settings.estimated_generation_seconds,
    )


def get_status_service(store: JobStoreDep) -> StatusQueryService:
    return StatusQueryService(
        store, estimated_generation_seconds=settings.estimated_generation_seconds
    )


def get_worker_control(store: JobStoreDep) -> WorkerControlService:
    return WorkerControlService(store, settings.worker_secret)
