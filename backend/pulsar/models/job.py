"""Job tables for the SQL-backed job store.

Status lifecycle:
    queued → processing → completed
                        ↘ failed

``job_queue`` holds exactly the ids of queued jobs, ordered by ``seq``.
``job_history`` holds ids of terminal jobs, trimmed to a fixed capacity.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pulsar.models import Base

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_JOB_STATUSES = frozenset({JOB_STATUS_COMPLETED, JOB_STATUS_FAILED})


class JobRecord(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # --- Generation parameters ---
    title: Mapped[str] = mapped_column(String(500))
    style: Mapped[str] = mapped_column(String(500))

    status: Mapped[str] = mapped_column(String(20), default=JOB_STATUS_QUEUED, index=True)

    # --- Payment proof (from settlement) ---
    tx_ref: Mapped[str | None] = mapped_column(String(128), default=None)
    payer: Mapped[str | None] = mapped_column(String(128), default=None)
    network: Mapped[str | None] = mapped_column(String(32), default=None)

    # --- Outcome ---
    # Artifact URLs: list[str], set when status == "completed"
    result: Mapped[list | None] = mapped_column(JSON(none_as_null=True), default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)

    # --- Timestamps (naive UTC) ---
    created_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)


class QueueEntry(Base):
    __tablename__ = "job_queue"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), unique=True)


class HistoryEntry(Base):
    __tablename__ = "job_history"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), index=True)
