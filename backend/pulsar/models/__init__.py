from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Import all models so that Base.metadata.create_all picks them up.
from pulsar.models.job import JobRecord, QueueEntry, HistoryEntry  # noqa: E402, F401
