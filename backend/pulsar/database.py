from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from pulsar.models import Base


def make_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared across request threads."""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables."""
    Base.metadata.create_all(engine)
