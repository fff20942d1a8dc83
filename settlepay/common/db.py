"""Database bootstrap helpers.

Postgres in deployment, SQLite for local runs and tests. Sessions are short and
never shared: API handlers, the dispatcher task and the outbox relay each open
one per store operation.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from settlepay.common.config import settings


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def build_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        # Connections cross threads: sync routes run in the threadpool, settlement on the loop.
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind) -> sessionmaker:
    # `expire_on_commit=False` keeps returned rows readable after their session closes.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings.database_dsn)
SessionLocal = make_session_factory(engine)
