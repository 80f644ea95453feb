"""SQLAlchemy session handling utilities."""
from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from src.core.config import settings
from src.db import models


@lru_cache()
def get_engine() -> Engine:
    """The engine is created once and reused for every batch."""

    db_url = make_url(settings.database_url)
    connect_args = {}
    if db_url.drivername.startswith("postgresql+psycopg"):
        connect_args["sslmode"] = "require"

    return create_engine(
        settings.database_url,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


@lru_cache()
def get_session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db(engine: Engine | None = None) -> None:
    """Create missing tables for local runs. Production schema is provisioned elsewhere."""

    models.Base.metadata.create_all(bind=engine or get_engine())


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """Commit on success, roll back on any error."""

    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
