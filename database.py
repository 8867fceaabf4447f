"""Engine and session handling.

SQLite is the default backend; a PostgreSQL ``DATABASE_URL`` (for example a
hosted instance) is used as-is.  Each request gets its own session and closes
it when done.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401  registers the tables on SQLModel.metadata
from config import DATABASE_URL

logger = logging.getLogger(__name__)


def _normalise_url(url: str) -> str:
    # Hosted Postgres providers still hand out the legacy scheme.
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every thread sees an empty database.
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True}


def build_engine(url: str) -> Engine:
    url = _normalise_url(url)
    new_engine = create_engine(url, **_engine_options(url))
    if url.startswith("sqlite"):
        event.listen(new_engine, "connect", _enable_sqlite_foreign_keys)
    return new_engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


engine = build_engine(DATABASE_URL)


def init_db(bind: Engine = engine) -> None:
    """Create tables if they do not exist and seed the settings row."""
    from clinic_settings import ensure_settings

    SQLModel.metadata.create_all(bind)
    with Session(bind) as session:
        ensure_settings(session)
    logger.info("Database ready (%s)", bind.url.get_backend_name())


def get_session() -> Iterator[Session]:
    """FastAPI dependency yielding a session per request."""
    with Session(engine) as session:
        yield session
