from __future__ import annotations

import os
from typing import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.pool import NullPool
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import sessionmaker, Session
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DB_URL = "sqlite:///./data/image_index.db"


def _normalize_sqlite_url(db_url: str) -> str:
    """Ensure sqlite file URLs are absolute and anchored at repo root when relative.

    This prevents mismatched files when different processes have different CWDs.
    """
    try:
        url = make_url(db_url)
    except ArgumentError:
        return db_url
    if url.get_backend_name() != "sqlite":
        return db_url
    db_path = url.database or ""
    # skip in-memory URLs
    if db_path in ("", ":memory:"):
        return db_url
    p = Path(db_path)
    if p.is_absolute():
        return db_url
    abs_p = (ROOT / p).resolve()
    abs_p.parent.mkdir(parents=True, exist_ok=True)
    return url.set(database=str(abs_p)).render_as_string(hide_password=False)


def make_engine(db_url: str) -> Engine:
    # NullPool releases SQLite file handles immediately (worker processes, Windows locks)
    eng = create_engine(db_url, future=True, poolclass=NullPool)
    if db_url.startswith("sqlite"):
        # SQLite needs foreign keys switched on per connection for CASCADE to work
        @event.listens_for(eng, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[override]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return eng


# Can be overridden by IMGRECON_DB_URL or per-script reconfiguration
DB_URL = _normalize_sqlite_url(os.environ.get("IMGRECON_DB_URL", DEFAULT_DB_URL))
engine = make_engine(DB_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    # If the environment requests a different DB URL, switch before creating a session
    env_url = os.environ.get("IMGRECON_DB_URL")
    if env_url:
        target_url = _normalize_sqlite_url(env_url)
        if target_url != DB_URL:
            reconfigure(target_url)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def reconfigure(db_url: str) -> None:
    """Rebuild the SQLAlchemy engine/session for a new DB URL.

    Ensures NullPool (to release SQLite file handles) and PRAGMA foreign_keys for SQLite.
    """
    global DB_URL, engine, SessionLocal
    engine.dispose()
    DB_URL = _normalize_sqlite_url(db_url)
    engine = make_engine(DB_URL)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
